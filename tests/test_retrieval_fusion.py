"""
Tests for the retrieval fusion engine: direct/comparative paths, dedup, cap, backfill, identifier supplement.
"""

import pytest

from citerag.core.errors import ServiceUnavailableError
from citerag.schemas.analysis import MetaType, QueryAnalysis, QueryIntent
from citerag.services.identifier_search import combine, extract_identifier_tokens, fallback_tokens
from citerag.services.retrieval_service import FusionEngine, catalog_evidence, merge_max
from tests.fakes import FakeCatalog, FakeEmbedder, FakeRetriever, make_item

COMPARATIVE = QueryAnalysis(intent=QueryIntent.COMPARISON, is_comparative=True, comparative_terms=("alpha", "beta"))
DIRECT = QueryAnalysis(intent=QueryIntent.GENERAL)


def _items(prefix: str, n: int, sim: float = 0.9) -> list:
    return [make_item(f"{prefix}{i}", sim - i * 0.01) for i in range(n)]


class TestMergeMax:
    """Tests for merge_max()."""

    def test_keeps_strictly_higher_similarity(self) -> None:
        low = make_item("x", 0.4, label="low")
        high = make_item("x", 0.8, label="high")
        assert merge_max([low], [high])[0].source_label == "high"
        assert merge_max([high], [low])[0].source_label == "high"

    def test_tie_keeps_first(self) -> None:
        a = make_item("x", 0.5, label="first")
        b = make_item("x", 0.5, label="second")
        assert merge_max([a], [b])[0].source_label == "first"

    def test_sorted_descending(self) -> None:
        out = merge_max([make_item("a", 0.3), make_item("b", 0.9)], [make_item("c", 0.6)])
        assert [i.id for i in out] == ["b", "c", "a"]


class TestDirectPath:
    """Single retrieval for non-comparative queries."""

    @pytest.mark.asyncio
    async def test_single_call_with_direct_parameters(self) -> None:
        retriever = FakeRetriever(default=_items("d", 12))
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("GDPR fines", DIRECT, [0.1], "GDPR fines")
        assert len(retriever.calls) == 1
        call = retriever.calls[0]
        assert (call["k"], call["threshold"], call["vector_weight"]) == (10, 0.30, 0.7)
        assert [i.ordinal for i in result.items] == list(range(1, len(result.items) + 1))
        assert not result.comparative and not result.backfilled

    @pytest.mark.asyncio
    async def test_article_filter_is_passed(self) -> None:
        retriever = FakeRetriever(default=_items("d", 10))
        analysis = QueryAnalysis(intent=QueryIntent.ARTICLE_LOOKUP, article_number=28)
        await FusionEngine(FakeEmbedder(), retriever).fuse("articolo 28", analysis, [0.1], "articolo 28")
        assert retriever.calls[0]["article_filter"] == 28

    @pytest.mark.asyncio
    async def test_retrieval_failure_is_terminal(self) -> None:
        retriever = FakeRetriever(default=RuntimeError("milvus down"))
        with pytest.raises(ServiceUnavailableError):
            await FusionEngine(FakeEmbedder(), retriever).fuse("q", DIRECT, [0.1], "q")


class TestComparativePath:
    """Per-term retrieval, dedup, cap and backfill."""

    @pytest.mark.asyncio
    async def test_per_term_calls_and_cap(self) -> None:
        retriever = FakeRetriever(by_text={"alpha": _items("a", 8), "beta": _items("b", 8)})
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("alpha vs beta", COMPARATIVE, [0.1], "alpha vs beta")
        term_calls = [c for c in retriever.calls if c["text"] in ("alpha", "beta")]
        assert len(term_calls) == 2
        assert all((c["k"], c["threshold"]) == (8, 0.25) for c in term_calls)
        assert len(result.items) == 15
        assert not result.backfilled
        sims = [i.similarity for i in result.items]
        assert sims == sorted(sims, reverse=True)

    @pytest.mark.asyncio
    async def test_shared_identity_is_deduplicated(self) -> None:
        shared_low = make_item("shared", 0.5, label="from alpha")
        shared_high = make_item("shared", 0.7, label="from beta")
        retriever = FakeRetriever(by_text={
            "alpha": [shared_low, *_items("a", 6)],
            "beta": [shared_high, *_items("b", 6)],
        })
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("alpha beta", COMPARATIVE, [0.1], "alpha beta")
        shared = [i for i in result.items if i.id == "shared"]
        assert len(shared) == 1 and shared[0].source_label == "from beta"

    @pytest.mark.asyncio
    async def test_failed_term_is_isolated(self) -> None:
        retriever = FakeRetriever(by_text={"alpha": _items("a", 10), "beta": RuntimeError("timeout")})
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("alpha beta", COMPARATIVE, [0.1], "alpha beta")
        assert {i.id[0] for i in result.items} == {"a"}

    @pytest.mark.asyncio
    async def test_failed_term_embedding_is_isolated(self) -> None:
        retriever = FakeRetriever(by_text={"alpha": _items("a", 10)})
        embedder = FakeEmbedder(fail_on={"beta"})
        result = await FusionEngine(embedder, retriever).fuse("alpha beta", COMPARATIVE, [0.1], "alpha beta")
        assert len(result.items) >= 10

    @pytest.mark.asyncio
    async def test_backfill_when_fewer_than_ten(self) -> None:
        retriever = FakeRetriever(by_text={
            "alpha": _items("a", 3),
            "beta": _items("b", 3),
            "alpha vs beta": [make_item("a0", 0.95), *_items("w", 12, sim=0.6)],
        })
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("alpha vs beta", COMPARATIVE, [0.1], "alpha vs beta")
        assert result.backfilled
        backfill_call = retriever.calls[-1]
        assert (backfill_call["text"], backfill_call["k"], backfill_call["threshold"]) == ("alpha vs beta", 10, 0.30)
        assert len(result.items) <= 15
        # already-present identity is not replaced by the backfill copy
        a0 = next(i for i in result.items if i.id == "a0")
        assert a0.similarity == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_article_filter_reaches_term_and_backfill_calls(self) -> None:
        analysis = QueryAnalysis(
            intent=QueryIntent.COMPARISON, is_comparative=True, comparative_terms=("alpha", "beta"), article_number=5,
        )
        retriever = FakeRetriever(by_text={"alpha": _items("a", 2), "beta": _items("b", 2)})
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("alpha beta", analysis, [0.1], "alpha beta")
        assert result.backfilled
        assert [c["text"] for c in retriever.calls] == ["alpha", "beta", "alpha beta"]
        assert all(c["article_filter"] == 5 for c in retriever.calls)

    @pytest.mark.asyncio
    async def test_no_backfill_at_ten(self) -> None:
        retriever = FakeRetriever(by_text={"alpha": _items("a", 5), "beta": _items("b", 5)})
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("x", COMPARATIVE, [0.1], "x")
        assert not result.backfilled
        assert len(retriever.calls) == 2


class TestIdentifierSupplement:
    """Filename lookups appended after vector results."""

    @pytest.mark.asyncio
    async def test_identifier_tokens_trigger_lookup_and_append(self) -> None:
        vector_hit = make_item("v1", 0.9)
        overlap = make_item("v1", 0.8, label="identifier copy")
        id_only = make_item("f1", 0.8, label="GDPR.pdf")
        retriever = FakeRetriever(default=[vector_hit], identifier_results=[overlap, id_only])
        result = await FusionEngine(FakeEmbedder(), retriever).fuse("q", DIRECT, [0.1], "what does GDPR say")
        assert retriever.identifier_calls[0] == (["GDPR"], 10)
        assert [i.id for i in result.items] == ["v1", "f1"]
        assert result.items[0].similarity == 0.9
        assert [i.ordinal for i in result.items] == [1, 2]

    @pytest.mark.asyncio
    async def test_low_similarity_uses_fallback_tokens(self) -> None:
        retriever = FakeRetriever(default=[make_item("v1", 0.35)])
        await FusionEngine(FakeEmbedder(), retriever).fuse("q", DIRECT, [0.1], "what about maternity leave policy rules here")
        tokens, _ = retriever.identifier_calls[0]
        assert tokens == ["what", "about", "maternity", "leave", "policy"]

    @pytest.mark.asyncio
    async def test_no_lookup_when_strong_and_no_identifiers(self) -> None:
        retriever = FakeRetriever(default=[make_item("v1", 0.9)])
        await FusionEngine(FakeEmbedder(), retriever).fuse("q", DIRECT, [0.1], "maternity leave")
        assert retriever.identifier_calls == []


class TestIdentifierTokens:
    """Tests for identifier token extraction and combine()."""

    def test_extracts_acronyms_years_and_names(self) -> None:
        tokens = extract_identifier_tokens("Cosa dice il Regolamento 2016/679 sul GDPR e la direttiva")
        assert "GDPR" in tokens
        assert "2016" in tokens
        assert "Regolamento" in tokens
        assert "DIRETTIVA" in tokens
        assert "Cosa" not in tokens

    def test_common_words_are_skipped(self) -> None:
        assert extract_identifier_tokens("THE AND OR") == []

    def test_fallback_tokens(self) -> None:
        assert fallback_tokens("the GDPR is a law") == ["the", "gdpr", "law"]
        assert fallback_tokens("one two three four five six seven") == ["one", "two", "three", "four", "five"]

    def test_combine_prefers_vector(self) -> None:
        v = [make_item("a", 0.7)]
        i = [make_item("a", 0.8), make_item("b", 0.8)]
        out = combine(v, i)
        assert [(x.id, x.similarity) for x in out] == [("a", 0.7), ("b", 0.8)]


class TestCatalogEvidence:
    """Collection metadata shaped per meta question type."""

    @pytest.mark.asyncio
    async def test_documents_become_citable_items(self) -> None:
        result = await catalog_evidence(FakeCatalog(sources=["a.pdf", "b.pdf"], total_chunks=7))
        assert [i.ordinal for i in result.items] == [1, 2, 3]
        assert "2 documents, 7 chunks" in result.items[0].content
        assert [i.source_label for i in result.items[1:]] == ["a.pdf", "b.pdf"]

    @pytest.mark.asyncio
    async def test_stats_is_a_single_summary(self) -> None:
        catalog = FakeCatalog(sources=["a.pdf", "legal/b.pdf", "legal/c.docx"], total_chunks=9)
        result = await catalog_evidence(catalog, MetaType.STATS)
        assert len(result.items) == 1
        content = result.items[0].content
        assert "3 documents, 9 chunks" in content
        assert "By type: docx 1, pdf 2." in content
        assert "By folder: (root) 1, legal 2." in content

    @pytest.mark.asyncio
    async def test_structure_groups_by_file_type(self) -> None:
        catalog = FakeCatalog(sources=["a.pdf", "legal/b.pdf", "notes", "c.DOCX"])
        result = await catalog_evidence(catalog, MetaType.STRUCTURE)
        assert [i.source_label for i in result.items] == ["Knowledge base", "(none) documents", "docx documents", "pdf documents"]
        assert result.items[3].content == "File type pdf: 2 documents (a.pdf, legal/b.pdf)."
        assert [i.ordinal for i in result.items] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_folders_group_by_path_prefix(self) -> None:
        catalog = FakeCatalog(sources=["a.pdf", "legal/eu/b.pdf", "legal/eu/c.pdf", "hr/d.pdf"])
        result = await catalog_evidence(catalog, MetaType.FOLDERS)
        assert [i.source_label for i in result.items[1:]] == ["(root)", "hr", "legal/eu"]
        assert result.items[3].content == "Folder legal/eu: 2 documents (legal/eu/b.pdf, legal/eu/c.pdf)."

    @pytest.mark.asyncio
    async def test_list_names_each_document(self) -> None:
        result = await catalog_evidence(FakeCatalog(sources=["a.pdf", "hr/d.pdf"]), MetaType.LIST)
        assert [i.document_id for i in result.items[1:]] == ["a.pdf", "hr/d.pdf"]
