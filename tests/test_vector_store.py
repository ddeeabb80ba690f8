"""
Unit tests for MilvusStore scoring and lookups (mocked Milvus client) and embedder config.
"""

from unittest.mock import MagicMock

import pytest

from citerag.core.errors import ServiceUnavailableError
from citerag.services.vector_store import HFEmbedder, MilvusStore, keyword_score, mentions_article


def _client(hits=None, rows=None, row_count: int = 0) -> MagicMock:
    client = MagicMock()
    client.has_collection.return_value = True
    client.search.return_value = [hits or []]
    client.query.return_value = rows or []
    client.get_collection_stats.return_value = {"row_count": row_count}
    return client


HITS = [
    {"id": 1, "distance": 0.9, "entity": {"text": "Article 28: processors must sign a contract.", "source": "gdpr.pdf", "chunk_id": 3}},
    {"id": 2, "distance": 0.2, "entity": {"text": "Unrelated text.", "source": "misc.pdf", "chunk_id": 0}},
]


class TestScoringHelpers:
    """Keyword and article-mention scoring."""

    def test_keyword_score(self) -> None:
        assert keyword_score("processors contract", "Processors sign a contract") == 1.0
        assert keyword_score("processors fines", "Processors sign a contract") == 0.5
        assert keyword_score("", "anything") == 0.0

    def test_mentions_article(self) -> None:
        assert mentions_article("See Art. 28 for details", 28)
        assert mentions_article("l'articolo 5 stabilisce", 5)
        assert not mentions_article("Article 280 applies", 28)


class TestMilvusStore:
    """MilvusStore over a mocked client."""

    @pytest.mark.asyncio
    async def test_hybrid_score_and_threshold(self) -> None:
        client = _client(hits=HITS)
        items = await MilvusStore(client=client).retrieve([0.1], "processors contract", 5, 0.30, 0.7)
        assert [i.id for i in items] == ["1"]
        assert items[0].similarity == pytest.approx(0.7 * 0.9 + 0.3 * 1.0)
        assert items[0].source_label == "gdpr.pdf" and items[0].chunk_index == 3
        assert client.search.call_args.kwargs["limit"] == 15

    @pytest.mark.asyncio
    async def test_article_filter(self) -> None:
        store = MilvusStore(client=_client(hits=HITS))
        assert await store.retrieve([0.1], "processors", 5, 0.0, 0.7, article_filter=29) == []
        assert len(await store.retrieve([0.1], "processors", 5, 0.0, 0.7, article_filter=28)) == 1

    @pytest.mark.asyncio
    async def test_missing_collection_is_empty(self) -> None:
        client = _client(hits=HITS)
        client.has_collection.return_value = False
        assert await MilvusStore(client=client).retrieve([0.1], "x", 5, 0.0, 0.7) == []

    @pytest.mark.asyncio
    async def test_identifier_lookup_sanitizes_tokens(self) -> None:
        client = _client(rows=[{"id": 7, "text": "GDPR text", "source": "GDPR_2016.pdf", "chunk_id": 1}])
        items = await MilvusStore(client=client).retrieve_by_identifier(["GDPR", 'x"; drop'], 10)
        assert client.query.call_args.kwargs["filter"] == (
            'source like "%GDPR%" or source like "%gdpr%" or source like "%Gdpr%" or '
            'source like "%xdrop%" or source like "%XDROP%" or source like "%Xdrop%"'
        )
        assert [(i.id, i.similarity, i.text_score) for i in items] == [("7", 0.8, 1.0)]

    @pytest.mark.asyncio
    async def test_identifier_lookup_ignores_token_case(self) -> None:
        client = _client(rows=[{"id": 9, "text": "Regulation text", "source": "Gdpr_consolidated.pdf", "chunk_id": 0}])
        items = await MilvusStore(client=client).retrieve_by_identifier(["gdpr"], 10)
        expr = client.query.call_args.kwargs["filter"]
        assert 'source like "%Gdpr%"' in expr and 'source like "%GDPR%"' in expr
        assert [i.source_label for i in items] == ["Gdpr_consolidated.pdf"]

    @pytest.mark.asyncio
    async def test_collection_stats(self) -> None:
        rows = [{"source": "b.pdf"}, {"source": "a.pdf"}, {"source": "a.pdf"}, {"source": " "}]
        stats = await MilvusStore(client=_client(rows=rows, row_count=12)).get_collection_stats()
        assert stats["sources"] == ["a.pdf", "b.pdf"]
        assert stats["source_count"] == 2 and stats["total_chunks"] == 12


class TestEmbedder:
    """Tests for HFEmbedder."""

    @pytest.mark.asyncio
    async def test_missing_key_is_unavailable(self) -> None:
        with pytest.raises(ServiceUnavailableError):
            await HFEmbedder(api_key="").embed("hello")

