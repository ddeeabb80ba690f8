"""
Tests for QueryAnalyzer: LLM classification, regex signals, caching and fallbacks.
"""

import json

import pytest

from citerag.core.cache import MemoryQueryCache
from citerag.schemas.analysis import ComparisonType, MetaScope, MetaType, QueryAnalysis, QueryIntent
from citerag.services.query_analyzer import QueryAnalyzer, _parse_json_object
from tests.fakes import FakeLLM


def _llm_json(**fields) -> FakeLLM:
    return FakeLLM(complete=json.dumps(fields))


class TestParseJsonObject:
    """Tests for _parse_json_object()."""

    def test_plain_json(self) -> None:
        assert _parse_json_object('{"intent": "general"}') == {"intent": "general"}

    def test_fenced_json(self) -> None:
        assert _parse_json_object('```json\n{"intent": "meta"}\n```') == {"intent": "meta"}

    def test_garbage(self) -> None:
        assert _parse_json_object("no json here") is None
        assert _parse_json_object("") is None
        assert _parse_json_object("[1, 2]") is None


class TestAnalyze:
    """Classification output mapped onto QueryAnalysis."""

    @pytest.mark.asyncio
    async def test_comparative_query(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="comparison", is_comparative=True, comparative_terms=["GDPR", "ESPR"],
                        comparison_type="differences", is_meta=False, confidence=0.9)
        analysis = await QueryAnalyzer(llm, cache).analyze("differenze tra GDPR e ESPR")
        assert analysis.intent == QueryIntent.COMPARISON
        assert analysis.is_comparative
        assert analysis.comparative_terms == ("GDPR", "ESPR")
        assert analysis.comparison_type == ComparisonType.DIFFERENCES
        assert llm.complete_kwargs[0]["temperature"] == 0.0
        assert llm.complete_kwargs[0]["json_mode"] is True

    @pytest.mark.asyncio
    async def test_single_distinct_term_is_not_comparative(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="comparison", is_comparative=True, comparative_terms=["GDPR", "gdpr "])
        analysis = await QueryAnalyzer(llm, cache).analyze("compare GDPR with gdpr")
        assert not analysis.is_comparative
        assert analysis.comparative_terms == ()
        assert analysis.intent == QueryIntent.GENERAL

    @pytest.mark.asyncio
    async def test_general_comparison_type_alias(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="comparison", is_comparative=True, comparative_terms=["A", "B"],
                        comparison_type="general_comparison")
        analysis = await QueryAnalyzer(llm, cache).analyze("compare A and B")
        assert analysis.comparison_type == ComparisonType.GENERAL

    @pytest.mark.asyncio
    async def test_structural_meta_wins_over_topic(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="meta", is_meta=True, meta_type=None)
        analysis = await QueryAnalyzer(llm, cache).analyze("how many documents discuss GDPR")
        assert analysis.is_meta
        assert analysis.intent == QueryIntent.META
        assert analysis.meta_scope == MetaScope.STRUCTURAL
        assert analysis.meta_type == MetaType.STATS
        assert analysis.is_structural_meta

    @pytest.mark.asyncio
    async def test_thematic_meta(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="meta", is_meta=True, meta_type="list")
        analysis = await QueryAnalyzer(llm, cache).analyze("which documents talk about privacy")
        assert analysis.meta_scope == MetaScope.THEMATIC
        assert not analysis.is_structural_meta

    @pytest.mark.asyncio
    async def test_regex_signals_are_merged(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="article_lookup", article_number=None)
        analysis = await QueryAnalyzer(llm, cache).analyze("latest changes to article 28, search the web")
        assert analysis.intent == QueryIntent.ARTICLE_LOOKUP
        assert analysis.article_number == 28
        assert analysis.has_temporal and analysis.temporal_terms == ("latest",)
        assert analysis.has_web_search_request and analysis.web_search_command == "search the web"
        assert "article 28" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_llm_article_number_overrides_regex(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="article_lookup", article_number=29)
        analysis = await QueryAnalyzer(llm, cache).analyze("articolo 28")
        assert analysis.article_number == 29

    @pytest.mark.asyncio
    async def test_unknown_intent_becomes_general(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="poetry")
        analysis = await QueryAnalyzer(llm, cache).analyze("write me a poem")
        assert analysis.intent == QueryIntent.GENERAL


class TestFallbacks:
    """Failed or disabled classification falls back to regex signals."""

    @pytest.mark.asyncio
    async def test_llm_failure_returns_default_with_signals(self, cache: MemoryQueryCache) -> None:
        llm = FakeLLM(complete=RuntimeError("boom"))
        analysis = await QueryAnalyzer(llm, cache).analyze("ultime novità sull'articolo 5")
        assert analysis.intent == QueryIntent.GENERAL
        assert not analysis.is_comparative and not analysis.is_meta
        assert analysis.article_number == 5
        assert analysis.has_temporal
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_unparseable_response_returns_default(self, cache: MemoryQueryCache) -> None:
        analysis = await QueryAnalyzer(FakeLLM(complete="I think it is general"), cache).analyze("hello")
        assert analysis == QueryAnalyzer.default(QueryAnalyzer.signals("hello"))

    @pytest.mark.asyncio
    async def test_disabled_skips_llm(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="comparison")
        analysis = await QueryAnalyzer(llm, cache, enabled=False).analyze("compare A and B")
        assert analysis.intent == QueryIntent.GENERAL
        assert llm.prompts == []


class TestCaching:
    """Analysis results are cached by normalized query."""

    @pytest.mark.asyncio
    async def test_second_call_hits_cache_with_normalized_key(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="definition")
        analyzer = QueryAnalyzer(llm, cache)
        first = await analyzer.analyze("What is GDPR")
        second = await analyzer.analyze("  what   is gdpr ")
        assert not first.from_cache
        assert second.from_cache
        assert second.intent == QueryIntent.DEFINITION
        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_follow_up_with_history_bypasses_cache(self, cache: MemoryQueryCache) -> None:
        llm = _llm_json(intent="general")
        history = [{"role": "user", "content": "Tell me about the Legal folder"},
                   {"role": "assistant", "content": "It holds contracts."}]
        await QueryAnalyzer(llm, cache).analyze("and that one?", history)
        assert len(cache) == 0
        assert "Recent conversation" in llm.prompts[0]

    def test_cached_payload_round_trips(self) -> None:
        analysis = QueryAnalysis(intent=QueryIntent.TIMELINE, temporal_terms=("recent",), has_temporal=True)
        restored = QueryAnalysis.from_cached(json.loads(json.dumps(analysis.to_cache())))
        assert restored.from_cache
        assert restored.model_copy(update={"from_cache": False}) == analysis
