"""
Query analysis: intent, comparative terms, meta-query detection and query signals.

Regex rules supply the deterministic signals (article, temporal, explicit web
request); one temperature-0 LLM call classifies intent and extracts
comparative terms. Results are cached by normalized query text.
"""

import json
import logging
from typing import Any

from citerag.core.cache import QueryCache, normalize_query
from citerag.core.config import (
    ANALYSIS_MAX_TOKENS,
    ENABLE_QUERY_ANALYSIS,
    QUERY_CACHE_TTL_SECONDS,
)
from citerag.schemas.analysis import ComparisonType, MetaType, QueryAnalysis, QueryIntent
from citerag.services.conversation import format_window, is_follow_up, recent_window
from citerag.services.protocols import LLM
from citerag.services.query_rules import (
    detect_article_number,
    detect_meta_scope,
    detect_temporal_terms,
    detect_web_search_command,
    structural_meta_type,
)

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "analysis"
MAX_COMPARATIVE_TERMS = 5

_ANALYSIS_PROMPT = """Analyze this user query against a document knowledge base and detect all of its characteristics at once.

{history_block}Query: "{query}"

1. INTENT (exactly one):
   - "comparison": compares 2+ entities ("compare GDPR and ESPR", "differenze tra X e Y")
   - "definition": short formal definition only ("what is GDPR", "cos'è", "definizione di")
   - "requirements": requirements or obligations ("GDPR requirements", "cosa serve per compliance")
   - "procedure": processes or how-to ("how to implement", "processo per")
   - "article_lookup": a specific article ("article 28 GDPR", "art. 5")
   - "meta": a question about the knowledge base itself ("how many documents are there", "quali cartelle ci sono")
   - "timeline": deadlines or dates ("when does it apply", "scadenze")
   - "causes_effects": causes or consequences ("why is it needed", "conseguenze")
   - "exploratory": open-ended exploration across several topics ("what else should I know about", "overview of")
   - "general": full explanation or description ("explain X", "spiegami X", "parlami di X")

2. COMPARISON: if the intent is "comparison", extract only the main terms being compared (min 2, max 5)
   and the type: "differences", "similarities" or "general".

3. META: if the intent is "meta", the type: "stats", "list", "folders" or "structure".

4. ARTICLE: if a specific article is mentioned, its number (1-999).{article_hint}

Rules: a comparative query MUST have intent "comparison"; a meta query MUST have intent "meta";
"explain"/"describe" requests are "general", not "definition".

Reply with valid JSON only:
{{"intent": "...", "is_comparative": true/false, "comparative_terms": ["..."] or null,
"comparison_type": "differences" | "similarities" | "general" | null,
"is_meta": true/false, "meta_type": "stats" | "list" | "folders" | "structure" | null,
"article_number": number or null, "confidence": 0.0-1.0}}"""


def _parse_json_object(content: str) -> dict[str, Any] | None:
    """Parse a JSON object, falling back to the outermost {...} block (code fences, prose)."""
    text = (content or "").strip()
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        first, last = text.find("{"), text.rfind("}")
        if first == -1 or last <= first:
            return None
        try:
            parsed = json.loads(text[first : last + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def _enum_or_none(enum_cls, value: Any):
    if value == "general_comparison":
        value = "general"
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _distinct_terms(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    seen: set[str] = set()
    terms: list[str] = []
    for t in raw:
        if not isinstance(t, str) or not t.strip():
            continue
        key = normalize_query(t)
        if key in seen:
            continue
        seen.add(key)
        terms.append(t.strip())
    return tuple(terms[:MAX_COMPARATIVE_TERMS])


class QueryAnalyzer:
    """Produces one QueryAnalysis per query. Never raises."""

    def __init__(
        self,
        llm: LLM,
        cache: QueryCache,
        *,
        enabled: bool = ENABLE_QUERY_ANALYSIS,
        ttl: float = QUERY_CACHE_TTL_SECONDS,
    ) -> None:
        self._llm = llm
        self._cache = cache
        self._enabled = enabled
        self._ttl = ttl

    @staticmethod
    def signals(query: str) -> dict[str, Any]:
        """Regex-only signals, available even when classification fails."""
        temporal = detect_temporal_terms(query)
        command = detect_web_search_command(query)
        return {
            "article_number": detect_article_number(query),
            "has_temporal": bool(temporal),
            "temporal_terms": temporal,
            "has_web_search_request": command is not None,
            "web_search_command": command,
        }

    @staticmethod
    def default(signals: dict[str, Any] | None = None) -> QueryAnalysis:
        """Conservative result: general, not comparative, not meta."""
        return QueryAnalysis(intent=QueryIntent.GENERAL, **(signals or {}))

    async def analyze(self, query: str, history: list[dict[str, Any]] | None = None) -> QueryAnalysis:
        logger.info("[query_analyzer:analyze] IN  query=%r history_len=%d", query[:200], len(history or []))
        signals: dict[str, Any] | None = None
        try:
            signals = self.signals(query)
            if not self._enabled:
                logger.info("[query_analyzer:analyze] disabled, returning default")
                return self.default(signals)

            window = recent_window(history) if is_follow_up(query, history) else []
            key = f"{CACHE_NAMESPACE}:{normalize_query(query)}"
            if not window:
                cached = self._cache.get(key)
                if cached is not None:
                    analysis = QueryAnalysis.from_cached(cached)
                    logger.info("[query_analyzer:analyze] OUT cache hit intent=%s", analysis.intent.value)
                    return analysis

            analysis = await self._classify(query, signals, window)
            if analysis is None:
                return self.default(signals)
            if not window:
                self._cache.put(key, analysis.to_cache(), self._ttl)
            logger.info(
                "[query_analyzer:analyze] OUT intent=%s comparative=%s terms=%s meta=%s scope=%s article=%s temporal=%s web_cmd=%r",
                analysis.intent.value, analysis.is_comparative, list(analysis.comparative_terms),
                analysis.is_meta, analysis.meta_scope.value if analysis.meta_scope else None,
                analysis.article_number, list(analysis.temporal_terms), analysis.web_search_command,
            )
            return analysis
        except Exception as e:
            logger.warning("[query_analyzer:analyze] failed, using default: %s", e)
            return self.default(signals)

    async def _classify(
        self, query: str, signals: dict[str, Any], window: list[dict[str, str]]
    ) -> QueryAnalysis | None:
        regex_article = signals["article_number"]
        history_block = f"Recent conversation:\n{format_window(window)}\n\n" if window else ""
        article_hint = (
            f"\n   NOTE: a regex detected article {regex_article}; confirm or correct it." if regex_article else ""
        )
        prompt = _ANALYSIS_PROMPT.format(query=query, history_block=history_block, article_hint=article_hint)
        content = await self._llm.complete(prompt, max_tokens=ANALYSIS_MAX_TOKENS, temperature=0.0, json_mode=True)
        parsed = _parse_json_object(content)
        if parsed is None:
            logger.warning("[query_analyzer:_classify] unparseable response=%r", (content or "")[:200])
            return None
        return self._build(query, parsed, signals)

    @staticmethod
    def _build(query: str, parsed: dict[str, Any], signals: dict[str, Any]) -> QueryAnalysis:
        intent = _enum_or_none(QueryIntent, parsed.get("intent")) or QueryIntent.GENERAL

        terms = _distinct_terms(parsed.get("comparative_terms"))
        is_comparative = (parsed.get("is_comparative") is True or intent == QueryIntent.COMPARISON) and len(terms) >= 2
        comparison_type = None
        if is_comparative:
            intent = QueryIntent.COMPARISON
            comparison_type = _enum_or_none(ComparisonType, parsed.get("comparison_type")) or ComparisonType.GENERAL
        else:
            terms = ()
            if intent == QueryIntent.COMPARISON:
                intent = QueryIntent.GENERAL

        is_meta = not is_comparative and (parsed.get("is_meta") is True or intent == QueryIntent.META)
        meta_type = meta_scope = None
        if is_meta:
            intent = QueryIntent.META
            meta_scope = detect_meta_scope(query)
            meta_type = (
                _enum_or_none(MetaType, parsed.get("meta_type"))
                or structural_meta_type(query)
                or MetaType.LIST
            )
        elif intent == QueryIntent.META:
            intent = QueryIntent.GENERAL

        article_number = signals["article_number"]
        llm_article = parsed.get("article_number")
        if isinstance(llm_article, (int, float)) and not isinstance(llm_article, bool):
            if 1 <= int(llm_article) <= 999:
                article_number = int(llm_article)

        confidence = parsed.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) or not 0 <= confidence <= 1:
            confidence = 0.0

        return QueryAnalysis(
            intent=intent,
            is_comparative=is_comparative,
            comparative_terms=terms,
            comparison_type=comparison_type,
            is_meta=is_meta,
            meta_type=meta_type,
            meta_scope=meta_scope,
            confidence=float(confidence),
            **{**signals, "article_number": article_number},
        )
