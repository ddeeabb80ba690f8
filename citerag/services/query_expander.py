"""
Intent-based query expansion for retrieval recall.

Each intent maps to a strategy: append a fixed vocabulary, generate article
numbering variants, ask the LLM for synonyms/acronyms/domain context, expand
each comparative term separately, or leave the query alone (meta). Any
failure returns the original query.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from citerag.core.cache import QueryCache, normalize_query
from citerag.core.config import (
    ENABLE_QUERY_EXPANSION,
    EXPANSION_MAX_TOKENS,
    QUERY_CACHE_TTL_SECONDS,
)
from citerag.schemas.analysis import QueryAnalysis, QueryIntent
from citerag.services.conversation import format_window, recent_window
from citerag.services.protocols import LLM

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "expansion"
EXPANSION_TEMPERATURE = 0.3


class ExpansionMethod(str, Enum):
    NONE = "none"
    ADD_TERMS = "add_terms"
    LLM_GUIDED = "llm_guided"
    ARTICLE_VARIANTS = "article_variants"
    PER_TERM = "per_term"


@dataclass(frozen=True)
class ExpansionStrategy:
    method: ExpansionMethod
    terms: tuple[str, ...] = ()
    context: str = ""


EXPANSION_STRATEGIES: dict[QueryIntent, ExpansionStrategy] = {
    QueryIntent.COMPARISON: ExpansionStrategy(
        ExpansionMethod.PER_TERM,
        ("confronto", "differenza", "simile"),
        "This is a comparison query - expand terms that help compare entities",
    ),
    QueryIntent.DEFINITION: ExpansionStrategy(
        ExpansionMethod.ADD_TERMS,
        ("definizione", "concetto", "significato", "definition", "concept", "meaning", "what is"),
    ),
    QueryIntent.REQUIREMENTS: ExpansionStrategy(
        ExpansionMethod.ADD_TERMS,
        ("requisiti", "obblighi", "prescrizioni", "compliance", "doveri",
         "requirements", "obligations", "prescriptions", "duties"),
    ),
    QueryIntent.PROCEDURE: ExpansionStrategy(
        ExpansionMethod.ADD_TERMS,
        ("processo", "procedura", "step", "fasi", "implementazione",
         "procedure", "process", "how", "steps", "phases", "implementation"),
    ),
    QueryIntent.ARTICLE_LOOKUP: ExpansionStrategy(
        ExpansionMethod.ARTICLE_VARIANTS,
        ("contenuto", "disposizioni", "norme", "prescrizioni", "content", "provisions", "requirements"),
        "This is an article lookup query - expand with article variants and context",
    ),
    QueryIntent.TIMELINE: ExpansionStrategy(
        ExpansionMethod.ADD_TERMS,
        ("scadenze", "deadline", "timeline", "quando", "date", "periodo", "deadlines", "when", "dates", "period"),
    ),
    QueryIntent.CAUSES_EFFECTS: ExpansionStrategy(
        ExpansionMethod.ADD_TERMS,
        ("causa", "effetto", "conseguenza", "impatto", "cause", "effect", "consequence", "impact", "result"),
    ),
    QueryIntent.META: ExpansionStrategy(ExpansionMethod.NONE),
    QueryIntent.EXPLORATORY: ExpansionStrategy(
        ExpansionMethod.LLM_GUIDED,
        context="This is an exploratory query - expand with neighbouring topics and related terms",
    ),
    QueryIntent.GENERAL: ExpansionStrategy(
        ExpansionMethod.LLM_GUIDED,
        context="This is a general query - expand with synonyms and related terms",
    ),
}

_EXPANSION_PROMPT = """You are a semantic query expander for a document knowledge base.

Original query: "{query}"
Intent: {intent}
{context_line}{history_block}
Expand this query by adding:
1. Related terms and synonyms in both Italian and English
2. Common acronym expansions (e.g., GDPR -> General Data Protection Regulation)
3. Relevant domain context for {intent} queries
{terms_line}
Rules:
- Keep the expansion concise (max 30-40 words total)
- Focus on terms that would appear in relevant documents
- Do NOT add questions or complete sentences
- Do NOT change the original intent
- If the query refers to something from the recent conversation (e.g. "that folder", "it"), name it explicitly

Respond with ONLY the expanded query text, nothing else."""


def article_variants(query: str, article_number: int, context_terms: tuple[str, ...]) -> str:
    """Query plus canonical numbering variants and contextual phrases for one article."""
    n = article_number
    variants = [f"Articolo {n}", f"Art. {n}", f"articolo {n}", f"art {n}", f"Article {n}"]
    phrases = [f"{term} articolo {n}" for term in context_terms]
    return f"{query} {' '.join(variants)} {' '.join(phrases)}"


def _clean_expansion(raw: str, original: str) -> str:
    text = (raw or "").strip()
    if "\n" in text:
        text = text.split("\n", 1)[0].strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'`":
        text = text[1:-1].strip()
    if not text:
        return original
    if normalize_query(original) not in normalize_query(text):
        text = f"{original} {text}"
    return text


class QueryExpander:
    """Rewrites a query per its intent. Never raises."""

    def __init__(
        self,
        llm: LLM,
        cache: QueryCache,
        *,
        enabled: bool = ENABLE_QUERY_EXPANSION,
        ttl: float = QUERY_CACHE_TTL_SECONDS,
    ) -> None:
        self._llm = llm
        self._cache = cache
        self._enabled = enabled
        self._ttl = ttl

    async def expand(
        self,
        query: str,
        analysis: QueryAnalysis,
        history: list[dict[str, Any]] | None = None,
    ) -> str:
        logger.info("[query_expander:expand] IN  query=%r intent=%s", query[:200], analysis.intent.value)
        if not self._enabled:
            return query
        try:
            strategy = EXPANSION_STRATEGIES.get(analysis.intent)
            if strategy is None or strategy.method == ExpansionMethod.NONE or analysis.is_meta:
                logger.info("[query_expander:expand] OUT no expansion for intent=%s", analysis.intent.value)
                return query

            window = recent_window(history)
            key = f"{CACHE_NAMESPACE}:{analysis.intent.value}:{normalize_query(query)}"
            if not window:
                cached = self._cache.get(key)
                if isinstance(cached, str) and cached:
                    logger.info("[query_expander:expand] OUT cache hit expanded=%r", cached[:150])
                    return cached

            expanded = await self._apply(query, analysis, strategy, window)
            if not window and expanded != query:
                self._cache.put(key, expanded, self._ttl)
            logger.info("[query_expander:expand] OUT method=%s expanded=%r", strategy.method.value, expanded[:150])
            return expanded
        except Exception as e:
            logger.warning("[query_expander:expand] failed, using original query: %s", e)
            return query

    async def _apply(
        self,
        query: str,
        analysis: QueryAnalysis,
        strategy: ExpansionStrategy,
        window: list[dict[str, str]],
    ) -> str:
        method = strategy.method
        if method == ExpansionMethod.ARTICLE_VARIANTS:
            if analysis.article_number:
                return article_variants(query, analysis.article_number, strategy.terms)
            method = ExpansionMethod.LLM_GUIDED
        if method == ExpansionMethod.PER_TERM:
            if analysis.is_comparative and len(analysis.comparative_terms) >= 2:
                return await self._expand_terms(query, analysis.comparative_terms, strategy)
            method = ExpansionMethod.LLM_GUIDED
        if method == ExpansionMethod.LLM_GUIDED:
            return await self._expand_with_llm(query, analysis.intent, strategy, window)
        if strategy.terms:
            return f"{query} {' '.join(strategy.terms)}"
        return query

    async def _expand_terms(self, query: str, terms: tuple[str, ...], strategy: ExpansionStrategy) -> str:
        """Expand each comparative term on its own and append the results to the query."""
        results = await asyncio.gather(
            *(self._expand_with_llm(term, QueryIntent.COMPARISON, strategy, []) for term in terms),
            return_exceptions=True,
        )
        parts = []
        for term, result in zip(terms, results):
            if isinstance(result, BaseException):
                logger.warning("[query_expander:_expand_terms] term=%r failed: %s", term, result)
                parts.append(term)
            else:
                parts.append(result)
        return f"{query} {' '.join(parts)}"

    async def _expand_with_llm(
        self,
        query: str,
        intent: QueryIntent,
        strategy: ExpansionStrategy,
        window: list[dict[str, str]],
    ) -> str:
        prompt = _EXPANSION_PROMPT.format(
            query=query,
            intent=intent.value,
            context_line=f"Context: {strategy.context}\n" if strategy.context else "",
            history_block=f"Recent conversation:\n{format_window(window)}\n" if window else "",
            terms_line=f"4. Include these intent-specific terms: {', '.join(strategy.terms)}" if strategy.terms else "",
        )
        raw = await self._llm.complete(prompt, max_tokens=EXPANSION_MAX_TOKENS, temperature=EXPANSION_TEMPERATURE)
        return _clean_expansion(raw, query)
