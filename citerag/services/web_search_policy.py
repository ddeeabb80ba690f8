"""
Decides whether knowledge-base evidence needs web evidence alongside it.

Pure function over evidence quality and query signals; no I/O.
"""

import logging

from citerag.core.config import (
    WEAK_FEW_RESULTS_COUNT,
    WEAK_FEW_RESULTS_SIMILARITY,
    WEAK_MANY_RESULTS_SIMILARITY,
)
from citerag.schemas.analysis import QueryAnalysis, QueryIntent
from citerag.schemas.evidence import EvidenceItem, WebSearchDecision

logger = logging.getLogger(__name__)


def evaluate_web_search_need(
    evidence: list[EvidenceItem],
    average_similarity: float,
    analysis: QueryAnalysis,
    web_search_enabled: bool,
    has_context: bool,
) -> WebSearchDecision:
    """
    Four independent paths, OR-combined: weak knowledge-base evidence, a temporal
    query, an explicit web request, or a general query with no context to use.
    The last three apply only when the user has enabled web search.
    """
    count = len(evidence)
    reasons: list[str] = []

    base_too_weak = (
        count == 0
        or (count < WEAK_FEW_RESULTS_COUNT and average_similarity < WEAK_FEW_RESULTS_SIMILARITY)
        or (count >= WEAK_FEW_RESULTS_COUNT and average_similarity < WEAK_MANY_RESULTS_SIMILARITY)
    )
    if base_too_weak:
        if count == 0:
            reasons.append("No search results found")
        elif count < WEAK_FEW_RESULTS_COUNT:
            reasons.append(f"Low result count ({count}) with weak similarity ({average_similarity:.2f})")
        else:
            reasons.append(f"Weak semantic similarity ({average_similarity:.2f}) across {count} results")

    temporal = web_search_enabled and analysis.has_temporal
    if temporal:
        terms = ", ".join(analysis.temporal_terms) or "temporal indicators present"
        reasons.append(f"Temporal query detected: {terms}")

    explicit = web_search_enabled and analysis.has_web_search_request
    if explicit:
        reasons.append(f'Explicit web search request: "{analysis.web_search_command or "web search command detected"}"')

    preference = web_search_enabled and analysis.intent == QueryIntent.GENERAL and not has_context
    if preference:
        reasons.append("User preference: web search enabled for general query without context")

    decision = WebSearchDecision(
        required=base_too_weak or temporal or explicit or preference,
        reasons=tuple(reasons),
        factors={
            "base_sources_too_weak": base_too_weak,
            "needs_web_for_temporal": temporal,
            "needs_web_for_explicit_request": explicit,
            "user_wants_web_search": preference,
        },
    )
    logger.info(
        "[web_search_policy] OUT required=%s count=%d avg=%.3f reasons=%s",
        decision.required, count, average_similarity, list(decision.reasons),
    )
    return decision
