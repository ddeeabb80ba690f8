"""
LangGraph preparation graph: analyze → expand → (retrieve | catalog) → evaluate → (web_search) → END.

Produces everything generation needs: the analysis, the fused evidence, the
web-search decision and any web evidence. Generation itself runs in the
pipeline so it can stream.
"""

import logging
from typing import Any, Literal, TypedDict

from langgraph.graph import END, StateGraph

from citerag.core.config import WEB_MAX_RESULTS
from citerag.core.errors import ServiceUnavailableError
from citerag.schemas.analysis import QueryAnalysis
from citerag.schemas.evidence import EvidenceItem, WebSearchDecision
from citerag.services.protocols import Catalog, Embedder, WebSearcher
from citerag.services.query_analyzer import QueryAnalyzer
from citerag.services.query_expander import QueryExpander
from citerag.services.retrieval_service import FusionEngine, FusionResult, catalog_evidence
from citerag.services.web_search import web_results_to_evidence
from citerag.services.web_search_policy import evaluate_web_search_need

logger = logging.getLogger(__name__)


class PrepState(TypedDict, total=False):
    question: str
    history: list  # list of {"role": "user"|"assistant", "content": str}
    web_search_enabled: bool
    analysis: QueryAnalysis
    expanded_query: str
    fusion: FusionResult
    decision: WebSearchDecision
    web_evidence: list[EvidenceItem]


def initial_state(question: str, history: list, web_search_enabled: bool) -> PrepState:
    return {
        "question": question,
        "history": history,
        "web_search_enabled": web_search_enabled,
        "web_evidence": [],
    }


def build_prep_graph(
    analyzer: QueryAnalyzer,
    expander: QueryExpander,
    fusion: FusionEngine,
    embedder: Embedder,
    catalog: Catalog,
    web_searcher: WebSearcher,
):
    """Build and compile the preparation graph over the given collaborators."""

    async def _analyze(state: PrepState) -> dict:
        analysis = await analyzer.analyze(state["question"], state.get("history"))
        return {"analysis": analysis}

    async def _expand(state: PrepState) -> dict:
        expanded = await expander.expand(state["question"], state["analysis"], state.get("history"))
        return {"expanded_query": expanded}

    def _route_after_expand(state: PrepState) -> Literal["retrieve", "catalog"]:
        next_node = "catalog" if state["analysis"].is_structural_meta else "retrieve"
        logger.info("[graph:route_after_expand] -> %s", next_node)
        return next_node

    async def _retrieve(state: PrepState) -> dict:
        query = state.get("expanded_query") or state["question"]
        vector = await embedder.embed(query)
        result = await fusion.fuse(query, state["analysis"], vector, state["question"])
        return {"fusion": result}

    async def _catalog(state: PrepState) -> dict:
        try:
            result = await catalog_evidence(catalog, state["analysis"].meta_type)
        except ServiceUnavailableError:
            raise
        except Exception as e:
            logger.exception("[graph:catalog] catalog lookup failed")
            raise ServiceUnavailableError("Knowledge base is unavailable.") from e
        return {"fusion": result}

    def _evaluate(state: PrepState) -> dict:
        result = state["fusion"]
        decision = evaluate_web_search_need(
            result.items,
            result.average_similarity,
            state["analysis"],
            state.get("web_search_enabled", False),
            has_context=bool(result.items),
        )
        return {"decision": decision}

    def _route_after_evaluate(state: PrepState) -> Literal["web_search", "__end__"]:
        wants = state["decision"].required and state.get("web_search_enabled", False)
        logger.info("[graph:route_after_evaluate] required=%s enabled=%s", state["decision"].required, state.get("web_search_enabled"))
        return "web_search" if wants else END

    async def _web_search(state: PrepState) -> dict:
        try:
            results = await web_searcher.search_web(state["question"], WEB_MAX_RESULTS)
        except Exception as e:
            logger.warning("[graph:web_search] failed, continuing without web evidence: %s", e)
            results = []
        return {"web_evidence": web_results_to_evidence(results)}

    graph = StateGraph(PrepState)
    graph.add_node("analyze", _analyze)
    graph.add_node("expand", _expand)
    graph.add_node("retrieve", _retrieve)
    graph.add_node("catalog", _catalog)
    graph.add_node("evaluate", _evaluate)
    graph.add_node("web_search", _web_search)

    graph.set_entry_point("analyze")
    graph.add_edge("analyze", "expand")
    graph.add_conditional_edges("expand", _route_after_expand)
    graph.add_edge("retrieve", "evaluate")
    graph.add_edge("catalog", "evaluate")
    graph.add_conditional_edges("evaluate", _route_after_evaluate)
    graph.add_edge("web_search", END)
    return graph.compile()


def merge_update(state: dict[str, Any], update: dict[str, Any] | None) -> None:
    """Apply one node's update (graph.astream 'updates' mode) to a running copy of the state."""
    state.update(update or {})
