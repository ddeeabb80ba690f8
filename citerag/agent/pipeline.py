"""
Chat pipeline: preparation graph → streamed generation → citation reconciliation → delivery.

Every run ends with exactly one terminal event on the controller (done or
error). Persisting the exchange is dispatched in the background after done.
First-turn answers grounded only in the knowledge base are cached by
normalized question and replayed through reconciliation on a repeat.
"""

import logging
from typing import Any, Callable

from citerag.agent.graph import build_prep_graph, initial_state, merge_update
from citerag.agent.llm import LLMClient
from citerag.agent.prompts import build_system_prompt, build_user_prompt
from citerag.api.streaming import StreamController
from citerag.core.background import BackgroundDispatcher
from citerag.core.cache import QueryCache, build_query_cache, normalize_query
from citerag.core.config import ENABLE_RESPONSE_CACHE, RESPONSE_CACHE_TTL_SECONDS
from citerag.core.errors import GenerationError, ServiceUnavailableError
from citerag.core.session_store import get_history, save_exchange
from citerag.schemas.evidence import Source
from citerag.schemas.query import ChatRequest
from citerag.services.citations import reconcile_citations
from citerag.services.protocols import LLM
from citerag.services.query_analyzer import QueryAnalyzer
from citerag.services.query_expander import QueryExpander
from citerag.services.retrieval_service import FusionEngine
from citerag.services.vector_store import HFEmbedder, MilvusStore
from citerag.services.web_search import build_web_searcher

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong while answering. Please try again."
GENERATION_HISTORY_MESSAGES = 6
FALLBACK_CHUNK_WORDS = 8

# Status shown after each preparation step completes
NEXT_STATUS: dict[str, str] = {
    "analyze": "Refining the search...",
    "expand": "Searching the knowledge base...",
    "retrieve": "Evaluating sources...",
    "catalog": "Evaluating sources...",
    "evaluate": "Generating the answer...",
    "web_search": "Generating the answer...",
}


def _word_chunks(text: str, words_per_chunk: int = FALLBACK_CHUNK_WORDS) -> list[str]:
    words = text.split(" ")
    return [
        " ".join(words[i : i + words_per_chunk]) + (" " if i + words_per_chunk < len(words) else "")
        for i in range(0, len(words), words_per_chunk)
    ]


class ChatPipeline:
    def __init__(
        self,
        prep_graph: Any,
        llm: LLM,
        dispatcher: BackgroundDispatcher,
        history_loader: Callable[[str], list[dict[str, Any]]] = get_history,
        persist: Callable[[str, str, str], None] = save_exchange,
        response_cache: QueryCache | None = None,
        response_ttl: float = RESPONSE_CACHE_TTL_SECONDS,
    ) -> None:
        self._graph = prep_graph
        self._llm = llm
        self._dispatcher = dispatcher
        self._history_loader = history_loader
        self._persist = persist
        self._response_cache = response_cache
        self._response_ttl = response_ttl

    async def run(self, request: ChatRequest, controller: StreamController) -> None:
        question = request.question.strip()
        logger.info(
            "[pipeline:run] START question=%r session_id=%s web_search_enabled=%s",
            question[:200], request.session_id[:16], request.web_search_enabled,
        )
        try:
            if not question:
                raise ValueError("question is required")
            history = self._history_loader(request.session_id)
            cache_key = self._response_key(question, request.web_search_enabled) if not history else None
            if cache_key is not None and self._replay_cached(cache_key, request.session_id, question, controller):
                return
            controller.send_status("Analyzing your question...")
            state: dict[str, Any] = dict(initial_state(question, history, request.web_search_enabled))
            async for event in self._graph.astream(state, stream_mode="updates"):
                # event: {node_name: state_update}
                for node_name, update in event.items():
                    merge_update(state, update)
                    if node_name in NEXT_STATUS:
                        controller.send_status(NEXT_STATUS[node_name])
                if controller.closed:
                    logger.info("[pipeline:run] consumer gone during preparation; stopping")
                    return

            evidence = state["fusion"].items
            web_evidence = state.get("web_evidence") or []
            sources_too_weak = state["decision"].factors.get("base_sources_too_weak", False)
            system_prompt = build_system_prompt(state["analysis"], evidence, web_evidence, sources_too_weak)
            user_prompt = build_user_prompt(question, evidence, web_evidence)
            answer = await self._generate(system_prompt, user_prompt, history[-GENERATION_HISTORY_MESSAGES:], controller)
            if controller.closed:
                logger.info("[pipeline:run] consumer gone during generation; stopping")
                return

            reconciled = reconcile_citations(answer, [*evidence, *web_evidence])
            controller.send_text_complete(reconciled.text)
            controller.send_done(reconciled.sources)
            self._dispatcher.dispatch("save_exchange", self._persist, request.session_id, question, reconciled.text)
            if cache_key is not None and not web_evidence:
                cached = {"text": reconciled.text, "sources": [s.model_dump(mode="json") for s in reconciled.sources]}
                self._dispatcher.dispatch("cache_response", self._response_cache.put, cache_key, cached, self._response_ttl)
            logger.info(
                "[pipeline:run] END answer_len=%d kb_sources=%d web_sources=%d evidence=%d web=%d",
                len(reconciled.text), len(reconciled.knowledge_base_sources), len(reconciled.web_sources),
                len(evidence), len(web_evidence),
            )
        except ServiceUnavailableError as e:
            logger.warning("[pipeline:run] service unavailable: %s", e.message)
            controller.send_error(e.message)
        except ValueError as e:
            controller.send_error(str(e))
        except Exception:
            logger.exception("[pipeline:run] pipeline failed")
            controller.send_error(GENERIC_ERROR)
        finally:
            controller.close()

    def _response_key(self, question: str, web_search_enabled: bool) -> str | None:
        if self._response_cache is None:
            return None
        return f"response:{'web' if web_search_enabled else 'kb'}:{normalize_query(question)}"

    def _replay_cached(self, key: str, session_id: str, question: str, controller: StreamController) -> bool:
        """Deliver a cached answer, re-reconciled against its stored sources. False on a miss."""
        cached = self._response_cache.get(key)
        if not cached or not (cached.get("text") or "").strip():
            return False
        sources = [Source.model_validate(s) for s in cached.get("sources") or []]
        reconciled = reconcile_citations(cached["text"], sources)
        controller.send_status(None)
        controller.send_text_complete(reconciled.text)
        controller.send_done(reconciled.sources)
        self._dispatcher.dispatch("save_exchange", self._persist, session_id, question, reconciled.text)
        logger.info("[pipeline:run] END cache hit answer_len=%d sources=%d", len(reconciled.text), len(reconciled.sources))
        return True

    async def _generate(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[dict[str, Any]],
        controller: StreamController,
    ) -> str:
        """Stream the answer; if streaming yields nothing, fall back to one non-streaming call."""
        parts: list[str] = []
        try:
            async for delta in self._llm.stream_generate(system_prompt, user_prompt, history):
                if not delta:
                    continue
                if not parts:
                    controller.send_status(None)
                parts.append(delta)
                controller.send_text(delta)
                if controller.closed:
                    break
        except Exception as e:
            if parts:
                logger.warning("[pipeline:_generate] stream interrupted after %d chunks: %s", len(parts), e)
                return "".join(parts)
            logger.warning("[pipeline:_generate] streaming failed, retrying without streaming: %s", e)
        if parts:
            return "".join(parts)

        text = (await self._llm.generate(system_prompt, user_prompt, history) or "").strip()
        if not text:
            raise GenerationError("The assistant could not generate an answer. Please try again.")
        controller.send_status(None)
        for chunk in _word_chunks(text):
            controller.send_text(chunk)
        return text


def build_pipeline() -> ChatPipeline:
    """Wire the production collaborators from config."""
    llm = LLMClient()
    cache = build_query_cache()
    embedder = HFEmbedder()
    store = MilvusStore()
    graph = build_prep_graph(
        analyzer=QueryAnalyzer(llm, cache),
        expander=QueryExpander(llm, cache),
        fusion=FusionEngine(embedder, store),
        embedder=embedder,
        catalog=store,
        web_searcher=build_web_searcher(),
    )
    return ChatPipeline(
        graph, llm, BackgroundDispatcher(),
        response_cache=cache if ENABLE_RESPONSE_CACHE else None,
    )
