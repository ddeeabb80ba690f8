"""
API route aggregator: register endpoints; no logic, only delegate to handlers.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from citerag.agent.pipeline import ChatPipeline
from citerag.api.handlers import collect_chat, get_pipeline, stream_chat
from citerag.schemas.query import ChatRequest, ChatResponse
from citerag.services.vector_store import MilvusStore

logger = logging.getLogger(__name__)
router = APIRouter()


def get_catalog() -> MilvusStore:
    return MilvusStore()


# --- System ---

@router.get("/", tags=["system"])
def root():
    return {"status": "citerag backend running"}


@router.get("/health", tags=["system"])
def health():
    return {"ok": True}


@router.get("/sources", tags=["knowledge base"], summary="List documents in the knowledge base")
async def get_sources(catalog: MilvusStore = Depends(get_catalog)) -> dict:
    """Return source names currently in the vector store."""
    try:
        sources = await catalog.list_sources()
    except Exception as e:
        logger.warning("Failed to list sources: %s", e)
        sources = []
    return {"sources": sources}


# --- Chat ---

@router.post(
    "/chat",
    response_model=ChatResponse,
    tags=["chat"],
    summary="Ask a question (sync)",
    description="Runs the full pipeline and returns the reconciled answer with only the cited sources. 503 when a required service is unavailable.",
)
async def post_chat(body: ChatRequest, pipeline: ChatPipeline = Depends(get_pipeline)) -> ChatResponse:
    logger.info("[api:post_chat] IN  question=%r session_id=%s", body.question, body.session_id)
    response = await collect_chat(pipeline, body)
    logger.info("[api:post_chat] OUT answer_len=%d sources=%d", len(response.answer), len(response.sources))
    return response


@router.post(
    "/chat/stream",
    tags=["chat"],
    summary="Ask a question (SSE stream)",
    description="Events: status, text, text_complete, done, error. Exactly one of done/error ends the stream.",
)
def post_chat_stream(body: ChatRequest, pipeline: ChatPipeline = Depends(get_pipeline)) -> StreamingResponse:
    logger.info("[api:post_chat_stream] IN  question=%r session_id=%s", body.question, body.session_id)
    return StreamingResponse(
        stream_chat(pipeline, body),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
