"""
API handlers: run the pipeline against a channel and map results to HTTP.

Responsibility: Bridge HTTP types and the pipeline. Lives in the API layer so
services stay free of FastAPI/HTTP types.
"""

import asyncio
import logging
from functools import lru_cache
from typing import AsyncIterator

from fastapi import HTTPException

from citerag.agent.pipeline import ChatPipeline, build_pipeline
from citerag.api.streaming import ListChannel, QueueChannel, StreamController
from citerag.schemas.evidence import Source
from citerag.schemas.query import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_pipeline() -> ChatPipeline:
    """Process-wide pipeline (FastAPI dependency; tests override it)."""
    return build_pipeline()


async def stream_chat(pipeline: ChatPipeline, body: ChatRequest) -> AsyncIterator[str]:
    """
    Yield SSE frames while the pipeline runs as a separate task. If the client
    disconnects, the generator is cancelled: the channel is marked gone, the
    controller closed and the producer cancelled.
    """
    channel = QueueChannel()
    controller = StreamController(channel)
    producer = asyncio.create_task(pipeline.run(body, controller), name="chat_pipeline")
    finished = False
    try:
        async for frame in channel.frames():
            yield frame
        finished = True
        await producer
    finally:
        if not finished:
            logger.info("[handlers:stream_chat] client disconnected session_id=%s", body.session_id[:16])
            channel.disconnect()
            controller.close()
            producer.cancel()


async def collect_chat(pipeline: ChatPipeline, body: ChatRequest) -> ChatResponse:
    """Run the pipeline to completion and assemble the final answer; terminal error -> 503."""
    channel = ListChannel()
    await pipeline.run(body, StreamController(channel))
    answer = ""
    sources: list[Source] = []
    for payload in channel.payloads():
        kind = payload.get("type")
        if kind == "text_complete":
            answer = payload.get("content", "")
        elif kind == "text":
            answer += payload.get("content", "")
        elif kind == "done":
            sources = [Source.model_validate(s) for s in payload.get("sources") or []]
        elif kind == "error":
            raise HTTPException(status_code=503, detail=payload.get("error") or "Service unavailable")
    return ChatResponse(answer=answer, sources=sources)
