"""
Streaming delivery: frames pipeline events and hands them to a per-request channel.

StreamController is a small state machine (open -> closed). Exactly one of
done/error closes it and everything afterwards is a no-op. Large final answers
are re-streamed as bounded text frames, and a frame that cannot be encoded
degrades to a short error frame instead of raising.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Protocol

from citerag.core.config import STREAM_MAX_FRAME_CHARS
from citerag.core.errors import ChannelClosedError
from citerag.schemas.evidence import Source
from citerag.schemas.stream import StreamEvent

logger = logging.getLogger(__name__)

FALLBACK_ERROR_MESSAGE = "Response too large to transmit. Please try a different query."


class Channel(Protocol):
    def send(self, frame: str) -> None: ...

    def close(self) -> None: ...


def encode_frame(event: StreamEvent) -> str:
    """Server-Sent Events frame: 'event: <type>' plus one JSON data line."""
    return f"event: {event.type.value}\ndata: {json.dumps(event.payload(), ensure_ascii=False)}\n\n"


def decode_frame(frame: str) -> dict[str, Any]:
    """Payload of an encoded frame (the JSON on its data line)."""
    for line in frame.splitlines():
        if line.startswith("data: "):
            return json.loads(line[len("data: "):])
    return {}


def split_text(content: str, size: int) -> list[str]:
    return [content[i : i + size] for i in range(0, len(content), size)]


class StreamController:
    def __init__(self, channel: Channel, max_frame_chars: int = STREAM_MAX_FRAME_CHARS) -> None:
        self._channel = channel
        self._max = max_frame_chars
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send_status(self, message: str | None) -> None:
        self._emit(StreamEvent.status(message))

    def send_text(self, chunk: str) -> None:
        if not chunk:
            return
        for part in split_text(chunk, self._max):
            if not self._emit(StreamEvent.text(part)):
                return

    def send_text_complete(self, content: str) -> None:
        """Replace the client's text; oversized content becomes a reset plus bounded text frames."""
        content = content or ""
        if len(content) <= self._max:
            self._emit(StreamEvent.text_complete(content))
            return
        logger.info("[streaming:send_text_complete] content_len=%d > %d, re-streaming in chunks", len(content), self._max)
        if not self._emit(StreamEvent.text_complete("")):
            return
        self.send_text(content)

    def send_done(self, sources: list[Source]) -> None:
        if self._emit(StreamEvent.done(sources)):
            self.close()

    def send_error(self, message: str) -> None:
        if self._emit(StreamEvent.failed(message)):
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._channel.close()
        except Exception as e:
            logger.debug("[streaming:close] channel close failed: %s", e)

    def _emit(self, event: StreamEvent) -> bool:
        """Encode and send one frame. Returns False when nothing more may be sent."""
        if self._closed:
            return False
        try:
            frame = encode_frame(event)
        except Exception as e:
            logger.error("[streaming:_emit] failed to encode %s frame: %s", event.type.value, e)
            self._send_fallback_error()
            return False
        try:
            self._channel.send(frame)
        except ChannelClosedError:
            logger.info("[streaming:_emit] consumer disconnected; closing")
            self.close()
            return False
        except Exception as e:
            logger.error("[streaming:_emit] channel send failed: %s", e)
            self.close()
            return False
        return True

    def _send_fallback_error(self) -> None:
        try:
            self._channel.send(encode_frame(StreamEvent.failed(FALLBACK_ERROR_MESSAGE)))
        except Exception as e:
            logger.error("[streaming:_send_fallback_error] giving up: %s", e)
        self.close()


class QueueChannel:
    """asyncio.Queue-backed channel; None marks the end of the stream."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._disconnected = False

    def send(self, frame: str) -> None:
        if self._disconnected:
            raise ChannelClosedError("consumer disconnected")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def disconnect(self) -> None:
        """Called from the consumer side when the client goes away."""
        self._disconnected = True

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class ListChannel:
    """Collects frames in memory (non-streaming endpoint, tests)."""

    def __init__(self) -> None:
        self.frames: list[str] = []
        self.closed = False

    def send(self, frame: str) -> None:
        if self.closed:
            raise ChannelClosedError("channel closed")
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True

    def payloads(self) -> list[dict[str, Any]]:
        return [decode_frame(f) for f in self.frames]
