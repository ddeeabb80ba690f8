"""Schemas for events delivered over the streaming channel."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from citerag.schemas.evidence import Source


class StreamEventType(str, Enum):
    STATUS = "status"
    TEXT = "text"
    TEXT_COMPLETE = "text_complete"
    DONE = "done"
    ERROR = "error"


class StreamEvent(BaseModel):
    """One delivery frame. Only the field matching `type` is populated."""

    model_config = ConfigDict(frozen=True)

    type: StreamEventType
    message: str | None = None
    content: str | None = None
    sources: list[Source] | None = None
    error: str | None = None

    def payload(self) -> dict[str, Any]:
        """Wire payload: the type tag plus the type-specific field."""
        if self.type == StreamEventType.STATUS:
            return {"type": self.type.value, "message": self.message}
        if self.type in (StreamEventType.TEXT, StreamEventType.TEXT_COMPLETE):
            return {"type": self.type.value, "content": self.content or ""}
        if self.type == StreamEventType.DONE:
            return {
                "type": self.type.value,
                "sources": [s.model_dump(mode="json") for s in self.sources or []],
            }
        return {"type": self.type.value, "error": self.error or ""}

    @classmethod
    def status(cls, message: str | None) -> "StreamEvent":
        return cls(type=StreamEventType.STATUS, message=message)

    @classmethod
    def text(cls, content: str) -> "StreamEvent":
        return cls(type=StreamEventType.TEXT, content=content)

    @classmethod
    def text_complete(cls, content: str) -> "StreamEvent":
        return cls(type=StreamEventType.TEXT_COMPLETE, content=content)

    @classmethod
    def done(cls, sources: list[Source]) -> "StreamEvent":
        return cls(type=StreamEventType.DONE, sources=list(sources))

    @classmethod
    def failed(cls, message: str) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, error=message)
