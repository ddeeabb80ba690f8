"""Schemas for the chat endpoints."""

from pydantic import BaseModel, Field

from citerag.schemas.evidence import Source


class ChatRequest(BaseModel):
    """Request body for POST /chat and POST /chat/stream. History is stored server-side by session_id."""

    question: str = Field(..., min_length=1, description="User question.")
    session_id: str = Field(..., min_length=1, description="Session ID; chat history is stored on the server for this session.")
    web_search_enabled: bool = Field(False, description="Allow the pipeline to consult the web when the knowledge base is weak or the user asks for it.")


class ChatResponse(BaseModel):
    """Response for POST /chat."""

    answer: str = Field(..., description="Reconciled answer with dense [cit:N] / [web:N] markers.")
    sources: list[Source] = Field(default_factory=list, description="Only the sources the answer cites, knowledge base first.")
