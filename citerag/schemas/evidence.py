"""
Evidence handed to generation and the sources shown to the client.

EvidenceItem is owned by retrieval; Source is produced only by citation
reconciliation from the evidence the answer actually cites.
"""

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SourceKind(str, Enum):
    KNOWLEDGE_BASE = "knowledge_base"
    WEB = "web"


def _clamp_unit(value: float | None) -> float | None:
    if value is None:
        return None
    return min(1.0, max(0.0, float(value)))


class EvidenceItem(BaseModel):
    """A retrieved fragment as presented to the generator."""

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    vector_score: float | None = None
    text_score: float | None = None
    source_label: str = ""
    ordinal: int = Field(0, ge=0, description="1-based position in the prompt context; 0 until assigned.")
    kind: SourceKind = SourceKind.KNOWLEDGE_BASE
    url: str | None = None
    document_id: str | None = None
    chunk_index: int | None = None

    @field_validator("similarity", mode="before")
    @classmethod
    def _clamp_similarity(cls, v: float) -> float:
        return _clamp_unit(v)

    @field_validator("vector_score", "text_score", mode="before")
    @classmethod
    def _clamp_scores(cls, v: float | None) -> float | None:
        return _clamp_unit(v)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: object) -> str:
        return str(v)


class Source(BaseModel):
    """A cited piece of evidence as exposed to the client, numbered densely per kind."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=1)
    kind: SourceKind
    label: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    url: str | None = None
    document_id: str | None = None
    preview: str = ""

    @field_validator("similarity", mode="before")
    @classmethod
    def _clamp_similarity(cls, v: float) -> float:
        return _clamp_unit(v)


@dataclass(frozen=True)
class WebSearchDecision:
    required: bool
    reasons: tuple[str, ...] = ()
    factors: dict[str, bool] = field(default_factory=dict)
