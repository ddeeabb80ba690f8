"""Schemas for query analysis: intent, comparative terms and query signals."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class QueryIntent(str, Enum):
    COMPARISON = "comparison"
    DEFINITION = "definition"
    REQUIREMENTS = "requirements"
    PROCEDURE = "procedure"
    ARTICLE_LOOKUP = "article_lookup"
    META = "meta"
    TIMELINE = "timeline"
    CAUSES_EFFECTS = "causes_effects"
    EXPLORATORY = "exploratory"
    GENERAL = "general"


class ComparisonType(str, Enum):
    DIFFERENCES = "differences"
    SIMILARITIES = "similarities"
    GENERAL = "general"


class MetaType(str, Enum):
    STATS = "stats"
    LIST = "list"
    FOLDERS = "folders"
    STRUCTURE = "structure"


class MetaScope(str, Enum):
    """Structural meta queries ask about the collection; thematic ones about its contents."""

    STRUCTURAL = "structural"
    THEMATIC = "thematic"


class QueryAnalysis(BaseModel):
    """Everything the pipeline knows about a query before retrieval. Immutable."""

    model_config = ConfigDict(frozen=True)

    intent: QueryIntent = QueryIntent.GENERAL
    is_comparative: bool = False
    comparative_terms: tuple[str, ...] = ()
    comparison_type: ComparisonType | None = None
    article_number: int | None = Field(None, ge=1, le=999)
    is_meta: bool = False
    meta_type: MetaType | None = None
    meta_scope: MetaScope | None = None
    has_temporal: bool = False
    temporal_terms: tuple[str, ...] = ()
    has_web_search_request: bool = False
    web_search_command: str | None = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    from_cache: bool = False

    @model_validator(mode="after")
    def _comparative_needs_two_terms(self) -> "QueryAnalysis":
        if self.is_comparative and len(self.comparative_terms) < 2:
            raise ValueError("comparative analysis needs at least two comparative terms")
        return self

    @property
    def is_structural_meta(self) -> bool:
        return self.is_meta and self.meta_scope == MetaScope.STRUCTURAL

    def to_cache(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"from_cache"})

    @classmethod
    def from_cached(cls, data: dict[str, Any]) -> "QueryAnalysis":
        return cls.model_validate({**data, "from_cache": True})
