"""
Protocols for the external capabilities the pipeline consumes.

The Milvus/HF store, the web searcher and the LLM client satisfy these; tests
substitute small fakes.
"""

from typing import Any, AsyncIterator, Protocol, runtime_checkable

from citerag.schemas.evidence import EvidenceItem


@runtime_checkable
class Embedder(Protocol):
    """Text to (normalized) vector."""

    async def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class Retriever(Protocol):
    """Hybrid similarity retrieval plus identifier (filename) lookup."""

    async def retrieve(
        self,
        vector: list[float],
        text: str,
        k: int,
        similarity_threshold: float,
        vector_weight: float,
        article_filter: int | None = None,
    ) -> list[EvidenceItem]: ...

    async def retrieve_by_identifier(self, tokens: list[str], limit: int) -> list[EvidenceItem]: ...


@runtime_checkable
class Catalog(Protocol):
    """Read-only view over the documents in the knowledge base."""

    async def list_sources(self) -> list[str]: ...

    async def get_collection_stats(self) -> dict[str, Any]: ...


@runtime_checkable
class WebSearcher(Protocol):
    """Returns dicts with title, url, content and score."""

    async def search_web(self, query: str, max_results: int) -> list[dict[str, Any]]: ...


@runtime_checkable
class LLM(Protocol):
    """Single-shot completion for analysis/expansion, and answer generation."""

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float = 0.0,
        json_mode: bool = False,
    ) -> str: ...

    def stream_generate(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[dict[str, Any]],
    ) -> AsyncIterator[str]: ...

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[dict[str, Any]],
    ) -> str: ...
