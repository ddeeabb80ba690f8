"""
Vector store client: Milvus Cloud connection, embeddings (HF Inference API), and chunk lookup.

Responsibility: embed queries, run hybrid (vector + keyword) retrieval, look up
chunks by document name, and describe the collection. Milvus calls are blocking
and run in a worker thread.
"""

import asyncio
import logging
import re
from typing import Any

import httpx

from citerag.core.config import (
    COLLECTION_NAME,
    EMBED_API_TIMEOUT,
    HF_API_KEY,
    HF_EMBED_MODEL,
    IDENTIFIER_MATCH_SIMILARITY,
    MILVUS_TOKEN,
    MILVUS_URI,
)
from citerag.core.errors import ServiceUnavailableError
from citerag.schemas.evidence import EvidenceItem

logger = logging.getLogger(__name__)

HF_API_URL_ROUTER = (
    "https://router.huggingface.co/hf-inference/models/"
    f"{HF_EMBED_MODEL}/pipeline/feature-extraction"
)
HF_API_URL_STANDARD = f"https://api-inference.huggingface.co/models/{HF_EMBED_MODEL}"

OUTPUT_FIELDS = ["text", "source", "chunk_id"]
# Hybrid scoring needs more vector candidates than the final k
CANDIDATE_MULTIPLIER = 3
_IDENTIFIER_SAFE = re.compile(r"[^\w.\-]", re.UNICODE)


def _case_variants(token: str) -> list[str]:
    """Milvus `like` is case-sensitive; match the common spellings of a token."""
    return list(dict.fromkeys([token, token.lower(), token.upper(), token.capitalize()]))


def _normalize(vec: list[float]) -> list[float]:
    norm = sum(x * x for x in vec) ** 0.5
    if norm == 0:
        norm = 1.0
    return [x / norm for x in vec]


class HFEmbedder:
    """Embeds query text with the HF feature-extraction API (router first, then standard endpoint)."""

    def __init__(self, api_key: str = HF_API_KEY, timeout: float = EMBED_API_TIMEOUT) -> None:
        self._api_key = api_key
        self._timeout = timeout

    async def embed(self, text: str) -> list[float]:
        if not self._api_key:
            raise ServiceUnavailableError("Embedding service is not configured (HF_API_KEY missing).")
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        payload = {"inputs": [text], "options": {"wait_for_model": True}}
        response = None
        last_error: str | None = None
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for api_url in (HF_API_URL_ROUTER, HF_API_URL_STANDARD):
                try:
                    response = await client.post(api_url, json=payload, headers=headers)
                except httpx.HTTPError as e:
                    last_error = str(e)
                    logger.warning("[vector_store:embed] %s request failed: %s", api_url, e)
                    continue
                if response.status_code == 200:
                    break
                last_error = response.text[:200]
                if response.status_code != 403:
                    break

        if response is None or response.status_code != 200:
            status = response.status_code if response is not None else None
            logger.error("[vector_store:embed] failed status=%s error=%s", status, last_error)
            if status == 503:
                raise ServiceUnavailableError("The embedding model is loading. Please retry shortly.")
            raise ServiceUnavailableError("Embedding service is unavailable.")

        result = response.json()
        vec = result[0] if isinstance(result, list) and result and isinstance(result[0], list) else result
        if not isinstance(vec, list) or not vec:
            raise ServiceUnavailableError("Embedding service returned an empty vector.")
        return _normalize([float(x) for x in vec])


def get_milvus_client() -> Any:
    """Connect to Milvus Cloud and return a client."""
    if not MILVUS_URI or not MILVUS_TOKEN:
        raise ServiceUnavailableError("Knowledge base is not configured (MILVUS_URI / MILVUS_TOKEN missing).")

    from pymilvus import MilvusClient

    client = MilvusClient(uri=MILVUS_URI, token=MILVUS_TOKEN)
    logger.info("Milvus connection established")
    return client


def keyword_score(query: str, text: str) -> float:
    """Fraction of the query's words (2+ chars) present in the text."""
    words = {w for w in re.findall(r"\w+", (query or "").lower()) if len(w) >= 2}
    if not words:
        return 0.0
    haystack = (text or "").lower()
    return sum(1 for w in words if w in haystack) / len(words)


def mentions_article(text: str, article_number: int) -> bool:
    pattern = rf"\b(?:articolo|article|art\.?)\s*{article_number}\b"
    return re.search(pattern, text or "", re.IGNORECASE) is not None


def _hit_fields(hit: dict) -> tuple[Any, dict]:
    entity = hit.get("entity") if isinstance(hit.get("entity"), dict) else hit
    return hit.get("id", entity.get("id")), entity


class MilvusStore:
    """Retriever and Catalog over one Milvus collection."""

    def __init__(self, client: Any | None = None, collection_name: str = COLLECTION_NAME) -> None:
        self._client = client
        self._collection = collection_name

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_milvus_client()
        return self._client

    async def retrieve(
        self,
        vector: list[float],
        text: str,
        k: int,
        similarity_threshold: float,
        vector_weight: float,
        article_filter: int | None = None,
    ) -> list[EvidenceItem]:
        logger.info(
            "[vector_store:retrieve] IN  text=%r k=%d threshold=%.2f vector_weight=%.2f article=%s",
            text[:120], k, similarity_threshold, vector_weight, article_filter,
        )
        hits = await asyncio.to_thread(self._search, vector, k * CANDIDATE_MULTIPLIER)
        items: list[EvidenceItem] = []
        for hit in hits:
            hit_id, entity = _hit_fields(hit)
            content = entity.get("text") or ""
            if article_filter is not None and not mentions_article(content, article_filter):
                continue
            vector_score = min(1.0, max(0.0, float(hit.get("distance", hit.get("score", 0.0)))))
            text_score = keyword_score(text, content)
            similarity = vector_weight * vector_score + (1 - vector_weight) * text_score
            if similarity < similarity_threshold:
                continue
            source = entity.get("source") or ""
            items.append(EvidenceItem(
                id=hit_id,
                content=content,
                similarity=similarity,
                vector_score=vector_score,
                text_score=text_score,
                source_label=source,
                document_id=source,
                chunk_index=entity.get("chunk_id"),
            ))
        items.sort(key=lambda e: e.similarity, reverse=True)
        items = items[:k]
        logger.info(
            "[vector_store:retrieve] OUT hits=%d kept=%d top_sources=%s top_scores=%s",
            len(hits), len(items), [e.source_label for e in items[:5]], [round(e.similarity, 4) for e in items[:5]],
        )
        return items

    def _search(self, vector: list[float], limit: int) -> list[dict]:
        if not self.client.has_collection(self._collection):
            return []
        results = self.client.search(
            collection_name=self._collection,
            data=[vector],
            limit=limit,
            output_fields=OUTPUT_FIELDS,
        )
        # results: list of list of hits (one list per query vector)
        return list(results[0]) if results else []

    async def retrieve_by_identifier(self, tokens: list[str], limit: int) -> list[EvidenceItem]:
        """Chunks whose document name contains any of the tokens; fixed identifier-match scores."""
        safe = [t for t in (_IDENTIFIER_SAFE.sub("", tok) for tok in tokens) if t]
        logger.info("[vector_store:retrieve_by_identifier] IN  tokens=%s limit=%d", safe, limit)
        if not safe:
            return []
        expr = " or ".join(f'source like "%{v}%"' for t in safe for v in _case_variants(t))
        rows = await asyncio.to_thread(self._query, expr, limit)
        items = [
            EvidenceItem(
                id=row.get("id"),
                content=row.get("text") or "",
                similarity=IDENTIFIER_MATCH_SIMILARITY,
                vector_score=IDENTIFIER_MATCH_SIMILARITY,
                text_score=1.0,
                source_label=row.get("source") or "",
                document_id=row.get("source") or "",
                chunk_index=row.get("chunk_id"),
            )
            for row in rows
        ]
        logger.info("[vector_store:retrieve_by_identifier] OUT items=%d sources=%s", len(items), sorted({i.source_label for i in items}))
        return items

    def _query(self, expr: str, limit: int) -> list[dict]:
        if not self.client.has_collection(self._collection):
            return []
        return list(self.client.query(
            collection_name=self._collection,
            filter=expr,
            limit=limit,
            output_fields=["id", *OUTPUT_FIELDS],
        ))

    async def list_sources(self, limit: int = 16_384) -> list[str]:
        """Distinct document source names in the collection."""
        rows = await asyncio.to_thread(self._query, "", limit)
        return sorted({(r.get("source") or "").strip() for r in rows if (r.get("source") or "").strip()})

    async def get_collection_stats(self) -> dict[str, Any]:
        """Total chunks, source count and source names."""
        sources = await self.list_sources()
        total = 0
        if sources:
            stats = await asyncio.to_thread(self.client.get_collection_stats, self._collection)
            total = int(stats.get("row_count", 0)) if isinstance(stats, dict) else 0
        return {
            "collection_name": self._collection,
            "total_chunks": total,
            "source_count": len(sources),
            "sources": sources,
        }
