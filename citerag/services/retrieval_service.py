"""
Retrieval fusion: direct or per-term retrieval, dedup, ranking, backfill and identifier supplement.

Responsibility: turn an expanded query and its analysis into the ranked,
deduplicated evidence list handed to generation, with dense 1-based ordinals.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from citerag.core.config import (
    BACKFILL_MIN_RESULTS,
    COMPARATIVE_SIMILARITY_THRESHOLD,
    COMPARATIVE_TOP_K,
    FUSION_CAP,
    IDENTIFIER_LIMIT,
    IDENTIFIER_SIMILARITY_FLOOR,
    SIMILARITY_THRESHOLD,
    TOP_K,
    VECTOR_WEIGHT,
)
from citerag.core.errors import ServiceUnavailableError
from citerag.schemas.analysis import MetaType, QueryAnalysis
from citerag.schemas.evidence import EvidenceItem
from citerag.services.identifier_search import combine, extract_identifier_tokens, fallback_tokens
from citerag.services.protocols import Catalog, Embedder, Retriever

logger = logging.getLogger(__name__)


@dataclass
class FusionResult:
    items: list[EvidenceItem] = field(default_factory=list)
    comparative: bool = False
    backfilled: bool = False
    identifier_tokens: list[str] = field(default_factory=list)

    @property
    def average_similarity(self) -> float:
        return average_similarity(self.items)


def average_similarity(items: list[EvidenceItem]) -> float:
    return sum(i.similarity for i in items) / len(items) if items else 0.0


def merge_max(*groups: list[EvidenceItem]) -> list[EvidenceItem]:
    """Merge by id keeping the strictly higher similarity; first seen wins ties. Sorted descending."""
    best: dict[str, EvidenceItem] = {}
    for group in groups:
        for item in group:
            current = best.get(item.id)
            if current is None or item.similarity > current.similarity:
                best[item.id] = item
    return sorted(best.values(), key=lambda e: e.similarity, reverse=True)


def with_ordinals(items: list[EvidenceItem]) -> list[EvidenceItem]:
    """Copies numbered 1..N in list order."""
    return [item.model_copy(update={"ordinal": i}) for i, item in enumerate(items, start=1)]


class FusionEngine:
    def __init__(
        self,
        embedder: Embedder,
        retriever: Retriever,
        *,
        cap: int = FUSION_CAP,
        backfill_min: int = BACKFILL_MIN_RESULTS,
        vector_weight: float = VECTOR_WEIGHT,
    ) -> None:
        self._embedder = embedder
        self._retriever = retriever
        self._cap = cap
        self._backfill_min = backfill_min
        self._vector_weight = vector_weight

    async def fuse(
        self,
        expanded_query: str,
        analysis: QueryAnalysis,
        query_embedding: list[float],
        raw_query: str,
    ) -> FusionResult:
        logger.info(
            "[retrieval:fuse] IN  expanded=%r comparative=%s terms=%s article=%s",
            expanded_query[:150], analysis.is_comparative, list(analysis.comparative_terms), analysis.article_number,
        )
        result = FusionResult(comparative=analysis.is_comparative and len(analysis.comparative_terms) >= 2)
        if result.comparative:
            items = await self._comparative(analysis.comparative_terms, analysis.article_number)
            if len(items) < self._backfill_min:
                items = await self._backfill(items, expanded_query, query_embedding, analysis.article_number)
                result.backfilled = True
        else:
            items = await self._direct(expanded_query, query_embedding, analysis.article_number)

        items, result.identifier_tokens = await self._identifier_supplement(items, raw_query)
        result.items = with_ordinals(items)
        logger.info(
            "[retrieval:fuse] OUT items=%d avg_similarity=%.3f backfilled=%s identifier_tokens=%s sources=%s",
            len(result.items), result.average_similarity, result.backfilled,
            result.identifier_tokens, [i.source_label for i in result.items[:8]],
        )
        return result

    async def _direct(
        self, query: str, vector: list[float], article_number: int | None
    ) -> list[EvidenceItem]:
        try:
            items = await self._retriever.retrieve(
                vector, query, TOP_K, SIMILARITY_THRESHOLD, self._vector_weight, article_number
            )
        except ServiceUnavailableError:
            raise
        except Exception as e:
            logger.exception("[retrieval:_direct] retrieval failed")
            raise ServiceUnavailableError("Knowledge base search is unavailable.") from e
        return merge_max(items)[: self._cap]

    async def _comparative(self, terms: tuple[str, ...], article_number: int | None) -> list[EvidenceItem]:
        """One retrieval per term, concurrently; a failed term contributes nothing."""
        results = await asyncio.gather(*(self._term_branch(t, article_number) for t in terms), return_exceptions=True)
        groups: list[list[EvidenceItem]] = []
        for term, res in zip(terms, results):
            if isinstance(res, BaseException):
                logger.warning("[retrieval:_comparative] term=%r failed, treated as empty: %s", term, res)
                continue
            logger.info("[retrieval:_comparative] term=%r items=%d", term, len(res))
            groups.append(res)
        return merge_max(*groups)[: self._cap]

    async def _term_branch(self, term: str, article_number: int | None) -> list[EvidenceItem]:
        vector = await self._embedder.embed(term)
        return await self._retriever.retrieve(
            vector, term, COMPARATIVE_TOP_K, COMPARATIVE_SIMILARITY_THRESHOLD, self._vector_weight, article_number
        )

    async def _backfill(
        self, items: list[EvidenceItem], query: str, vector: list[float], article_number: int | None
    ) -> list[EvidenceItem]:
        """Append unseen direct-retrieval hits for the whole query, then re-rank and re-cap."""
        try:
            extra = await self._retriever.retrieve(
                vector, query, TOP_K, SIMILARITY_THRESHOLD, self._vector_weight, article_number
            )
        except Exception as e:
            logger.warning("[retrieval:_backfill] failed, keeping %d items: %s", len(items), e)
            return items
        present = {i.id for i in items}
        added = [e for e in extra if e.id not in present]
        logger.info("[retrieval:_backfill] before=%d added=%d", len(items), len(added))
        merged = merge_max(items, added)
        return merged[: self._cap]

    async def _identifier_supplement(
        self, items: list[EvidenceItem], raw_query: str
    ) -> tuple[list[EvidenceItem], list[str]]:
        tokens = extract_identifier_tokens(raw_query)
        avg = average_similarity(items)
        if not tokens and avg >= IDENTIFIER_SIMILARITY_FLOOR:
            return items, []
        lookup = tokens or fallback_tokens(raw_query)
        if not lookup:
            return items, []
        try:
            found = await self._retriever.retrieve_by_identifier(lookup, IDENTIFIER_LIMIT)
        except Exception as e:
            logger.warning("[retrieval:_identifier_supplement] lookup failed tokens=%s: %s", lookup, e)
            return items, lookup
        merged = combine(items, found)
        logger.info(
            "[retrieval:_identifier_supplement] tokens=%s avg=%.3f found=%d appended=%d",
            lookup, avg, len(found), len(merged) - len(items),
        )
        return merged, lookup


ROOT_FOLDER = "(root)"
NO_EXTENSION = "(none)"


def document_folder(name: str) -> str:
    return name.rsplit("/", 1)[0] if "/" in name else ROOT_FOLDER


def document_extension(name: str) -> str:
    base = name.rsplit("/", 1)[-1]
    return base.rsplit(".", 1)[-1].lower() if "." in base.strip(".") else NO_EXTENSION


def _group(names: list[str], key) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {}
    for name in names:
        groups.setdefault(key(name), []).append(name)
    return dict(sorted(groups.items()))


def _counts(groups: dict[str, list[str]]) -> str:
    return ", ".join(f"{k} {len(v)}" for k, v in groups.items())


async def catalog_evidence(catalog: Catalog, meta_type: MetaType | None = None) -> FusionResult:
    """
    Evidence for structural meta queries, shaped by the kind of question:

    - stats: one item with document, chunk, type and folder counts
    - structure: the summary plus one item per file type
    - folders: the summary plus one item per folder
    - list (default): the summary plus one item per document
    """
    stats = await catalog.get_collection_stats()
    sources = list(stats.get("sources") or [])
    by_type = _group(sources, document_extension)
    by_folder = _group(sources, document_folder)
    summary = (
        f"Knowledge base '{stats.get('collection_name', '')}': "
        f"{stats.get('source_count', len(sources))} documents, {stats.get('total_chunks', 0)} chunks."
    )
    if meta_type == MetaType.STATS and sources:
        summary += f" By type: {_counts(by_type)}. By folder: {_counts(by_folder)}."
    items = [EvidenceItem(id="catalog:summary", content=summary, similarity=1.0, source_label="Knowledge base")]

    if meta_type == MetaType.STRUCTURE:
        items.extend(
            EvidenceItem(
                id=f"catalog:type:{ext}",
                content=f"File type {ext}: {len(names)} documents ({', '.join(names)}).",
                similarity=1.0,
                source_label=f"{ext} documents",
            )
            for ext, names in by_type.items()
        )
    elif meta_type == MetaType.FOLDERS:
        items.extend(
            EvidenceItem(
                id=f"catalog:folder:{folder}",
                content=f"Folder {folder}: {len(names)} documents ({', '.join(names)}).",
                similarity=1.0,
                source_label=folder,
            )
            for folder, names in by_folder.items()
        )
    elif meta_type != MetaType.STATS:
        items.extend(
            EvidenceItem(id=f"catalog:{name}", content=f"Document: {name}", similarity=1.0, source_label=name, document_id=name)
            for name in sources
        )
    logger.info(
        "[retrieval:catalog_evidence] OUT meta_type=%s documents=%d items=%d",
        meta_type.value if meta_type else None, len(sources), len(items),
    )
    return FusionResult(items=with_ordinals(items))
