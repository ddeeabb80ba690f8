"""
Citation reconciliation: match the generator's citation tokens to the evidence it was given.

Two independent namespaces: content citations ``[cit:N]`` / ``[cit:N,M]`` over
knowledge-base evidence and web citations ``[web:N]`` over web results. For
each namespace, only cited evidence survives, renumbered 1..K in ascending
order of its original ordinal, and every token in the text is rewritten to
the new numbers. Tokens that point at nothing are removed. Running the step
again on its own output changes nothing.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Union

from citerag.core.config import SOURCE_PREVIEW_CHARS
from citerag.schemas.evidence import EvidenceItem, Source, SourceKind

logger = logging.getLogger(__name__)

Candidate = Union[EvidenceItem, Source]

# Leading spaces are captured so a deleted token does not leave a gap before punctuation.
CONTENT_CITATION = re.compile(r"(?P<lead>[ \t]*)\[cit[\s:]+(?P<nums>\d+(?:\s*,\s*\d+)*)\]")
WEB_CITATION = re.compile(r"(?P<lead>[ \t]*)\[web[\s:]+(?P<nums>\d+(?:\s*,\s*(?:web[\s:]+)?\d+)*)\]")

# Tool-call ids and similar echoed by the generator, e.g. [web_search_1699999999_foo]
MALFORMED_WEB_TOKENS: list[re.Pattern] = [
    re.compile(r"[ \t]*\[web_search_\d+_[^\]]+\]"),
    re.compile(r"[ \t]*\[web_[^\]]+\]"),
]

_NAMESPACES: dict[SourceKind, tuple[re.Pattern, str]] = {
    SourceKind.KNOWLEDGE_BASE: (CONTENT_CITATION, "cit"),
    SourceKind.WEB: (WEB_CITATION, "web"),
}


@dataclass
class ReconciledAnswer:
    text: str
    sources: list[Source] = field(default_factory=list)
    mappings: dict[SourceKind, dict[int, int]] = field(default_factory=dict)

    @property
    def knowledge_base_sources(self) -> list[Source]:
        return [s for s in self.sources if s.kind == SourceKind.KNOWLEDGE_BASE]

    @property
    def web_sources(self) -> list[Source]:
        return [s for s in self.sources if s.kind == SourceKind.WEB]


def strip_malformed_tokens(text: str) -> str:
    for pattern in MALFORMED_WEB_TOKENS:
        text = pattern.sub("", text)
    return text


def _numbers(group: str) -> list[int]:
    return [n for n in (int(d) for d in re.findall(r"\d+", group)) if n > 0]


def extract_cited_ordinals(text: str, kind: SourceKind) -> list[int]:
    """Distinct cited ordinals for one namespace, ascending."""
    pattern, _ = _NAMESPACES[kind]
    cited: set[int] = set()
    for m in pattern.finditer(text or ""):
        cited.update(_numbers(m.group("nums")))
    return sorted(cited)


def _ordinal_of(candidate: Candidate) -> int:
    return candidate.index if isinstance(candidate, Source) else candidate.ordinal


def _index_candidates(candidates: Iterable[Candidate], kind: SourceKind) -> dict[int, Candidate]:
    """Ordinal -> candidate for one kind; the higher similarity wins a duplicated ordinal."""
    by_ordinal: dict[int, Candidate] = {}
    for c in candidates:
        if c.kind != kind:
            continue
        ordinal = _ordinal_of(c)
        if ordinal < 1:
            continue
        current = by_ordinal.get(ordinal)
        if current is None or c.similarity > current.similarity:
            by_ordinal[ordinal] = c
    return by_ordinal


def _preview(content: str) -> str:
    if len(content) > SOURCE_PREVIEW_CHARS:
        return content[:SOURCE_PREVIEW_CHARS] + "..."
    return content


def to_source(candidate: Candidate, index: int) -> Source:
    if isinstance(candidate, Source):
        return candidate.model_copy(update={"index": index})
    return Source(
        index=index,
        kind=candidate.kind,
        label=candidate.source_label or (candidate.url or ""),
        similarity=candidate.similarity,
        url=candidate.url,
        document_id=candidate.document_id,
        preview=_preview(candidate.content),
    )


def rewrite_tokens(text: str, kind: SourceKind, mapping: dict[int, int]) -> str:
    """Substitute old ordinals with new ones; drop tokens left with no mapped ordinal."""
    pattern, tag = _NAMESPACES[kind]

    def _replace(m: re.Match) -> str:
        new = sorted({mapping[n] for n in _numbers(m.group("nums")) if n in mapping})
        if not new:
            return ""
        return f"{m.group('lead')}[{tag}:{','.join(str(n) for n in new)}]"

    return pattern.sub(_replace, text)


def reconcile_citations(text: str, candidates: Iterable[Candidate]) -> ReconciledAnswer:
    """
    Rewrite citation tokens against the candidates used to build the prompt and
    return the dense Source list actually cited: knowledge base first, then web.
    """
    candidates = list(candidates)
    cleaned = strip_malformed_tokens(text or "")
    if cleaned != (text or ""):
        logger.warning("[citations:reconcile] stripped malformed web citation tokens")

    result = ReconciledAnswer(text=cleaned)
    for kind in (SourceKind.KNOWLEDGE_BASE, SourceKind.WEB):
        cited = extract_cited_ordinals(result.text, kind)
        if not cited:
            result.mappings[kind] = {}
            continue
        by_ordinal = _index_candidates(candidates, kind)
        surviving = [n for n in cited if n in by_ordinal]
        mapping = {old: new for new, old in enumerate(surviving, start=1)}
        result.text = rewrite_tokens(result.text, kind, mapping)
        result.sources.extend(to_source(by_ordinal[old], new) for old, new in mapping.items())
        result.mappings[kind] = mapping
        dangling = [n for n in cited if n not in by_ordinal]
        logger.info(
            "[citations:reconcile] kind=%s cited=%s mapping=%s dangling=%s",
            kind.value, cited, mapping, dangling,
        )
    return result
