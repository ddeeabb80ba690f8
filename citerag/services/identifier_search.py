"""
Identifier (filename-like) tokens in a query, and merging identifier hits with vector hits.
"""

import re

from citerag.core.config import FALLBACK_TOKEN_LIMIT, FALLBACK_TOKEN_MIN_LEN
from citerag.schemas.evidence import EvidenceItem

_ACRONYM = re.compile(r"\b([A-Z]{2,10})\b")
_REGULATION_NUMBER = re.compile(r"\b(\d{4})/\d+\b")
_CAPITALIZED = re.compile(r"\b([A-Z][a-zà-ù]+(?:\s+[A-Z][a-zà-ù]+)*)\b")

_COMMON_UPPER = frozenset({
    "IL", "LA", "LO", "LE", "DI", "DA", "IN", "SU", "PER", "CON", "DEL", "DELLA", "DELLE", "DELLO",
    "CHE", "CHI", "COSA", "COME", "QUANDO", "DOVE", "PERCHE",
    "THE", "AND", "OR", "BUT", "FOR", "WITH", "FROM", "TO", "OF", "ON", "AT", "BY",
})

_STOPWORDS = frozenset({
    "il", "la", "lo", "le", "gli", "un", "una", "uno", "di", "da", "in", "su", "per", "con",
    "del", "della", "delle", "dello", "che", "chi", "cosa", "come", "quando", "dove", "perché", "perche",
    "the", "an", "and", "or", "but", "for", "with", "from", "to", "of", "on", "at", "by",
    "spiegami", "spiega", "descrivimi", "raccontami", "parlami", "dimmi", "mostrami",
    "explain", "describe", "tell", "show", "what", "is", "are", "was", "were",
    "quali", "quale", "which", "how", "does", "can",
})

_TECHNICAL_TERMS = (
    "regolamento", "direttiva", "normativa", "legge", "decreto",
    "regulation", "directive", "law", "decree",
    "gdpr", "csrd", "espr", "esrs", "nfrd", "sfdr",
)


def extract_identifier_tokens(query: str) -> list[str]:
    """
    Tokens likely to appear in a document name: acronyms, regulation years
    (2016/679 -> 2016), capitalized proper nouns and known technical terms.
    """
    tokens: list[str] = []
    seen: set[str] = set()

    def add(tok: str) -> None:
        if tok and tok not in seen:
            seen.add(tok)
            tokens.append(tok)

    q = query or ""
    for m in _ACRONYM.finditer(q):
        if m.group(1) not in _COMMON_UPPER:
            add(m.group(1))
    for m in _REGULATION_NUMBER.finditer(q):
        add(m.group(1))
    for m in _CAPITALIZED.finditer(q):
        for word in m.group(1).split():
            if len(word) >= 3 and word.lower() not in _STOPWORDS:
                add(word)
    lower = q.lower()
    for term in _TECHNICAL_TERMS:
        if term in lower:
            add(term.upper())
    return tokens


def fallback_tokens(
    query: str,
    min_len: int = FALLBACK_TOKEN_MIN_LEN,
    limit: int = FALLBACK_TOKEN_LIMIT,
) -> list[str]:
    """The query's whitespace-separated lowercase tokens of min_len+ chars, first `limit`."""
    return [tok for tok in (query or "").lower().split() if len(tok) >= min_len][:limit]


def combine(vector_results: list[EvidenceItem], identifier_results: list[EvidenceItem]) -> list[EvidenceItem]:
    """Union by id: vector-derived entries keep their place and score; identifier-only entries go last."""
    seen = {item.id for item in vector_results}
    merged = list(vector_results)
    for item in identifier_results:
        if item.id not in seen:
            seen.add(item.id)
            merged.append(item)
    return merged
