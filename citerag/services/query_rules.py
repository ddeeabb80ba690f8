"""
Ordered rule tables for the cheap, deterministic query signals.

Each table is a list of (pattern, tag) rules evaluated top to bottom; the first
match wins where a single tag is needed. Meta-query scope checks the structural
table before the thematic one, so "how many documents discuss GDPR" resolves
as structural.
"""

import logging
import re
from dataclasses import dataclass

from citerag.schemas.analysis import MetaScope, MetaType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rule:
    pattern: re.Pattern
    tag: str = ""


def _rule(pattern: str, tag: str = "") -> Rule:
    return Rule(re.compile(pattern, re.IGNORECASE), tag)


ARTICLE_RULES: list[Rule] = [
    _rule(r"(?:articolo|article)\s+(\d+)", "explicit"),
    _rule(r"\bart\.?\s+(\d+)", "abbreviated"),
    _rule(r"\b(?:il|al|del|nell'?|l')\s+(?:articolo\s+)?(\d{1,3})\b", "colloquial"),
]

TEMPORAL_RULES: list[Rule] = [
    _rule(r"\b(?:ultime|ultimissime|recenti|recentissime|nuove|aggiornate|aggiornamenti|novità)\b", "recency_it"),
    _rule(r"\b(?:latest|recent|new|updated|newest|current|up-to-date)\b", "recency_en"),
    _rule(r"\b(?:quest'anno|anno corrente|del 2024|del 2025|di recente|negli ultimi)\b", "period"),
    _rule(r"\b(?:da poco|attualmente|oggi|ora|adesso)\b", "now"),
    _rule(r"(?:che novità|ci sono novità|cosa c'è di nuovo|\bnews\b)", "news"),
]

WEB_COMMAND_RULES: list[Rule] = [
    _rule(r"\b(?:vai su web|cerca su internet|ricerca su internet|ricerca online|cerca online|guarda su internet)\b", "web_it"),
    _rule(r"\b(?:search the web|go online|check online|look online|web search)\b", "web_en"),
    _rule(r"\b(?:cerca informazioni aggiornate|cerca info recenti|verifica online)\b", "fresh_it"),
    _rule(r"\b(?:controlla su internet|vedi se ci sono novità|cerca novità)\b", "check_it"),
]

# Structural signals: questions about the collection itself. Tags are meta types.
STRUCTURAL_META_RULES: list[Rule] = [
    _rule(r"\b(?:quanti|quante|how many|numero di|count)\b", MetaType.STATS.value),
    _rule(r"\b(?:quali cartelle|which folders|folder names|cartelle presenti)\b", MetaType.FOLDERS.value),
    _rule(r"\b(?:tipi di file|file types|formati|formats)\b", MetaType.STRUCTURE.value),
    _rule(r"\b(?:statistiche|statistics|stats)\b", MetaType.STATS.value),
]

# Thematic signals: questions about what the documents talk about.
THEMATIC_META_RULES: list[Rule] = [
    _rule(r"\b(?:tratta(?:no)?|parla(?:no)?|riguarda(?:no)?|su|about|on|concerning|regarding)\s+(?:di\s+)?[a-zàèéìòù]+"),
    _rule(r"\b(?:che tratta(?:no)?|che parla(?:no)?|che riguarda(?:no)?|related to)\b"),
    _rule(r"\b(?:tema|topic|argomento|subject|materia)\b"),
    _rule(r"\b(?:in materia di|on the topic of)\b"),
]

FOLDER_FILTER_RULE = _rule(r"(?:nella cartella|in folder|nella )")
DOMAIN_TERMS_RULE = _rule(
    r"\b(?:gdpr|espr|sostenibilità|ambiente|salute|sicurezza|privacy|compliance|esg|gri|csrd)\b"
)


def first_match(rules: list[Rule], text: str) -> tuple[Rule, re.Match] | None:
    """Return the first rule (in table order) whose pattern matches, with its match."""
    for rule in rules:
        m = rule.pattern.search(text or "")
        if m:
            return rule, m
    return None


def detect_article_number(query: str) -> int | None:
    """Article number referenced by the query (1-999), or None."""
    for rule in ARTICLE_RULES:
        m = rule.pattern.search(query or "")
        if not m:
            continue
        number = int(m.group(1))
        if 1 <= number <= 999:
            return number
    return None


def detect_temporal_terms(query: str) -> tuple[str, ...]:
    """All temporal terms in the query, lowercased, in rule then position order, without repeats."""
    found: list[str] = []
    for rule in TEMPORAL_RULES:
        for m in rule.pattern.finditer(query or ""):
            term = m.group(0).lower()
            if term and term not in found:
                found.append(term)
    return tuple(found)


def detect_web_search_command(query: str) -> str | None:
    """The explicit web-search phrase the user typed, if any."""
    hit = first_match(WEB_COMMAND_RULES, query)
    return hit[1].group(0) if hit else None


def structural_meta_type(query: str) -> MetaType | None:
    hit = first_match(STRUCTURAL_META_RULES, query)
    return MetaType(hit[0].tag) if hit else None


def detect_meta_scope(query: str) -> MetaScope:
    """
    Scope of a query already judged to be about the collection.

    Structural signals win outright; then thematic wording; then an explicit
    folder filter means structural; then domain vocabulary means thematic.
    """
    if first_match(STRUCTURAL_META_RULES, query):
        return MetaScope.STRUCTURAL
    if first_match(THEMATIC_META_RULES, query):
        return MetaScope.THEMATIC
    if FOLDER_FILTER_RULE.pattern.search((query or "").lower()):
        return MetaScope.STRUCTURAL
    if DOMAIN_TERMS_RULE.pattern.search(query or ""):
        return MetaScope.THEMATIC
    return MetaScope.STRUCTURAL
