"""
Prompt construction for answer generation.

Evidence is numbered exactly as it will be cited: knowledge-base items by
their ordinal ([cit:N]), web results by theirs ([web:N]).
"""

from citerag.schemas.analysis import QueryAnalysis
from citerag.schemas.evidence import EvidenceItem


def _normalize_context_for_llm(text: str) -> str:
    """Replace PDF bullet/symbol chars (e.g. \\x7f) with space so the LLM sees readable text."""
    if not text:
        return text
    return text.replace("\x7f", " ").replace("\x00", " ").strip()


def build_context(evidence: list[EvidenceItem]) -> str:
    return "\n\n".join(
        f"[Document {e.ordinal}: {e.source_label or 'Unknown document'}]\n{_normalize_context_for_llm(e.content)}"
        for e in evidence
    )


def build_web_context(web_evidence: list[EvidenceItem]) -> str:
    return "\n\n".join(
        f"[Web {e.ordinal}: {e.source_label}] ({e.url or ''})\n{_normalize_context_for_llm(e.content)}"
        for e in web_evidence
    )


def unique_document_names(evidence: list[EvidenceItem]) -> list[str]:
    names: list[str] = []
    for e in evidence:
        name = e.source_label or "Unknown document"
        if name not in names:
            names.append(name)
    return names


def build_system_prompt(
    analysis: QueryAnalysis,
    evidence: list[EvidenceItem],
    web_evidence: list[EvidenceItem],
    sources_insufficient: bool,
) -> str:
    lines = [
        "You are an assistant that answers questions about a document knowledge base.",
        "Answer in the language of the question, directly and in full sentences.",
    ]
    if evidence:
        lines += [
            "",
            "Citations for documents:",
            "- Cite every fact taken from a document with [cit:N], where N is the number in [Document N: ...].",
            "- Several documents supporting one sentence: [cit:N,M].",
            "- Only cite numbers that exist in the provided documents. Never invent citations.",
        ]
    if web_evidence:
        lines += [
            "",
            "Citations for web results:",
            "- Cite facts taken from web results with [web:N], where N is the number in [Web N: ...].",
            "- Never use any other form for web citations (no tool ids, no URLs in brackets).",
        ]
    if analysis.is_comparative:
        lines += [
            "",
            f"This is a comparison between: {', '.join(analysis.comparative_terms)}.",
            "Cover each term, then state the "
            + (analysis.comparison_type.value if analysis.comparison_type else "general")
            + " points explicitly.",
            f"Documents available: {', '.join(unique_document_names(evidence)) or 'none'}.",
        ]
    if analysis.is_structural_meta:
        lines += [
            "",
            "The question is about the knowledge base itself. Use the document list and counts provided,",
            "citing each document you name with its [cit:N].",
        ]
    if analysis.article_number:
        lines += ["", f"The user asks about article {analysis.article_number}; quote its provisions precisely."]
    if sources_insufficient and not web_evidence:
        lines += [
            "",
            "The knowledge base does not contain enough relevant information for this question.",
            "Say so briefly, then answer from general knowledge without any [cit:N] citations.",
        ]
    return "\n".join(lines)


def build_user_prompt(question: str, evidence: list[EvidenceItem], web_evidence: list[EvidenceItem]) -> str:
    parts = [f"Question:\n{question}"]
    if evidence:
        parts.append(f"Documents:\n{build_context(evidence)}")
    if web_evidence:
        parts.append(f"Web results:\n{build_web_context(web_evidence)}")
    return "\n\n".join(parts)
