"""
Tests for prompt assembly: generation messages, numbered evidence blocks and system-prompt sections.
"""

from citerag.agent.llm import build_messages
from citerag.agent.prompts import build_system_prompt, build_user_prompt
from citerag.schemas.analysis import QueryAnalysis, QueryIntent
from citerag.schemas.evidence import SourceKind
from tests.fakes import make_item


class TestMessages:
    """Chat messages sent to the generator."""

    def test_messages_keep_valid_history(self) -> None:
        messages = build_messages("sys", "question", [
            {"role": "user", "content": "hi"}, {"role": "tool", "content": "x"}, {"role": "assistant", "content": " "},
        ])
        assert [m["role"] for m in messages] == ["system", "user", "user"]


class TestUserPrompt:
    """Evidence blocks numbered by ordinal."""

    def test_user_prompt_numbers_match_ordinals(self) -> None:
        kb = [make_item("a", 0.9, ordinal=1, label="gdpr.pdf"), make_item("b", 0.8, ordinal=2, label="espr.pdf")]
        web = [make_item("u", 0.7, ordinal=1, label="News", kind=SourceKind.WEB, url="https://example.org")]
        prompt = build_user_prompt("What changed?", kb, web)
        assert "[Document 1: gdpr.pdf]" in prompt and "[Document 2: espr.pdf]" in prompt
        assert "[Web 1: News] (https://example.org)" in prompt


class TestSystemPrompt:
    """Citation rules and intent-specific guidance."""

    def test_system_prompt_sections(self) -> None:
        analysis = QueryAnalysis(intent=QueryIntent.COMPARISON, is_comparative=True, comparative_terms=("GDPR", "ESPR"))
        prompt = build_system_prompt(analysis, [make_item("a", 0.9, ordinal=1)], [], False)
        assert "[cit:N]" in prompt
        assert "comparison between: GDPR, ESPR" in prompt
        assert "[web:N]" not in prompt

    def test_insufficient_sources_note(self) -> None:
        prompt = build_system_prompt(QueryAnalysis(intent=QueryIntent.GENERAL), [], [], True)
        assert "general knowledge" in prompt

    def test_no_insufficient_note_when_web_evidence_present(self) -> None:
        web = [make_item("u", 0.7, ordinal=1, label="News", kind=SourceKind.WEB, url="https://example.org")]
        prompt = build_system_prompt(QueryAnalysis(intent=QueryIntent.GENERAL), [], web, True)
        assert "does not contain enough relevant information" not in prompt
