"""
Short-term conversation window used by analysis and expansion.

Only the last few messages are used, each truncated, so prompts stay small.
"""

import re
from typing import Any

from citerag.core.config import HISTORY_MESSAGE_CHARS, HISTORY_WINDOW_MESSAGES

_FOLLOW_UP = re.compile(
    r"^(?:e\b|and\b|also\b|anche\b|invece\b|what about\b|how about\b|e per\b|e il\b|e la\b)"
    r"|\b(?:it|its|that|this|those|these|them|questo|questa|quello|quella|quelli|esso|essa|lo stesso|la stessa)\b",
    re.IGNORECASE,
)


def recent_window(
    history: list[dict[str, Any]] | None,
    max_messages: int = HISTORY_WINDOW_MESSAGES,
    max_chars: int = HISTORY_MESSAGE_CHARS,
) -> list[dict[str, str]]:
    """Last max_messages non-empty messages, each cut to max_chars (with '...')."""
    if not history:
        return []
    out: list[dict[str, str]] = []
    for m in history:
        content = (m.get("content") or "").strip()
        if not content:
            continue
        role = (m.get("role") or "user").strip().lower()
        if len(content) > max_chars:
            content = content[:max_chars] + "..."
        out.append({"role": "user" if role == "user" else "assistant", "content": content})
    return out[-max_messages:] if max_messages > 0 else []


def format_window(window: list[dict[str, str]]) -> str:
    """Render a window as 'User: ...' / 'Assistant: ...' lines."""
    lines = []
    for m in window:
        label = "User" if m["role"] == "user" else "Assistant"
        lines.append(f"{label}: {m['content']}")
    return "\n".join(lines)


def is_follow_up(query: str, history: list[dict[str, Any]] | None) -> bool:
    """True when the query likely depends on earlier turns (pronouns, connectors, very short)."""
    if not history:
        return False
    q = (query or "").strip()
    if not q:
        return False
    if len(q.split()) <= 3:
        return True
    return bool(_FOLLOW_UP.search(q))
