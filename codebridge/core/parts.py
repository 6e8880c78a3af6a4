"""Helpers for OpenCode message parts.

Shared by the sidecar, which projects whole messages, and the orchestrator,
which rebuilds message text from streamed part updates.
"""

from typing import Any, Dict, Iterable, List, Optional

TEXT = "text"
REASONING = "reasoning"
TOOL = "tool"


def extract_message_text(
    parts: Optional[Iterable[Dict[str, Any]]], role: Optional[str] = None
) -> str:
    """
    Pick the text shown for a message.

    Only visible text parts count (not synthetic, not ignored). Assistant
    messages show their last text part; any other role shows its longest.
    """
    texts = [
        part["text"]
        for part in parts or []
        if isinstance(part, dict)
        and part.get("type") == TEXT
        and isinstance(part.get("text"), str)
        and not part.get("synthetic")
        and not part.get("ignored")
    ]
    if not texts:
        return ""
    if role == "assistant":
        return texts[-1]
    return max(texts, key=len)


def normalize_parts(parts: Any, message: Optional[str]) -> List[Dict[str, Any]]:
    """
    Build the parts list sent with a prompt.

    Caller-supplied parts are kept only if at least one of them is typed. A
    text part carrying ``message`` is put first unless one is already there.
    """
    normalized = list(parts) if isinstance(parts, list) else []
    if not any(isinstance(part, dict) and "type" in part for part in normalized):
        normalized = []
    if not any(isinstance(part, dict) and part.get("type") == TEXT for part in normalized):
        normalized.insert(0, {"type": TEXT, "text": message or ""})
    return normalized
