"""Live session updates from the OpenCode ``/event`` stream.

The stream carries events for every session on the server, and they can
arrive in any order: a part may show up before the message it belongs to,
and a message may be announced before any of its parts. The helpers here
are pure; SessionOrchestrator.apply_event() owns the state they feed.
"""

import time
from typing import Any, Dict, Optional

from codebridge.core.parts import REASONING, TEXT, TOOL, extract_message_text

SESSION_IDLE = "session.idle"
SESSION_ERROR = "session.error"
MESSAGE_UPDATED = "message.updated"
MESSAGE_REMOVED = "message.removed"
PART_UPDATED = "message.part.updated"
PART_REMOVED = "message.part.removed"

# Part types that only an assistant produces.
ASSISTANT_PART_TYPES = (TEXT, REASONING, TOOL)


def now_millis() -> int:
    return int(time.time() * 1000)


def unwrap_event(raw: Any, workspace: str) -> Optional[Dict[str, Any]]:
    """
    Return the ``{type, properties}`` payload of a stream event.

    The global stream wraps payloads as ``{"directory": ..., "payload": ...}``;
    wrapped events for another directory are dropped.
    """
    if not isinstance(raw, dict):
        return None
    if "payload" not in raw:
        return raw
    directory = raw.get("directory")
    if isinstance(directory, str) and directory and directory != workspace:
        return None
    payload = raw.get("payload")
    return payload if isinstance(payload, dict) else None


def merge_part(
    part: Dict[str, Any],
    existing: Optional[Dict[str, Any]],
    delta: Any = None,
) -> Dict[str, Any]:
    """
    Fold a part update into what is already known about the part.

    A ``delta`` is appended to the known text unless the update carries a
    longer text of its own. Fields the update leaves out keep their values.
    """
    previous = existing or {}
    if isinstance(delta, str):
        previous_text = previous.get("text") or ""
        text = part.get("text")
        if (
            not isinstance(text, str)
            or text == previous_text
            or (previous_text and len(text) < len(previous_text))
        ):
            part = {**part, "text": previous_text + delta}

    merged = dict(previous)
    merged.update({key: value for key, value in part.items() if value is not None})
    return merged


def combined_text(parts: Dict[str, Dict[str, Any]], role: Optional[str]) -> str:
    """Message text from its parts, taken in part id order."""
    return extract_message_text([parts[part_id] for part_id in sorted(parts)], role)


def part_timestamp(part: Dict[str, Any]) -> int:
    times = part.get("time") or {}
    return times.get("end") or times.get("start") or now_millis()


def error_detail(properties: Dict[str, Any]) -> str:
    message = properties.get("message")
    if message:
        return str(message)
    error = properties.get("error")
    if isinstance(error, dict):
        nested = (error.get("data") or {}).get("message")
        if nested:
            return str(nested)
        return error.get("name") or str(error)
    return str(error) if error else "Unknown error"
