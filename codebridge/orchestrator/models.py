"""Session, message and provider records held by the orchestrator."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

Timestamp = Union[str, int, float, None]


class Activity(Enum):
    """Per-session activity; one value at a time."""

    IDLE = "idle"
    CREATING = "creating"
    LOADING = "loading"


@dataclass(frozen=True)
class Session:
    path: str
    name: str = ""
    model: str = ""
    created: Timestamp = None
    directory: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            path=data.get("path") or "",
            name=data.get("name") or "",
            model=data.get("model") or "",
            created=data.get("created"),
            directory=data.get("directory"),
        )


@dataclass(frozen=True)
class Message:
    id: str
    role: str
    text: str
    timestamp: Timestamp = None
    pending: bool = False

    def settled(self) -> "Message":
        return replace(self, pending=False)


@dataclass(frozen=True)
class Provider:
    name: str
    models: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Provider":
        return cls(name=data.get("name") or "", models=list(data.get("models") or []))


def timestamp_to_datetime(value: Timestamp) -> Optional[datetime]:
    """
    Interpret a backend timestamp.

    Numbers (and numeric strings) are epoch milliseconds; other strings
    are ISO-8601. Returns None when the value cannot be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
    try:
        return datetime.fromtimestamp(float(value) / 1000.0).astimezone()
    except (OverflowError, OSError, ValueError):
        return None


def created_sort_key(session: Session) -> float:
    moment = timestamp_to_datetime(session.created)
    if moment is None:
        return float("-inf")
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.timestamp()
