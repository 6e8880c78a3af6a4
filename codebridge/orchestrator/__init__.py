"""Host-side session orchestration."""

from codebridge.orchestrator.models import Activity, Message, Provider, Session
from codebridge.orchestrator.session_manager import (
    FALLBACK_MODEL,
    SessionOrchestrator,
    resolve_model,
)
from codebridge.orchestrator.storage import ModelStore

__all__ = [
    "Activity",
    "Message",
    "Provider",
    "Session",
    "FALLBACK_MODEL",
    "SessionOrchestrator",
    "resolve_model",
    "ModelStore",
]
