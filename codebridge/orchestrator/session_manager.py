"""Host-side orchestration of OpenCode chat sessions.

The orchestrator owns the UI-facing state (sessions, current session,
messages, providers, selected model) and drives the sidecar through the RPC
client. Lists are replaced wholesale on every change, never mutated in place.

No operation lets a failure escape: each one writes a readable message into
``error`` (overwriting the previous one) and keeps the last good state.
"""

import asyncio
import bisect
import logging
import secrets
import string
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterable, Callable, Dict, Iterable, List, Optional, Sequence

from rich.prompt import Confirm

from codebridge.core.configs import DEFAULT_BASE_URL
from codebridge.core.errors import BridgeError
from codebridge.orchestrator import events
from codebridge.orchestrator.models import (
    Activity,
    Message,
    Provider,
    Session,
    created_sort_key,
    timestamp_to_datetime,
)
from codebridge.orchestrator.storage import ModelStore

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "gpt-4"
PREFERRED_DEFAULT_PROVIDERS = ("openai", "opencode")

MESSAGE_ID_PREFIX = "msg"
MESSAGE_ID_RANDOM_CHARS = 14
_BASE62 = string.digits + string.ascii_uppercase + string.ascii_lowercase

_last_id_millis = 0
_id_counter = 0


def new_message_id() -> str:
    """
    Generate a message id that sorts after every id generated before it.

    Layout: ``msg_`` + 12 hex digits of ``(epoch_ms << 12) + counter`` +
    14 random base62 characters.
    """
    global _last_id_millis, _id_counter
    now = int(time.time() * 1000)
    if now != _last_id_millis:
        _last_id_millis = now
        _id_counter = 0
    _id_counter += 1

    stamp = ((now << 12) + _id_counter) & 0xFFFFFFFFFFFF
    suffix = "".join(secrets.choice(_BASE62) for _ in range(MESSAGE_ID_RANDOM_CHARS))
    return f"{MESSAGE_ID_PREFIX}_{stamp:012x}{suffix}"


def resolve_model(
    stored: str,
    providers: Sequence[Provider],
    defaults: Dict[str, str],
) -> str:
    """
    Pick the active model.

    Order: the stored model if it is still offered, a declared default
    (openai, then opencode, then the first declared), the first offered
    model, then FALLBACK_MODEL.
    """
    available = [model for provider in providers for model in provider.models]
    if stored and stored in available:
        return stored

    for provider_id in PREFERRED_DEFAULT_PROVIDERS:
        if defaults.get(provider_id):
            return defaults[provider_id]
    for model in defaults.values():
        if model:
            return model

    if available:
        return available[0]
    return FALLBACK_MODEL


def sort_sessions(sessions: Iterable[Session]) -> List[Session]:
    """Newest first by ``created``; ties keep their original order."""
    return sorted(sessions, key=created_sort_key, reverse=True)


def order_messages(raw: Iterable[Dict[str, Any]]) -> List[Message]:
    """
    Build local messages from wire messages.

    Entries without an id are dropped; the rest are sorted by id. This
    relies on the backend issuing ids that sort in creation order.
    """
    messages = [
        Message(
            id=str(entry["id"]),
            role=entry.get("role") or "",
            text=entry.get("text") or "",
            timestamp=entry.get("timestamp"),
        )
        for entry in raw
        if entry.get("id")
    ]
    return sorted(messages, key=lambda message: message.id)


def insert_message(messages: Sequence[Message], message: Message) -> List[Message]:
    """Return a copy of ``messages`` with ``message`` at its sorted position."""
    result = list(messages)
    index = bisect.bisect_left(result, message.id, key=lambda existing: existing.id)
    result.insert(index, message)
    return result


def describe_error(error: BaseException) -> str:
    if isinstance(error, BridgeError):
        return error.message
    return str(error) or repr(error)


def _ask_confirmation(question: str) -> bool:
    return Confirm.ask(question, default=False)


class SessionOrchestrator:
    """
    Session state machine for one workspace.

    ``initialize()`` runs once (``initializing`` goes True -> False).
    Session operations move ``activity`` IDLE -> LOADING/CREATING -> IDLE.
    """

    def __init__(
        self,
        rpc: Any,
        workspace: str,
        store: Optional[ModelStore] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        """
        Args:
            rpc: SidecarClient, or anything with the same async methods
            workspace: Repository path the sessions belong to
            store: Where the selected model is persisted
            confirm: Yes/no prompt used before deleting a session
        """
        self.rpc = rpc
        self.workspace = workspace
        self.store = store or ModelStore()
        self.confirm = confirm or _ask_confirmation

        self.sessions: List[Session] = []
        self.current_session: Optional[Session] = None
        self.messages: List[Message] = []
        self.providers: List[Provider] = []
        self.defaults: Dict[str, str] = {}
        self.selected_model: str = FALLBACK_MODEL
        self.server_url: str = DEFAULT_BASE_URL
        self.activity: Activity = Activity.IDLE
        self.initializing: bool = True
        self.error: str = ""

        # Live state fed by the event stream
        self.awaiting_reply: bool = False
        self._reply_done = asyncio.Event()
        self._reply_done.set()
        self._parts: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._roles: Dict[str, str] = {}
        self._event_handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            events.SESSION_IDLE: self._on_session_idle,
            events.SESSION_ERROR: self._on_session_error,
            events.PART_UPDATED: self._on_part_updated,
            events.MESSAGE_UPDATED: self._on_message_updated,
            events.MESSAGE_REMOVED: self._on_message_removed,
            events.PART_REMOVED: self._on_part_removed,
        }

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def sorted_sessions(self) -> List[Session]:
        return sort_sessions(self.sessions)

    @property
    def busy(self) -> bool:
        return self.activity is not Activity.IDLE

    @property
    def last_reply(self) -> Optional[str]:
        """Text of the newest assistant message, if any."""
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message.text
        return None

    @property
    def available_models(self) -> List[str]:
        return [model for provider in self.providers for model in provider.models]

    @staticmethod
    def format_session_time(value: Any) -> str:
        moment = timestamp_to_datetime(value)
        if moment is None:
            return "" if value is None else str(value)
        return moment.strftime("%c")

    def set_selected_model(self, model: str) -> None:
        self.selected_model = model
        self.store.write(model)

    def _new_session_name(self) -> str:
        return f"AI Session - {datetime.now().strftime('%c')}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Bring the orchestrator up for its workspace.

        Steps run strictly in order and the first failure aborts the rest:
        health, server info, providers, model resolution, session list, then
        either load the newest session or create the first one.
        """
        self.initializing = True
        try:
            await self.rpc.health(self.workspace)

            info = await self.rpc.get_server_info()
            if info and info.get("baseUrl"):
                self.server_url = info["baseUrl"]

            catalog = await self.rpc.get_providers(self.workspace)
            self.providers = [Provider.from_dict(p) for p in catalog.get("providers") or []]
            self.defaults = dict(catalog.get("defaults") or {})

            model = resolve_model(self.store.read(), self.providers, self.defaults)
            self.set_selected_model(model)

            sessions = [
                Session.from_dict(s) for s in await self.rpc.list_sessions(self.workspace)
            ]
            self.sessions = sessions

            if sessions:
                # select_session records its own error on failure.
                if not await self.select_session(sort_sessions(sessions)[0]):
                    return
            else:
                created = await self.rpc.create_session(
                    self._new_session_name(),
                    f"Chat session for {self.workspace}",
                    model,
                    self.workspace,
                )
                session = Session.from_dict(created)
                self.sessions = [session]
                self.current_session = session
                self.messages = []
                self._reset_live_state()
            self.error = ""
        except Exception as e:
            logger.debug("Initialization failed", exc_info=True)
            self.error = f"Failed to initialize OpenCode: {describe_error(e)}"
        finally:
            self.initializing = False

    async def select_session(self, session: Session) -> bool:
        """
        Load ``session`` and its messages and make it current.

        Returns False (with ``error`` set) instead of raising.
        """
        self.activity = Activity.LOADING
        try:
            loaded = Session.from_dict(
                await self.rpc.get_session(session.path, self.workspace)
            )
            if loaded.directory is None:
                loaded = replace(loaded, directory=session.directory)
            raw_messages = await self.rpc.list_messages(session.path, self.workspace)

            self.current_session = loaded
            self.messages = order_messages(raw_messages)
            self._reset_live_state()
            if loaded.model:
                self.set_selected_model(loaded.model)
            self.error = ""
            return True
        except Exception as e:
            logger.debug("Loading session failed", exc_info=True)
            self.error = f"Failed to load session: {describe_error(e)}"
            return False
        finally:
            self.activity = Activity.IDLE

    async def create_session(self) -> None:
        """Create a session with the selected model and switch to it."""
        self.activity = Activity.CREATING
        try:
            created = await self.rpc.create_session(
                self._new_session_name(),
                f"Chat session for {self.workspace}",
                self.selected_model,
                self.workspace,
            )
            session = Session.from_dict(created)
            self.sessions = [*self.sessions, session]
            self.current_session = session
            self.messages = []
            self._reset_live_state()
            self.error = ""
        except Exception as e:
            logger.debug("Creating session failed", exc_info=True)
            self.error = f"Failed to create session: {describe_error(e)}"
        finally:
            self.activity = Activity.IDLE

    async def delete_session(self, session: Session) -> None:
        """Delete ``session`` after the user confirms."""
        try:
            if not self.confirm(f'Delete session "{session.name}"?'):
                return
            await self.rpc.delete_session(session.path, self.workspace)
            self.sessions = [s for s in self.sessions if s.path != session.path]
            if self.current_session is not None and self.current_session.path == session.path:
                self.current_session = None
                self.messages = []
                self._reset_live_state()
            self.error = ""
        except Exception as e:
            logger.debug("Deleting session failed", exc_info=True)
            self.error = f"Failed to delete session: {describe_error(e)}"

    async def send_prompt(self, text: str) -> Optional[str]:
        """
        Send ``text`` to the current session.

        The user message is shown as pending until the reply arrives, and
        removed again if the call fails. Returns the reply text, or None.
        """
        trimmed = text.strip()
        if not trimmed or self.current_session is None:
            return None

        message_id = new_message_id()
        pending = Message(
            id=message_id,
            role="user",
            text=trimmed,
            timestamp=datetime.now(timezone.utc).isoformat(),
            pending=True,
        )
        self.messages = insert_message(self.messages, pending)
        self.error = ""

        try:
            result = await self.rpc.send_prompt(
                self.current_session.path,
                trimmed,
                self.selected_model,
                message_id,
                self.workspace,
            )
        except Exception as e:
            logger.debug("Prompt failed", exc_info=True)
            self.messages = [m for m in self.messages if m.id != message_id]
            self.error = f"Failed to get response: {describe_error(e)}"
            return None

        reply_text = result.get("response") or ""
        reply_id = result.get("messageId") or new_message_id()
        messages = [m.settled() if m.id == message_id else m for m in self.messages]
        if all(m.id != reply_id for m in messages):
            reply = Message(
                id=reply_id,
                role="assistant",
                text=reply_text,
                timestamp=result.get("timestamp"),
            )
            messages = insert_message(messages, reply)
        self.messages = messages
        return reply_text

    async def send_prompt_async(self, text: str) -> bool:
        """
        Queue ``text`` on the current session without waiting for the reply.

        The reply is filled in by apply_event() as the event stream reports
        it; ``awaiting_reply`` stays True until the session goes idle.
        """
        trimmed = text.strip()
        if not trimmed or self.current_session is None:
            return False

        message_id = new_message_id()
        pending = Message(
            id=message_id,
            role="user",
            text=trimmed,
            timestamp=datetime.now(timezone.utc).isoformat(),
            pending=True,
        )
        self.messages = insert_message(self.messages, pending)
        self._roles[message_id] = "user"
        self.error = ""
        self._set_awaiting_reply(True)

        try:
            await self.rpc.send_prompt_async(
                self.current_session.path,
                trimmed,
                self.selected_model,
                message_id,
                self.workspace,
            )
        except Exception as e:
            logger.debug("Queueing prompt failed", exc_info=True)
            self.messages = [m for m in self.messages if m.id != message_id]
            self._roles.pop(message_id, None)
            self.error = f"Failed to send message: {describe_error(e)}"
            self._set_awaiting_reply(False)
            return False
        return True

    async def wait_for_reply(self) -> None:
        await self._reply_done.wait()

    async def follow_events(self, stream: AsyncIterable[Dict[str, Any]]) -> None:
        """
        Apply every event from ``stream`` until the stream ends.

        A failing or closed stream is reported in ``error`` and releases
        anyone waiting for a reply.
        """
        try:
            async for event in stream:
                self.apply_event(event)
        except Exception as e:
            logger.debug("Event stream failed", exc_info=True)
            self.error = f"Event stream failed: {describe_error(e)}"
        else:
            if self.awaiting_reply:
                self.error = "Event stream closed before the reply finished"
        self._set_awaiting_reply(False)

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    def _reset_live_state(self) -> None:
        self._parts = {}
        self._roles = {}
        self._set_awaiting_reply(False)

    def _set_awaiting_reply(self, value: bool) -> None:
        self.awaiting_reply = value
        if value:
            self._reply_done.clear()
        else:
            self._reply_done.set()

    def apply_event(self, raw: Any) -> None:
        """
        Fold one stream event into ``messages``.

        Events for other sessions or workspaces, and event types not listed
        in the handler table, are ignored.
        """
        payload = events.unwrap_event(raw, self.workspace)
        if payload is None:
            return
        handler = self._event_handlers.get(payload.get("type"))
        if handler is None:
            return
        properties = payload.get("properties")
        handler(properties if isinstance(properties, dict) else {})

    def _is_current(self, session_id: Any) -> bool:
        return self.current_session is not None and session_id == self.current_session.path

    def _upsert_message(
        self,
        message_id: str,
        role: Optional[str] = None,
        text: Optional[str] = None,
        timestamp: Any = None,
        require_text: bool = False,
    ) -> None:
        for index, existing in enumerate(self.messages):
            if existing.id == message_id:
                updated = replace(
                    existing,
                    role=role or existing.role,
                    text=existing.text if text is None else text,
                    timestamp=existing.timestamp if timestamp is None else timestamp,
                )
                self.messages = [*self.messages[:index], updated, *self.messages[index + 1:]]
                return

        if not role or (require_text and not text):
            return
        created = Message(
            id=message_id,
            role=role,
            text=text or "",
            timestamp=events.now_millis() if timestamp is None else timestamp,
        )
        self.messages = insert_message(self.messages, created)

    def _reconcile_user_message(self, message_id: str, timestamp: Any) -> None:
        """Settle the local copy of a user message the server has accepted."""
        for existing in self.messages:
            if existing.id == message_id:
                self._upsert_message(message_id, role="user", timestamp=timestamp)
                self.messages = [
                    m.settled() if m.id == message_id else m for m in self.messages
                ]
                return

        pending = next(
            (m for m in self.messages if m.role == "user" and m.pending), None
        )
        if pending is None:
            return
        rest = [m for m in self.messages if m is not pending]
        self.messages = insert_message(
            rest, replace(pending, id=message_id, pending=False, timestamp=timestamp)
        )

    def _on_session_idle(self, properties: Dict[str, Any]) -> None:
        if self._is_current(properties.get("sessionID")):
            self._set_awaiting_reply(False)

    def _on_session_error(self, properties: Dict[str, Any]) -> None:
        if not self._is_current(properties.get("sessionID")):
            return
        self.error = f"OpenCode error: {events.error_detail(properties)}"
        self._set_awaiting_reply(False)

    def _on_part_updated(self, properties: Dict[str, Any]) -> None:
        part = properties.get("part")
        if not isinstance(part, dict) or not self._is_current(part.get("sessionID")):
            return
        message_id, part_id = part.get("messageID"), part.get("id")
        if not message_id or not part_id:
            return

        parts = dict(self._parts.get(message_id) or {})
        merged = events.merge_part(part, parts.get(part_id), properties.get("delta"))
        parts[part_id] = merged
        self._parts[message_id] = parts

        role = merged.get("role") or self._roles.get(message_id)
        if role is None and any(
            m.id == message_id and m.pending and m.role == "user" for m in self.messages
        ):
            role = "user"
        if role is None and merged.get("type") in events.ASSISTANT_PART_TYPES:
            role = "assistant"
        if role is None:
            return
        self._roles[message_id] = role

        text = events.combined_text(parts, role)
        if text:
            self._upsert_message(
                message_id,
                role=role,
                text=text,
                timestamp=events.part_timestamp(merged),
                require_text=True,
            )

    def _on_message_updated(self, properties: Dict[str, Any]) -> None:
        info = properties.get("info")
        if not isinstance(info, dict) or not self._is_current(info.get("sessionID")):
            return
        message_id = info.get("id")
        if not message_id:
            return

        times = info.get("time") or {}
        timestamp = times.get("created") or events.now_millis()
        role = info.get("role") or self._roles.get(message_id)
        if role:
            self._roles[message_id] = role
        parts = self._parts.get(message_id) or {}

        if role == "user":
            self._reconcile_user_message(message_id, timestamp)
            text = events.combined_text(parts, "user")
            if text:
                self._upsert_message(message_id, text=text, timestamp=timestamp)
        else:
            text = events.combined_text(parts, "assistant")
            if text:
                self._upsert_message(
                    message_id,
                    role=role or "assistant",
                    text=text,
                    timestamp=timestamp,
                    require_text=True,
                )
            elif role:
                self._upsert_message(message_id, role=role, timestamp=timestamp)

        if role == "assistant" and times.get("completed"):
            self._set_awaiting_reply(False)

    def _on_message_removed(self, properties: Dict[str, Any]) -> None:
        message_id = properties.get("messageID")
        if not message_id or not self._is_current(properties.get("sessionID")):
            return
        self._parts.pop(message_id, None)
        self._roles.pop(message_id, None)
        self.messages = [m for m in self.messages if m.id != message_id]

    def _on_part_removed(self, properties: Dict[str, Any]) -> None:
        message_id, part_id = properties.get("messageID"), properties.get("partID")
        if not message_id or not part_id:
            return
        parts = dict(self._parts.get(message_id) or {})
        parts.pop(part_id, None)
        if parts:
            self._parts[message_id] = parts
        else:
            self._parts.pop(message_id, None)
        self._upsert_message(
            message_id, text=events.combined_text(parts, self._roles.get(message_id))
        )
