"""Stdio command dispatcher for the OpenCode sidecar.

This module implements the long-running sidecar process that:
1. Starts (or attaches to) an OpenCode server once at startup
2. Reads one JSON request per line from stdin
3. Routes each request to a handler and writes one JSON response per line
   to stdout; all logging goes to stderr

Usage:
    python -m codebridge.sidecar.server [--directory PATH] [--no-embed]

    Or use the CLI:
    codebridge sidecar
"""

import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, BinaryIO, Callable, Dict, List, Optional, Set

from codebridge.core.configs import SidecarConfig, get_sidecar_config, load_raw_config
from codebridge.core.errors import BackendError, BridgeError, ErrorKind, InvalidArgument
from codebridge.core.parts import extract_message_text, normalize_parts
from codebridge.sidecar.backend import BackendHandle, open_backend
from codebridge.sidecar.envelope import unwrap_data
from codebridge.sidecar.protocol import (
    MAX_LINE_BYTES,
    deserialize_request,
    serialize_error,
    serialize_response,
)

logger = logging.getLogger(__name__)

UNTITLED_SESSION = "Untitled Session"

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


# ============================================================================
# Projections - backend shapes to the UI shapes carried on the wire
# ============================================================================

def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def project_session(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "path": _first_present(data, "path", "id", "slug"),
        "name": _first_present(data, "name", "title"),
        "model": data.get("model"),
        "created": (data.get("time") or {}).get("created"),
    }


def to_ui_providers(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Project the backend provider catalog.

    Model ids are prefixed with their provider id, and so are the declared
    per-provider defaults.
    """
    data = data or {}
    providers = []
    for provider in data.get("providers") or []:
        provider_id = provider.get("id", "")
        models = [f"{provider_id}/{model_id}" for model_id in (provider.get("models") or {})]
        providers.append({"name": provider.get("name") or provider_id, "models": models})

    defaults = {
        provider_id: f"{provider_id}/{model_id}"
        for provider_id, model_id in (data.get("default") or {}).items()
    }
    return {"providers": providers, "defaults": defaults}


def split_model(model: Any) -> Optional[Dict[str, str]]:
    """Split ``provider/model`` at the first separator; None when there is none."""
    if not isinstance(model, str) or "/" not in model:
        return None
    provider_id, model_id = model.split("/", 1)
    return {"providerID": provider_id, "modelID": model_id}


def _require(request: Dict[str, Any], *fields: str) -> None:
    if all(request.get(name) for name in fields):
        return
    if len(fields) == 1:
        raise InvalidArgument(f"{fields[0]} is required")
    raise InvalidArgument(f"{' and '.join(fields)} are required")


def _require_oauth(request: Dict[str, Any]) -> None:
    method = request.get("method")
    if (
        not request.get("providerID")
        or not isinstance(method, (int, float))
        or isinstance(method, bool)
    ):
        raise InvalidArgument("providerID and method are required")


def _redact(request: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: ("***" if key == "apiKey" else value)
        for key, value in request.items()
        if key != "cmd"
    }


class SidecarServer:
    """
    Line-protocol dispatcher.

    Each input line is dispatched to its handler as an independent task as
    soon as it arrives; handling is not serialized. Two same-named requests
    in flight can only be told apart by the optional request ``id``.
    """

    def __init__(
        self,
        backend: BackendHandle,
        config: Optional[SidecarConfig] = None,
        output: Optional[BinaryIO] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            backend: Client and (optional) embedded server, owned by the caller
            config: Retry and heartbeat settings
            output: Binary stream for response lines (default: stdout)
        """
        self.backend = backend
        self.config = config or SidecarConfig()
        self.output = output if output is not None else sys.stdout.buffer

        self._handlers: Dict[str, Handler] = {
            "health": self._handle_health,
            "serverInfo": self._handle_server_info,
            "config": self._handle_config,
            "getProviders": self._handle_get_providers,
            "createSession": self._handle_create_session,
            "getSession": self._handle_get_session,
            "listSessions": self._handle_list_sessions,
            "prompt": self._handle_prompt,
            "promptAsync": self._handle_prompt_async,
            "findFiles": self._handle_find_files,
            "listMessages": self._handle_list_messages,
            "deleteSession": self._handle_delete_session,
            "setAuth": self._handle_set_auth,
            "removeAuth": self._handle_remove_auth,
            "providerList": self._handle_provider_list,
            "providerAuth": self._handle_provider_auth,
            "providerOauthAuthorize": self._handle_oauth_authorize,
            "providerOauthCallback": self._handle_oauth_callback,
            "updateConfig": self._handle_update_config,
            "dispose": self._handle_dispose,
        }
        self._tasks: Set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()

    @property
    def commands(self) -> List[str]:
        return list(self._handlers)

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    async def serve(self, reader: asyncio.StreamReader) -> None:
        """
        Serve requests from ``reader`` until EOF or a shutdown request.

        On EOF in-flight handlers finish before returning. On shutdown they
        are cancelled.
        """
        heartbeat = asyncio.create_task(self._heartbeat())
        reading = asyncio.create_task(self._read_loop(reader))
        stopping = asyncio.create_task(self._shutdown_event.wait())

        try:
            done, _ = await asyncio.wait(
                {reading, stopping}, return_when=asyncio.FIRST_COMPLETED
            )
            if reading in done:
                reading.result()
                logger.info("stdin closed, finishing in-flight commands")
                if self._tasks:
                    await asyncio.gather(*self._tasks, return_exceptions=True)
            else:
                logger.info(f"Cancelling {len(self._tasks)} in-flight command(s)")
                for task in self._tasks:
                    task.cancel()
                if self._tasks:
                    await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            for task in (heartbeat, reading, stopping):
                task.cancel()
            await asyncio.gather(heartbeat, reading, stopping, return_exceptions=True)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await reader.readline()
            except ValueError as e:
                # Oversized line; the reader has already discarded it.
                self._send(serialize_error(f"Invalid JSON: {e}", ErrorKind.PARSE_ERROR.value))
                continue
            if not line:
                return
            self.dispatch_line(line)

    def dispatch_line(self, line: bytes) -> asyncio.Task:
        """Schedule handling of one input line without waiting for it."""
        task = asyncio.create_task(self.handle_line(line))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def request_shutdown(self) -> None:
        """Handle SIGTERM/SIGINT for graceful shutdown."""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    async def _heartbeat(self) -> None:
        """Check health periodically; failures are only logged."""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                unwrap_data(await self.backend.client.health())
            except Exception as e:
                logger.warning(f"Health check failed: {e!r}")

    def _send(self, line: bytes) -> None:
        logger.debug(f"response {line[:200]!r}")
        self.output.write(line)
        self.output.flush()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_line(self, line: bytes) -> None:
        """Parse one line and answer it; malformed lines get PARSE_ERROR."""
        if not line.strip():
            return
        try:
            request = deserialize_request(line)
        except BridgeError as e:
            logger.warning(f"Rejected request line: {e.message}")
            self._send(serialize_error(e.message, e.code))
            return
        await self.handle_command(request)

    async def handle_command(self, request: Dict[str, Any]) -> None:
        """Route a parsed request to its handler and write exactly one response."""
        cmd = request.get("cmd")
        request_id = request.get("id")
        logger.info(f"request {cmd} {_redact(request)}")

        handler = self._handlers.get(cmd) if isinstance(cmd, str) else None
        if handler is None:
            logger.warning(f"Unknown command: {cmd}")
            self._send(
                serialize_error(f"Unknown command: {cmd}", ErrorKind.UNKNOWN_CMD.value, request_id)
            )
            return

        try:
            data = await handler(request)
        except Exception as e:
            logger.exception(f"Error in {cmd}: {e}")
            if isinstance(e, BridgeError):
                code = e.code
            else:
                code = getattr(e, "code", None)
                code = code if isinstance(code, str) and code else ErrorKind.UNKNOWN_ERROR.value
            self._send(serialize_error(str(e) or repr(e), code, request_id))
            return

        self._send(serialize_response(cmd, data, request_id))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def health_with_retry(self) -> Dict[str, Any]:
        """
        Check health up to ``health_attempts`` times, ``health_delay`` apart.

        Raises the last health check error if every attempt fails.
        """
        last_error: Optional[Exception] = None
        for attempt in range(self.config.health_attempts):
            try:
                return unwrap_data(await self.backend.client.health())
            except Exception as e:
                last_error = e
                logger.debug(f"Health check {attempt + 1} failed: {e!r}")
                await asyncio.sleep(self.config.health_delay)
        if last_error is None:
            raise BackendError("Health check was not attempted")
        raise last_error

    async def _handle_health(self, request: Dict[str, Any]) -> Dict[str, Any]:
        health = await self.health_with_retry() or {}
        return {"healthy": health.get("healthy"), "version": health.get("version")}

    async def _handle_server_info(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return self.backend.server_info()

    async def _handle_config(self, request: Dict[str, Any]) -> Dict[str, Any]:
        directory = request.get("directory")
        config_result, providers_result = await asyncio.gather(
            self.backend.client.get_config(directory),
            self.backend.client.get_providers(directory),
        )
        config = unwrap_data(config_result)
        ui_providers = to_ui_providers(unwrap_data(providers_result))
        return {"config": config, **ui_providers}

    async def _handle_get_providers(self, request: Dict[str, Any]) -> Dict[str, Any]:
        providers = unwrap_data(
            await self.backend.client.get_providers(request.get("directory"))
        )
        return to_ui_providers(providers)

    async def _handle_create_session(self, request: Dict[str, Any]) -> Dict[str, Any]:
        title = request.get("name") or request.get("description") or UNTITLED_SESSION
        data = unwrap_data(
            await self.backend.client.create_session(title, request.get("directory"))
        )
        return {
            "sessionPath": _first_present(data, "id", "path", "slug"),
            "session": project_session(data),
        }

    async def _handle_get_session(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require(request, "sessionPath")
        data = unwrap_data(
            await self.backend.client.get_session(
                request["sessionPath"], request.get("directory")
            )
        )
        return {"session": project_session(data)}

    async def _handle_list_sessions(self, request: Dict[str, Any]) -> Dict[str, Any]:
        sessions = unwrap_data(
            await self.backend.client.list_sessions(request.get("directory"))
        )
        return {"sessions": [project_session(session) for session in sessions or []]}

    async def _handle_prompt(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require(request, "sessionPath")
        message = request.get("message")
        model = request.get("model")

        data = unwrap_data(
            await self.backend.client.prompt(
                request["sessionPath"],
                parts=normalize_parts(request.get("parts"), message),
                model=split_model(model),
                message_id=request.get("messageID"),
                system=request.get("system"),
                directory=request.get("directory"),
            )
        ) or {}
        info = data.get("info") or {}

        return {
            "messageId": info.get("id"),
            "sessionId": info.get("sessionID"),
            "message": message,
            "response": extract_message_text(data.get("parts"), "assistant"),
            "model": model,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def _handle_prompt_async(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require(request, "sessionPath")
        unwrap_data(
            await self.backend.client.prompt_async(
                request["sessionPath"],
                parts=normalize_parts(request.get("parts"), request.get("message")),
                model=split_model(request.get("model")),
                message_id=request.get("messageID"),
                system=request.get("system"),
                directory=request.get("directory"),
            )
        )
        return {"queued": True, "sessionId": request["sessionPath"]}

    async def _handle_find_files(self, request: Dict[str, Any]) -> Any:
        query = request.get("query")
        return unwrap_data(
            await self.backend.client.find_files(
                query.strip() if isinstance(query, str) else "",
                dirs=request.get("dirs"),
                type=request.get("type"),
                limit=request.get("limit"),
                directory=request.get("directory"),
            )
        )

    async def _handle_list_messages(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require(request, "sessionPath")
        data = unwrap_data(
            await self.backend.client.list_messages(
                request["sessionPath"], request.get("directory")
            )
        )
        messages = []
        for entry in data or []:
            info = entry.get("info") or {}
            messages.append(
                {
                    "id": info.get("id"),
                    "role": info.get("role"),
                    "timestamp": (info.get("time") or {}).get("created"),
                    "text": extract_message_text(entry.get("parts"), info.get("role")),
                }
            )
        return {"messages": messages}

    async def _handle_delete_session(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require(request, "sessionPath")
        success = unwrap_data(
            await self.backend.client.delete_session(
                request["sessionPath"], request.get("directory")
            )
        )
        return {"success": success, "sessionPath": request["sessionPath"]}

    async def _handle_set_auth(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require(request, "provider", "apiKey")
        success = unwrap_data(
            await self.backend.client.set_auth(request["provider"], request["apiKey"])
        )
        return {"success": success, "provider": request["provider"]}

    async def _handle_remove_auth(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require(request, "providerID")
        success = unwrap_data(await self.backend.client.remove_auth(request["providerID"]))
        return {"success": success}

    async def _handle_provider_list(self, request: Dict[str, Any]) -> Dict[str, Any]:
        catalog = unwrap_data(
            await self.backend.client.list_provider_catalog(request.get("directory"))
        ) or {}
        return {
            "all": [
                {
                    "id": provider.get("id"),
                    "name": provider.get("name") or provider.get("id"),
                    "env": provider.get("env") or [],
                    "source": provider.get("source"),
                    "modelCount": len(provider.get("models") or {}),
                }
                for provider in catalog.get("all") or []
            ],
            "default": catalog.get("default") or {},
            "connected": catalog.get("connected") or [],
        }

    async def _handle_provider_auth(self, request: Dict[str, Any]) -> Any:
        methods = unwrap_data(
            await self.backend.client.provider_auth_methods(request.get("directory"))
        )
        return methods or {}

    async def _handle_oauth_authorize(self, request: Dict[str, Any]) -> Any:
        _require_oauth(request)
        return unwrap_data(
            await self.backend.client.oauth_authorize(
                request["providerID"], request["method"], request.get("directory")
            )
        )

    async def _handle_oauth_callback(self, request: Dict[str, Any]) -> Dict[str, Any]:
        _require_oauth(request)
        success = unwrap_data(
            await self.backend.client.oauth_callback(
                request["providerID"],
                request["method"],
                code=request.get("code"),
                directory=request.get("directory"),
            )
        )
        return {"success": success}

    async def _handle_update_config(self, request: Dict[str, Any]) -> Any:
        config = request.get("config")
        if not isinstance(config, dict):
            raise InvalidArgument("config is required")
        return unwrap_data(await self.backend.client.update_config(config))

    async def _handle_dispose(self, request: Dict[str, Any]) -> Any:
        return unwrap_data(await self.backend.client.dispose())


async def _connect_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _main(config: SidecarConfig) -> None:
    async with open_backend(config) as backend:
        server = SidecarServer(backend, config)
        reader = await _connect_stdin()
        server.install_signal_handlers()
        try:
            logger.info("Ready to receive commands on stdin")
            await server.serve(reader)
        finally:
            server.remove_signal_handlers()
    logger.info("Sidecar stopped")


def run_sidecar(config: Optional[SidecarConfig] = None) -> None:
    """
    Run the sidecar on stdin/stdout until EOF or SIGTERM/SIGINT.

    Args:
        config: Sidecar settings (default: loaded from the config file)
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    if config is None:
        config = get_sidecar_config(load_raw_config())
    asyncio.run(_main(config))


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="OpenCode sidecar")
    parser.add_argument(
        "--directory",
        help="Workspace directory the backend should operate in",
    )
    parser.add_argument(
        "--no-embed",
        action="store_true",
        help="Attach to an existing server instead of starting one",
    )

    args = parser.parse_args()

    sidecar_config = get_sidecar_config(load_raw_config())
    if args.directory:
        sidecar_config.directory = args.directory
    if args.no_embed:
        sidecar_config.embed_server = False

    run_sidecar(sidecar_config)
