"""Host-side client for the sidecar.

Spawns the sidecar as a child process and talks to it over its stdin/stdout
using the line protocol. Every request carries a monotonically increasing
``id`` and responses are matched on it, so several calls (even same-named
ones) can be in flight at once.

Usage:
    client = SidecarClient()
    health = await client.health("/path/to/repo")
    sessions = await client.list_sessions("/path/to/repo")
    await client.close()
"""

import asyncio
import contextlib
import itertools
import logging
from typing import Any, Dict, List, Optional, Set

from codebridge.core.configs import ClientConfig
from codebridge.core.errors import RETRYABLE_KINDS, BridgeError, ErrorKind, InvalidArgument
from codebridge.sidecar.protocol import (
    ERROR,
    MAX_LINE_BYTES,
    SUCCESS,
    deserialize_response,
    serialize_request,
)

logger = logging.getLogger(__name__)

SIDECAR_EXITED = "OpenCode sidecar exited unexpectedly"
RESPONSE_TOO_LARGE = "OpenCode sidecar response exceeded the line limit"


class SidecarClient:
    """
    Async RPC client for the sidecar.

    The sidecar process is started lazily on the first call and restarted
    lazily after it exits.
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        """
        Initialize client.

        Args:
            config: Sidecar command and retry settings
        """
        self.config = config or ClientConfig()
        self.max_line_bytes = MAX_LINE_BYTES
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._writer: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._spawn_lock = asyncio.Lock()
        self._reapers: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def _ensure_connected(self) -> None:
        # Concurrent first calls must share one sidecar.
        async with self._spawn_lock:
            if not self.connected:
                await self._spawn()

    async def _spawn(self) -> None:
        logger.info(f"Starting sidecar: {' '.join(self.config.sidecar_command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.config.sidecar_command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=self.max_line_bytes,
            )
        except OSError as e:
            raise BridgeError(
                f"Failed to start sidecar: {e}", ErrorKind.TRANSPORT_ERROR
            ) from e
        self._process = process
        self.attach(process.stdout, process.stdin)

    def attach(self, reader: asyncio.StreamReader, writer: Any) -> None:
        """
        Use an already-open stream pair instead of spawning a process.

        ``writer`` needs ``write(bytes)``, an awaitable ``drain()`` and ``close()``.
        """
        self._writer = writer
        self._reader_task = asyncio.create_task(self._read_responses(reader))

    async def _read_responses(self, reader: asyncio.StreamReader) -> None:
        reason, kind = SIDECAR_EXITED, ErrorKind.TRANSPORT_ERROR
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as e:
                    # The line is gone and so is the id it carried.
                    logger.error(f"Sidecar response exceeded the line limit: {e}")
                    reason, kind = RESPONSE_TOO_LARGE, ErrorKind.PARSE_ERROR
                    break
                if not line:
                    break
                try:
                    response = deserialize_response(line)
                except BridgeError as e:
                    logger.warning(f"Ignoring sidecar output: {e.message}")
                    continue

                future = self._pending.pop(self._correlate(response), None)
                if future is None:
                    logger.warning(f"Dropping uncorrelated response: {response}")
                elif not future.done():
                    future.set_result(response)
        finally:
            if self._reader_task is asyncio.current_task():
                self._disconnect(reason, kind)

    def _correlate(self, response: Dict[str, Any]) -> Any:
        """
        Return the pending request id a response answers.

        Errors the sidecar could not tie to a request carry no id. They are
        given to the only pending call when there is exactly one.
        """
        request_id = response.get("id")
        if request_id is None and response.get("type") == ERROR and len(self._pending) == 1:
            return next(iter(self._pending))
        return request_id

    def _disconnect(self, reason: str, kind: ErrorKind = ErrorKind.TRANSPORT_ERROR) -> None:
        writer, self._writer = self._writer, None
        process, self._process = self._process, None
        if writer is not None:
            writer.close()
        if process is not None and process.returncode is None:
            reaper = asyncio.create_task(self._reap(process))
            self._reapers.add(reaper)
            reaper.add_done_callback(self._reapers.discard)

        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(BridgeError(reason, kind))

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def close(self) -> None:
        """Close the sidecar's stdin and wait for it to exit."""
        process = self._process
        writer = self._writer
        reader_task, self._reader_task = self._reader_task, None
        if writer is not None:
            writer.close()
        if process is not None:
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                process.terminate()
                await process.wait()
        elif reader_task is not None:
            # Attached streams have no process whose exit ends the reader.
            reader_task.cancel()
        if reader_task is not None:
            await asyncio.gather(reader_task, return_exceptions=True)
        self._disconnect("Client closed")
        if self._reapers:
            await asyncio.gather(*self._reapers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _call_once(self, cmd: str, fields: Dict[str, Any]) -> Any:
        request_id = next(self._ids)
        line = serialize_request(cmd, request_id, **fields)
        if len(line) > self.max_line_bytes:
            raise InvalidArgument(
                f"Request too large: {len(line)} bytes exceeds the "
                f"{self.max_line_bytes} byte line limit"
            )

        await self._ensure_connected()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self._writer.write(line)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            self._pending.pop(request_id, None)
            self._disconnect(SIDECAR_EXITED)
            raise BridgeError(f"{SIDECAR_EXITED}: {e}", ErrorKind.TRANSPORT_ERROR) from e

        response = await future
        if response.get("type") == SUCCESS:
            return response.get("data")
        raise BridgeError(
            response.get("message") or "Unknown OpenCode error",
            ErrorKind.from_code(response.get("code")),
        )

    async def call(self, cmd: str, **fields: Any) -> Any:
        """
        Send one command and return its ``data``, retrying transient failures.

        Raises:
            BridgeError: With the kind reported by the sidecar
        """
        delay = self.config.retry_delay
        for attempt in range(self.config.max_retries + 1):
            try:
                return await self._call_once(cmd, fields)
            except BridgeError as e:
                if e.kind not in RETRYABLE_KINDS or attempt == self.config.max_retries:
                    raise
                logger.warning(
                    f"Retry {attempt + 1}/{self.config.max_retries} for {cmd} "
                    f"after {delay:.1f}s: {e.message}"
                )
                await asyncio.sleep(delay)
                delay *= self.config.retry_backoff
        raise BridgeError("OpenCode request failed")

    async def health(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self.call("health", directory=directory)

    async def get_server_info(self) -> Dict[str, Any]:
        return await self.call("serverInfo")

    async def get_config(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self.call("config", directory=directory)

    async def get_providers(self, directory: Optional[str] = None) -> Dict[str, Any]:
        """Returns ``{"providers": [...], "defaults": {...}}``."""
        return await self.call("getProviders", directory=directory)

    async def create_session(
        self,
        name: str,
        description: str,
        model: str,
        directory: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = await self.call(
            "createSession",
            name=name,
            description=description,
            model=model,
            directory=directory,
        )
        session = dict(result["session"])
        session["directory"] = directory
        return session

    async def get_session(
        self, session_path: str, directory: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self.call("getSession", sessionPath=session_path, directory=directory)
        return result["session"]

    async def list_sessions(self, directory: Optional[str] = None) -> List[Dict[str, Any]]:
        result = await self.call("listSessions", directory=directory)
        return result.get("sessions") or []

    async def send_prompt(
        self,
        session_path: str,
        message: str,
        model: Optional[str] = None,
        message_id: Optional[str] = None,
        directory: Optional[str] = None,
        system: Optional[str] = None,
        parts: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        return await self.call(
            "prompt",
            sessionPath=session_path,
            message=message,
            model=model,
            messageID=message_id,
            directory=directory,
            system=system,
            parts=parts,
        )

    async def send_prompt_async(
        self,
        session_path: str,
        message: str,
        model: Optional[str] = None,
        message_id: Optional[str] = None,
        directory: Optional[str] = None,
        system: Optional[str] = None,
        parts: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Queue a prompt; returns ``{"queued": True, "sessionId": ...}``."""
        return await self.call(
            "promptAsync",
            sessionPath=session_path,
            message=message,
            model=model,
            messageID=message_id,
            directory=directory,
            system=system,
            parts=parts,
        )

    async def find_files(
        self,
        query: str,
        dirs: Optional[str] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        directory: Optional[str] = None,
    ) -> Any:
        return await self.call(
            "findFiles", query=query, dirs=dirs, type=type, limit=limit, directory=directory
        )

    async def list_messages(
        self, session_path: str, directory: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        result = await self.call("listMessages", sessionPath=session_path, directory=directory)
        return result.get("messages") or []

    async def delete_session(self, session_path: str, directory: Optional[str] = None) -> bool:
        result = await self.call("deleteSession", sessionPath=session_path, directory=directory)
        return bool(result.get("success"))

    async def set_auth(self, provider: str, api_key: str) -> bool:
        result = await self.call("setAuth", provider=provider, apiKey=api_key)
        return bool(result.get("success"))

    async def remove_auth(self, provider_id: str) -> bool:
        result = await self.call("removeAuth", providerID=provider_id)
        return bool(result.get("success"))

    async def provider_list(self, directory: Optional[str] = None) -> Dict[str, Any]:
        """Returns ``{"all": [...], "default": {...}, "connected": [...]}``."""
        return await self.call("providerList", directory=directory)

    async def provider_auth(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self.call("providerAuth", directory=directory)

    async def oauth_authorize(
        self, provider_id: str, method: int, directory: Optional[str] = None
    ) -> Any:
        return await self.call(
            "providerOauthAuthorize", providerID=provider_id, method=method, directory=directory
        )

    async def oauth_callback(
        self,
        provider_id: str,
        method: int,
        code: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> bool:
        result = await self.call(
            "providerOauthCallback",
            providerID=provider_id,
            method=method,
            code=code,
            directory=directory,
        )
        return bool(result.get("success"))

    async def update_config(self, config: Dict[str, Any]) -> Any:
        return await self.call("updateConfig", config=config)

    async def dispose(self) -> Any:
        return await self.call("dispose")
