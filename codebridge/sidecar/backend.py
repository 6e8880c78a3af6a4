"""Backend resources owned by the sidecar.

Holds the two expensive, process-wide resources:
- BackendClient: async HTTP client for the OpenCode server API
- EmbeddedServer: an ``opencode serve`` child process started by the sidecar

Both are acquired once in open_backend() and handed to the dispatcher as a
BackendHandle. They are mutated only during startup and shutdown.

Thread safety: None of this is thread-safe. The sidecar runs on a single
asyncio loop, so no locking is needed.
"""

import asyncio
import contextlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx

from codebridge.core.configs import SidecarConfig

logger = logging.getLogger(__name__)

LISTENING_PREFIX = "opencode server listening"
LISTENING_URL = re.compile(r"on\s+(https?://\S+)")


def _segment(value: Any) -> str:
    """Percent-encode one path segment, slashes and dot segments included."""
    segment = quote(str(value), safe="")
    if segment in (".", ".."):
        return segment.replace(".", "%2E")
    return segment


def _decode_event(payload: str) -> Optional[Dict[str, Any]]:
    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning(f"Ignoring malformed event: {payload[:200]}")
        return None
    return event if isinstance(event, dict) else None


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """Decode ``data:`` fields of a server-sent event stream as JSON objects."""
    data: List[str] = []
    async for line in lines:
        if line.startswith("data:"):
            value = line[5:]
            data.append(value[1:] if value.startswith(" ") else value)
        elif not line and data:
            event = _decode_event("\n".join(data))
            data = []
            if event is not None:
                yield event
    if data:
        event = _decode_event("\n".join(data))
        if event is not None:
            yield event


class BackendClient:
    """
    Thin async client for the OpenCode HTTP API.

    Every call returns an envelope: ``{"data": body}`` for 2xx responses and
    ``{"error": body}`` otherwise. Connection failures raise httpx errors.
    Pass the result through envelope.unwrap_data().
    """

    def __init__(
        self,
        base_url: str,
        directory: str = "",
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.directory = directory
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        directory: Optional[str] = None,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        target = directory or self.directory
        if target:
            query["directory"] = target

        response = await self._http.request(method, path, params=query, json=json)
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        if response.is_success:
            return {"data": body}

        if body is None:
            body = {
                "name": f"HTTP {response.status_code}",
                "data": {"message": response.text or response.reason_phrase},
            }
        return {"error": body}

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/global/health")

    async def get_config(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", "/config", directory)

    async def get_providers(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", "/config/providers", directory)

    async def create_session(
        self, title: str, directory: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._request("POST", "/session", directory, json={"title": title})

    async def get_session(
        self, session_id: str, directory: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._request("GET", f"/session/{_segment(session_id)}", directory)

    async def list_sessions(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", "/session", directory)

    async def delete_session(
        self, session_id: str, directory: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._request("DELETE", f"/session/{_segment(session_id)}", directory)

    async def list_messages(
        self, session_id: str, directory: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/session/{_segment(session_id)}/message", directory
        )

    @staticmethod
    def _prompt_body(
        parts: List[Dict[str, Any]],
        model: Optional[Dict[str, str]],
        message_id: Optional[str],
        system: Optional[str],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"parts": parts}
        if model:
            body["model"] = model
        if message_id:
            body["messageID"] = message_id
        if system:
            body["system"] = system
        return body

    async def prompt(
        self,
        session_id: str,
        parts: List[Dict[str, Any]],
        model: Optional[Dict[str, str]] = None,
        message_id: Optional[str] = None,
        system: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a prompt and wait for the assistant's full reply."""
        return await self._request(
            "POST",
            f"/session/{_segment(session_id)}/message",
            directory,
            json=self._prompt_body(parts, model, message_id, system),
        )

    async def prompt_async(
        self,
        session_id: str,
        parts: List[Dict[str, Any]],
        model: Optional[Dict[str, str]] = None,
        message_id: Optional[str] = None,
        system: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Queue a prompt; the reply arrives on the event stream."""
        return await self._request(
            "POST",
            f"/session/{_segment(session_id)}/prompt_async",
            directory,
            json=self._prompt_body(parts, model, message_id, system),
        )

    async def find_files(
        self,
        query: str,
        dirs: Optional[str] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        directory: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/find/file",
            directory,
            params={"query": query, "dirs": dirs, "type": type, "limit": limit},
        )

    async def list_provider_catalog(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", "/provider", directory)

    async def provider_auth_methods(self, directory: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", "/provider/auth", directory)

    async def oauth_authorize(
        self, provider_id: str, method: int, directory: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/provider/{_segment(provider_id)}/oauth/authorize",
            directory,
            json={"method": method},
        )

    async def oauth_callback(
        self,
        provider_id: str,
        method: int,
        code: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"method": method}
        if code is not None:
            body["code"] = code
        return await self._request(
            "POST",
            f"/provider/{_segment(provider_id)}/oauth/callback",
            directory,
            json=body,
        )

    async def set_auth(self, provider_id: str, api_key: str) -> Dict[str, Any]:
        return await self._request(
            "PUT", f"/auth/{_segment(provider_id)}", json={"type": "api", "key": api_key}
        )

    async def remove_auth(self, provider_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/auth/{_segment(provider_id)}")

    async def update_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", "/global/config", json=config)

    async def dispose(self) -> Dict[str, Any]:
        return await self._request("POST", "/global/dispose")

    async def events(self, directory: Optional[str] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        Follow the server's ``/event`` stream.

        Yields one decoded JSON object per server-sent event. Events that are
        not valid JSON objects are logged and skipped. Ends when the server
        closes the stream.
        """
        params = {}
        target = directory or self.directory
        if target:
            params["directory"] = target

        async with self._http.stream(
            "GET",
            "/event",
            params=params,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(None),
        ) as response:
            response.raise_for_status()
            async for event in parse_sse(response.aiter_lines()):
                yield event

    async def aclose(self) -> None:
        await self._http.aclose()


class EmbeddedServer:
    """
    An ``opencode serve`` child process owned by the sidecar.

    After startup its output keeps being read and logged at debug level so
    the pipe never fills up and blocks the child.
    """

    def __init__(self, process: asyncio.subprocess.Process, url: str):
        self.process = process
        self.url = url
        self._drain_task: Optional[asyncio.Task] = None
        if process.stdout is not None:
            self._drain_task = asyncio.create_task(self._drain_output())

    @classmethod
    async def start(
        cls,
        binary: str,
        hostname: str,
        port: int,
        timeout: float,
    ) -> "EmbeddedServer":
        """
        Spawn the server and wait until it reports its listening URL.

        Raises:
            OSError: If the binary cannot be started
            asyncio.TimeoutError: If no URL is reported within ``timeout``
            RuntimeError: If the process exits or prints an unparseable URL
        """
        logger.info(f"Starting OpenCode server {binary} on {hostname}:{port}")
        process = await asyncio.create_subprocess_exec(
            binary,
            "serve",
            f"--hostname={hostname}",
            f"--port={port}",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            url = await asyncio.wait_for(cls._wait_for_url(process), timeout=timeout)
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return cls(process, url)

    @staticmethod
    async def _wait_for_url(process: asyncio.subprocess.Process) -> str:
        output: List[str] = []
        while True:
            raw = await process.stdout.readline()
            if not raw:
                code = await process.wait()
                message = f"Server exited with code {code}"
                if output:
                    message += "\nServer output: " + "".join(output)
                raise RuntimeError(message)

            line = raw.decode("utf-8", errors="replace")
            output.append(line)
            if not line.startswith(LISTENING_PREFIX):
                continue
            match = LISTENING_URL.search(line)
            if not match:
                raise RuntimeError(f"Failed to parse server url from output: {line.strip()}")
            return match.group(1)

    async def _drain_output(self) -> None:
        while True:
            try:
                raw = await self.process.stdout.readline()
            except ValueError:
                # Over-long line; the reader already dropped it.
                continue
            if not raw:
                return
            logger.debug(f"opencode: {raw.decode('utf-8', errors='replace').rstrip()}")

    async def close(self) -> None:
        if self.process.returncode is None:
            self.process.kill()
            await self.process.wait()
        if self._drain_task is not None:
            self._drain_task.cancel()
            await asyncio.gather(self._drain_task, return_exceptions=True)
            self._drain_task = None


@dataclass
class BackendHandle:
    """Resources the dispatcher owns for its whole lifetime."""

    client: BackendClient
    server: Optional[EmbeddedServer] = None
    started_at: Optional[int] = None

    @property
    def base_url(self) -> str:
        return self.client.base_url

    def server_info(self) -> Dict[str, Any]:
        return {"baseUrl": self.base_url, "startedAt": self.started_at}

    async def close(self) -> None:
        if self.server is not None:
            logger.info("Stopping embedded OpenCode server")
            await self.server.close()
        await self.client.aclose()


async def start_backend(config: SidecarConfig) -> BackendHandle:
    """
    Launch the embedded server, or fall back to an existing one.

    Startup never fails: if the server cannot be launched the client points
    at ``config.default_base_url`` and unavailability surfaces later as call
    failures.
    """
    if config.embed_server:
        try:
            server = await EmbeddedServer.start(
                binary=config.opencode_binary,
                hostname=config.hostname,
                port=config.port,
                timeout=config.startup_timeout,
            )
        except (OSError, RuntimeError, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to start server, using existing server: {e!r}")
        else:
            logger.info(f"OpenCode server started at {server.url}")
            logger.info(f"Using OpenCode directory {config.directory}")
            client = BackendClient(server.url, config.directory, config.request_timeout)
            return BackendHandle(
                client=client,
                server=server,
                started_at=int(time.time() * 1000),
            )

    client = BackendClient(
        config.default_base_url, config.directory, config.request_timeout
    )
    return BackendHandle(client=client)


@contextlib.asynccontextmanager
async def open_backend(config: SidecarConfig) -> AsyncIterator[BackendHandle]:
    """Scoped acquisition of the backend handle."""
    handle = await start_backend(config)
    logger.info("OpenCode client initialized")
    try:
        yield handle
    finally:
        await handle.close()
