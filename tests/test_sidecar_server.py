"""
Tests for server.py - the stdio command dispatcher.

The dispatcher runs against FakeBackendClient and writes responses into a
BytesIO, so every test can inspect the exact lines it produced.
"""

import asyncio
import io
import json
import os
import signal
import sys
import unittest
from unittest.mock import AsyncMock, patch

from codebridge.core.configs import SidecarConfig
from codebridge.core.parts import extract_message_text
from codebridge.sidecar import server as server_module
from codebridge.sidecar.backend import BackendHandle
from codebridge.sidecar.protocol import serialize_request
from codebridge.sidecar.server import SidecarServer, split_model, to_ui_providers
from fakes import PROVIDER_CATALOG, FakeBackendClient


class ServerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackendClient()
        self.output = io.BytesIO()
        self.server = SidecarServer(
            BackendHandle(self.backend, started_at=1700000000000),
            SidecarConfig(health_delay=0, heartbeat_interval=3600),
            output=self.output,
        )

    def responses(self):
        return [json.loads(line) for line in self.output.getvalue().splitlines()]

    async def call(self, cmd, **fields):
        request = {"cmd": cmd, **fields}
        await self.server.handle_command(request)
        return self.responses()[-1]


class TestDispatch(ServerTestCase):
    """Routing, error codes and framing."""

    async def test_unknown_command(self):
        response = await self.call("frobnicate", id=4)
        self.assertEqual(
            response,
            {"type": "error", "message": "Unknown command: frobnicate", "code": "UNKNOWN_CMD", "id": 4},
        )

    async def test_missing_command(self):
        await self.server.handle_line(b'{"sessionPath": "ses_1"}\n')
        self.assertEqual(self.responses()[0]["code"], "UNKNOWN_CMD")

    async def test_parse_error_then_keeps_serving(self):
        await self.server.handle_line(b"{not json\n")
        await self.server.handle_line(serialize_request("health"))

        parse_error, health = self.responses()
        self.assertEqual(parse_error["type"], "error")
        self.assertEqual(parse_error["code"], "PARSE_ERROR")
        self.assertTrue(parse_error["message"].startswith("Invalid JSON"))
        self.assertNotIn("id", parse_error)
        self.assertEqual(health["type"], "success")

    async def test_blank_line_is_ignored(self):
        await self.server.handle_line(b"   \n")
        self.assertEqual(self.responses(), [])

    async def test_request_id_is_echoed(self):
        response = await self.call("health", id="req-9")
        self.assertEqual(response["id"], "req-9")
        self.assertEqual(response["cmd"], "health")

    async def test_backend_error_code(self):
        response = await self.call("getSession", sessionPath="ses_missing")
        self.assertEqual(response["code"], "BACKEND_ERROR")
        self.assertEqual(response["message"], "Session not found: ses_missing")

    async def test_exception_code_attribute_is_forwarded(self):
        error = ConnectionRefusedError("connect ECONNREFUSED 127.0.0.1:4096")
        error.code = "ECONNREFUSED"
        self.backend.failures["list_sessions"] = error
        response = await self.call("listSessions")
        self.assertEqual(response["code"], "ECONNREFUSED")
        self.assertIn("ECONNREFUSED", response["message"])

    async def test_unexpected_exception_is_unknown_error(self):
        self.backend.failures["dispose"] = RuntimeError("disposed twice")
        response = await self.call("dispose")
        self.assertEqual(response, {"type": "error", "message": "disposed twice", "code": "UNKNOWN_ERROR"})

    async def test_api_key_is_not_logged(self):
        with self.assertLogs("codebridge.sidecar.server", level="INFO") as logs:
            await self.call("setAuth", provider="openai", apiKey="sk-secret")
        self.assertFalse(any("sk-secret" in line for line in logs.output))


class TestArguments(ServerTestCase):
    """Required fields are checked before the backend is called."""

    async def test_session_path_required(self):
        for cmd in ("getSession", "prompt", "promptAsync", "listMessages", "deleteSession"):
            with self.subTest(cmd=cmd):
                response = await self.call(cmd, message="hi")
                self.assertEqual(response["code"], "INVALID_ARGUMENT")
                self.assertEqual(response["message"], "sessionPath is required")
        self.assertEqual(self.backend.calls, [])

    async def test_set_auth_requires_both_fields(self):
        response = await self.call("setAuth", provider="openai")
        self.assertEqual(response["code"], "INVALID_ARGUMENT")
        self.assertEqual(response["message"], "provider and apiKey are required")

    async def test_remove_auth_requires_provider(self):
        response = await self.call("removeAuth")
        self.assertEqual(response["message"], "providerID is required")

    async def test_oauth_requires_provider_and_numeric_method(self):
        for cmd in ("providerOauthAuthorize", "providerOauthCallback"):
            for fields in (
                {"method": 0},
                {"providerID": "anthropic"},
                {"providerID": "anthropic", "method": "0"},
                {"providerID": "anthropic", "method": True},
            ):
                with self.subTest(cmd=cmd, fields=fields):
                    response = await self.call(cmd, **fields)
                    self.assertEqual(response["code"], "INVALID_ARGUMENT")
                    self.assertEqual(response["message"], "providerID and method are required")
        self.assertEqual(self.backend.calls, [])

    async def test_update_config_requires_object(self):
        for value in (None, "theme=dark", ["theme"]):
            with self.subTest(config=value):
                response = await self.call("updateConfig", config=value)
                self.assertEqual(response["message"], "config is required")
        self.assertEqual(self.backend.calls, [])


class TestHealth(ServerTestCase):
    """The health command retries failed checks."""

    async def test_recovers_within_attempts(self):
        self.backend.health_failures = 9
        response = await self.call("health")
        self.assertEqual(response["data"], {"healthy": True, "version": "0.9.1"})
        self.assertEqual(self.backend.health_calls, 10)

    async def test_fails_after_all_attempts(self):
        self.backend.health_failures = 10
        response = await self.call("health")
        self.assertEqual(response["type"], "error")
        self.assertEqual(response["message"], "connection refused")
        self.assertEqual(self.backend.health_calls, 10)

    async def test_heartbeat_failures_are_only_logged(self):
        self.server.config.heartbeat_interval = 0.001
        self.backend.health_failures = 100
        with self.assertLogs("codebridge.sidecar.server", level="WARNING") as logs:
            task = asyncio.create_task(self.server._heartbeat())
            while self.backend.health_calls < 2:
                await asyncio.sleep(0.005)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.assertIn("Health check failed", logs.output[0])
        self.assertEqual(self.responses(), [])


class TestCommands(ServerTestCase):
    """Handler projections."""

    async def test_server_info(self):
        response = await self.call("serverInfo")
        self.assertEqual(
            response["data"], {"baseUrl": "http://127.0.0.1:4096", "startedAt": 1700000000000}
        )

    async def test_create_then_list(self):
        created = await self.call("createSession", name="Refactor", directory="/repo")
        listed = await self.call("listSessions", directory="/repo")

        path = created["data"]["sessionPath"]
        self.assertEqual(path, "ses_001")
        self.assertEqual(
            created["data"]["session"],
            {"path": "ses_001", "name": "Refactor", "model": None, "created": 1700000001000},
        )
        self.assertIn(path, [s["path"] for s in listed["data"]["sessions"]])
        self.assertIn(("create_session", "Refactor", "/repo"), self.backend.calls)

    async def test_create_session_title_fallbacks(self):
        await self.call("createSession", description="About the parser")
        await self.call("createSession")
        titles = [call[1] for call in self.backend.calls if call[0] == "create_session"]
        self.assertEqual(titles, ["About the parser", "Untitled Session"])

    async def test_get_session(self):
        await self.call("createSession", name="Chat")
        response = await self.call("getSession", sessionPath="ses_001")
        self.assertEqual(response["data"]["session"]["name"], "Chat")

    async def test_prompt_splits_model_and_returns_reply_text(self):
        response = await self.call(
            "prompt",
            sessionPath="ses_001",
            message="hi",
            model="anthropic/claude/sonnet",
            messageID="msg_abc",
            directory="/repo",
        )
        data = response["data"]
        self.assertEqual(data["response"], "echo: hi")
        self.assertEqual(data["message"], "hi")
        self.assertEqual(data["model"], "anthropic/claude/sonnet")
        self.assertEqual(data["sessionId"], "ses_001")
        self.assertTrue(data["messageId"].startswith("msg_reply_"))
        self.assertIn("timestamp", data)

        _, session, parts, model, message_id, _, directory = self.backend.calls[-1]
        self.assertEqual(parts, [{"type": "text", "text": "hi"}])
        self.assertEqual(model, {"providerID": "anthropic", "modelID": "claude/sonnet"})
        self.assertEqual(message_id, "msg_abc")
        self.assertEqual(directory, "/repo")

    async def test_prompt_model_without_separator_is_dropped(self):
        await self.call("prompt", sessionPath="ses_001", message="hi", model="gpt-4")
        self.assertIsNone(self.backend.calls[-1][3])

    async def test_list_messages_projection(self):
        self.backend.messages["ses_001"] = [
            {
                "info": {"id": "msg_2", "role": "assistant", "time": {"created": 20}},
                "parts": [{"type": "tool"}, {"type": "text", "text": "answer"}],
            },
            {"info": {"id": "msg_1", "role": "user", "time": {"created": 10}}, "parts": []},
        ]
        response = await self.call("listMessages", sessionPath="ses_001")
        self.assertEqual(
            response["data"]["messages"],
            [
                {"id": "msg_2", "role": "assistant", "timestamp": 20, "text": "answer"},
                {"id": "msg_1", "role": "user", "timestamp": 10, "text": ""},
            ],
        )

    async def test_delete_session(self):
        await self.call("createSession", name="Doomed")
        response = await self.call("deleteSession", sessionPath="ses_001")
        self.assertEqual(response["data"], {"success": True, "sessionPath": "ses_001"})
        self.assertEqual(self.backend.sessions, {})

    async def test_get_providers(self):
        response = await self.call("getProviders")
        self.assertEqual(
            response["data"],
            {
                "providers": [
                    {"name": "OpenAI", "models": ["openai/gpt-4o", "openai/o3"]},
                    {"name": "opencode", "models": ["opencode/big-pickle"]},
                ],
                "defaults": {"openai": "openai/gpt-4o"},
            },
        )

    async def test_config_combines_config_and_providers(self):
        response = await self.call("config", directory="/repo")
        data = response["data"]
        self.assertEqual(data["config"], {"theme": "opencode", "share": "manual"})
        self.assertEqual(data["defaults"], {"openai": "openai/gpt-4o"})
        self.assertEqual(len(data["providers"]), 2)

    async def test_auth_round_trip(self):
        set_response = await self.call("setAuth", provider="openai", apiKey="sk-1")
        remove_response = await self.call("removeAuth", providerID="openai")
        self.assertEqual(set_response["data"], {"success": True, "provider": "openai"})
        self.assertEqual(remove_response["data"], {"success": True})

    async def test_prompt_async_is_queued(self):
        response = await self.call(
            "promptAsync", sessionPath="ses_001", message="later", model="openai/o3", id=7
        )
        self.assertEqual(response["data"], {"queued": True, "sessionId": "ses_001"})
        self.assertEqual(response["id"], 7)
        name, session, parts, model, _, _, _ = self.backend.calls[-1]
        self.assertEqual(name, "prompt_async")
        self.assertEqual(parts, [{"type": "text", "text": "later"}])
        self.assertEqual(model, {"providerID": "openai", "modelID": "o3"})

    async def test_prompt_async_backend_error(self):
        self.backend.failures["prompt_async"] = {"name": "BusyError", "data": {"message": "Session is busy"}}
        response = await self.call("promptAsync", sessionPath="ses_001", message="hi")
        self.assertEqual(response["code"], "BACKEND_ERROR")
        self.assertEqual(response["message"], "Session is busy")

    async def test_prompt_keeps_caller_parts(self):
        file_part = {"type": "file", "url": "file:///repo/app.py", "mime": "text/plain"}
        await self.call("prompt", sessionPath="ses_001", message="look", parts=[file_part])
        self.assertEqual(self.backend.calls[-1][2], [{"type": "text", "text": "look"}, file_part])

        text_part = {"type": "text", "text": "already here"}
        await self.call("prompt", sessionPath="ses_001", message="ignored", parts=[text_part])
        self.assertEqual(self.backend.calls[-1][2], [text_part])

        await self.call("prompt", sessionPath="ses_001", message="plain", parts=[{"url": "x"}])
        self.assertEqual(self.backend.calls[-1][2], [{"type": "text", "text": "plain"}])

    async def test_find_files_trims_query(self):
        response = await self.call("findFiles", query="  app  ", limit=10, directory="/repo")
        self.assertEqual(response["data"], ["src/app.py", "src/app_test.py"])
        self.assertEqual(self.backend.calls[-1], ("find_files", "app", None, None, 10, "/repo"))

        await self.call("findFiles")
        self.assertEqual(self.backend.calls[-1][1], "")

    async def test_provider_list_summary(self):
        response = await self.call("providerList")
        self.assertEqual(
            response["data"],
            {
                "all": [
                    {
                        "id": "openai",
                        "name": "OpenAI",
                        "env": ["OPENAI_API_KEY"],
                        "source": "env",
                        "modelCount": 2,
                    },
                    {"id": "local", "name": "local", "env": [], "source": None, "modelCount": 0},
                ],
                "default": {"openai": "gpt-4o"},
                "connected": ["openai"],
            },
        )

    async def test_provider_auth_defaults_to_empty(self):
        response = await self.call("providerAuth")
        self.assertEqual(response["data"], {})

    async def test_oauth_flow(self):
        authorize = await self.call("providerOauthAuthorize", providerID="anthropic", method=0)
        callback = await self.call("providerOauthCallback", providerID="anthropic", method=0, code="c0de")
        self.assertEqual(authorize["data"]["url"], "https://auth.test/anthropic")
        self.assertEqual(callback["data"], {"success": True})
        self.assertEqual(self.backend.calls[-1], ("oauth_callback", "anthropic", 0, "c0de", None))

    async def test_update_config(self):
        response = await self.call("updateConfig", config={"theme": "dark"})
        self.assertEqual(response["data"]["theme"], "dark")
        self.assertEqual(response["data"]["share"], "manual")


class TestConcurrency(ServerTestCase):
    """Lines are handled concurrently; responses arrive in completion order."""

    async def test_same_named_commands_without_id_are_ambiguous(self):
        gate = asyncio.Event()
        self.backend.prompt_gates["slow"] = gate

        slow = self.server.dispatch_line(serialize_request("prompt", sessionPath="ses_1", message="slow"))
        fast = self.server.dispatch_line(serialize_request("prompt", sessionPath="ses_1", message="fast"))
        await fast
        self.assertFalse(slow.done())
        gate.set()
        await slow

        first, second = self.responses()
        # Nothing but order tells these two apart.
        self.assertEqual(first["cmd"], second["cmd"])
        self.assertNotIn("id", first)
        self.assertEqual(first["data"]["message"], "fast")
        self.assertEqual(second["data"]["message"], "slow")

    async def test_ids_correlate_out_of_order_responses(self):
        gate = asyncio.Event()
        self.backend.prompt_gates["slow"] = gate

        tasks = [
            self.server.dispatch_line(serialize_request("prompt", 1, sessionPath="ses_1", message="slow")),
            self.server.dispatch_line(serialize_request("prompt", 2, sessionPath="ses_1", message="fast")),
        ]
        await tasks[1]
        gate.set()
        await asyncio.gather(*tasks)

        by_id = {response["id"]: response for response in self.responses()}
        self.assertEqual(by_id[1]["data"]["response"], "echo: slow")
        self.assertEqual(by_id[2]["data"]["response"], "echo: fast")
        self.assertEqual([r["id"] for r in self.responses()], [2, 1])


class TestServe(ServerTestCase):
    """The read loop."""

    async def test_eof_waits_for_in_flight_commands(self):
        reader = asyncio.StreamReader()
        reader.feed_data(serialize_request("health", 1))
        reader.feed_data(serialize_request("listSessions", 2))
        reader.feed_eof()

        await asyncio.wait_for(self.server.serve(reader), timeout=5)
        self.assertEqual(sorted(r["id"] for r in self.responses()), [1, 2])

    async def test_oversized_line_is_a_parse_error(self):
        reader = asyncio.StreamReader(limit=64)
        reader.feed_data(serialize_request("prompt", sessionPath="ses_1", message="x" * 200))
        reader.feed_data(serialize_request("health"))
        reader.feed_eof()

        await asyncio.wait_for(self.server.serve(reader), timeout=5)
        parse_error, health = self.responses()
        self.assertEqual(parse_error["code"], "PARSE_ERROR")
        self.assertEqual(health["type"], "success")

    async def test_shutdown_cancels_in_flight_commands(self):
        self.backend.prompt_gates["forever"] = asyncio.Event()
        reader = asyncio.StreamReader()
        reader.feed_data(serialize_request("prompt", sessionPath="ses_1", message="forever"))

        serving = asyncio.create_task(self.server.serve(reader))
        await asyncio.wait_for(self.backend.prompt_started.wait(), timeout=5)
        self.server.request_shutdown()
        await asyncio.wait_for(serving, timeout=5)

        self.assertEqual(self.responses(), [])


class TestProjections(unittest.TestCase):
    def test_split_model(self):
        self.assertEqual(split_model("openai/gpt-4o"), {"providerID": "openai", "modelID": "gpt-4o"})
        self.assertIsNone(split_model("gpt-4"))
        self.assertIsNone(split_model(None))

    def test_to_ui_providers_handles_missing_catalog(self):
        self.assertEqual(to_ui_providers(None), {"providers": [], "defaults": {}})
        self.assertEqual(len(to_ui_providers(PROVIDER_CATALOG)["providers"]), 2)

    def test_message_text_by_role(self):
        parts = [
            {"type": "text", "text": "a much longer draft"},
            {"type": "tool", "state": {"status": "completed"}},
            {"type": "text", "text": "final", "synthetic": False},
            {"type": "text", "text": "system reminder that is longest of all", "synthetic": True},
            {"type": "text", "text": "skipped and also quite long", "ignored": True},
        ]
        self.assertEqual(extract_message_text(parts, "assistant"), "final")
        self.assertEqual(extract_message_text(parts, "user"), "a much longer draft")
        self.assertEqual(extract_message_text([{"type": "tool"}], "assistant"), "")
        self.assertEqual(extract_message_text(None), "")


class TestSignals(unittest.IsolatedAsyncioTestCase):
    """SIGTERM stops the sidecar and releases the backend."""

    def setUp(self):
        self.backend = FakeBackendClient()
        self.handle = BackendHandle(self.backend)
        self.reader = asyncio.StreamReader()
        self.config = SidecarConfig(embed_server=False, heartbeat_interval=3600)

    async def test_sigterm_while_serving(self):
        stdin_connected = asyncio.Event()

        async def connect_stdin():
            stdin_connected.set()
            return self.reader

        with patch("codebridge.sidecar.backend.start_backend", AsyncMock(return_value=self.handle)), \
                patch("codebridge.sidecar.server._connect_stdin", connect_stdin):
            running = asyncio.create_task(server_module._main(self.config))
            await asyncio.wait_for(stdin_connected.wait(), timeout=5)
            # Handlers are installed before _main first yields after connecting.
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(running, timeout=5)

        self.assertTrue(self.backend.closed)

    async def test_shutdown_before_serving_returns_at_once(self):
        server = SidecarServer(self.handle, self.config, output=io.BytesIO())
        server.request_shutdown()
        await asyncio.wait_for(server.serve(self.reader), timeout=5)


class TestRunSidecar(unittest.TestCase):
    """The blocking entry point."""

    def test_sigterm_ends_run_sidecar(self):
        backend = FakeBackendClient()
        handle = BackendHandle(backend)

        async def connect_stdin():
            asyncio.get_running_loop().call_soon(os.kill, os.getpid(), signal.SIGTERM)
            return asyncio.StreamReader()

        with patch("codebridge.sidecar.backend.start_backend", AsyncMock(return_value=handle)), \
                patch("codebridge.sidecar.server._connect_stdin", connect_stdin), \
                patch("codebridge.sidecar.server.logging.basicConfig") as basic_config:
            server_module.run_sidecar(SidecarConfig(embed_server=False, heartbeat_interval=3600))

        self.assertTrue(backend.closed)
        self.assertIs(basic_config.call_args.kwargs["stream"], sys.stderr)


if __name__ == "__main__":
    unittest.main()
