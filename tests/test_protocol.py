"""
Tests for protocol.py - line framing between host and sidecar.
"""

import json
import unittest

from codebridge.core.errors import ErrorKind, ProtocolError
from codebridge.sidecar.protocol import (
    deserialize_request,
    deserialize_response,
    serialize_error,
    serialize_request,
    serialize_response,
)


class TestRequests(unittest.TestCase):
    """Request lines."""

    def test_request_is_one_newline_terminated_line(self):
        line = serialize_request("health", directory="/repo")
        self.assertTrue(line.endswith(b"\n"))
        self.assertEqual(line.count(b"\n"), 1)
        self.assertEqual(json.loads(line), {"cmd": "health", "directory": "/repo"})

    def test_none_fields_are_left_out(self):
        line = serialize_request("prompt", 7, sessionPath="ses_1", model=None, system=None)
        self.assertEqual(json.loads(line), {"cmd": "prompt", "id": 7, "sessionPath": "ses_1"})

    def test_empty_strings_are_kept(self):
        request = json.loads(serialize_request("getSession", sessionPath=""))
        self.assertEqual(request["sessionPath"], "")

    def test_multiline_prompt_stays_on_one_line(self):
        line = serialize_request("prompt", message="first\nsecond")
        self.assertEqual(line.count(b"\n"), 1)
        self.assertEqual(deserialize_request(line)["message"], "first\nsecond")

    def test_non_ascii_is_utf8(self):
        line = serialize_request("prompt", message="héllo")
        self.assertIn("héllo".encode("utf-8"), line)

    def test_invalid_json_raises_parse_error(self):
        with self.assertRaises(ProtocolError) as context:
            deserialize_request(b"{not json\n")
        self.assertEqual(context.exception.kind, ErrorKind.PARSE_ERROR)
        self.assertTrue(context.exception.message.startswith("Invalid JSON"))

    def test_non_object_is_rejected(self):
        with self.assertRaises(ProtocolError):
            deserialize_request(b"[1, 2]\n")

    def test_invalid_utf8_is_rejected(self):
        with self.assertRaises(ProtocolError):
            deserialize_request(b"\xff\xfe\n")


class TestResponses(unittest.TestCase):
    """Response lines."""

    def test_success_shape(self):
        response = json.loads(serialize_response("listSessions", {"sessions": []}))
        self.assertEqual(
            response, {"type": "success", "cmd": "listSessions", "data": {"sessions": []}}
        )

    def test_success_echoes_id(self):
        response = json.loads(serialize_response("health", {"healthy": True}, 3))
        self.assertEqual(response["id"], 3)

    def test_error_defaults_to_unknown_error(self):
        response = json.loads(serialize_error("boom"))
        self.assertEqual(response, {"type": "error", "message": "boom", "code": "UNKNOWN_ERROR"})

    def test_error_with_code_and_id(self):
        response = json.loads(serialize_error("Unknown command: nope", "UNKNOWN_CMD", "a1"))
        self.assertEqual(response["code"], "UNKNOWN_CMD")
        self.assertEqual(response["id"], "a1")

    def test_deserialize_response_requires_known_type(self):
        self.assertEqual(deserialize_response(serialize_error("x"))["type"], "error")
        with self.assertRaises(ProtocolError):
            deserialize_response(b'{"type": "progress"}\n')


class TestErrorKind(unittest.TestCase):
    def test_from_code(self):
        self.assertEqual(ErrorKind.from_code("BACKEND_ERROR"), ErrorKind.BACKEND_ERROR)
        self.assertEqual(ErrorKind.from_code("ECONNREFUSED"), ErrorKind.UNKNOWN_ERROR)
        self.assertEqual(ErrorKind.from_code(None), ErrorKind.UNKNOWN_ERROR)


if __name__ == "__main__":
    unittest.main()
