"""Line-delimited JSON protocol between the host and the sidecar.

One message per line, UTF-8, terminated by a newline. Requests go to the
sidecar's stdin, responses come back on its stdout. Logging never goes to
stdout.

Request format:
    {
        "cmd": "health" | "createSession" | "prompt" | ...,
        "id": int,              # Optional, echoed in the response
        "sessionPath": str,     # Session-scoped commands
        "directory": str,       # Workspace the backend should operate in
        ...                     # Command-specific fields
    }

Response format:
    {"type": "success", "cmd": str, "data": Any, "id": ...}
    {"type": "error", "message": str, "code": str, "id": ...}

Without an ``id`` a response can only be matched to its request by ``cmd``,
which is ambiguous while two same-named requests are in flight.
"""

import json
from typing import Any, Dict

from codebridge.core.errors import ErrorKind, ProtocolError

SUCCESS = "success"
ERROR = "error"

# Lines can carry whole prompts; asyncio's 64KB default is too small.
MAX_LINE_BYTES = 16 * 1024 * 1024


def _encode(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


def serialize_request(cmd: str, request_id: Any = None, **fields: Any) -> bytes:
    """
    Serialize a request to one protocol line.

    Fields whose value is None are left out so the sidecar sees them as
    missing rather than null.
    """
    request: Dict[str, Any] = {"cmd": cmd}
    if request_id is not None:
        request["id"] = request_id
    request.update({key: value for key, value in fields.items() if value is not None})
    return _encode(request)


def deserialize_request(line: bytes) -> Dict[str, Any]:
    """
    Parse one request line.

    Raises:
        ProtocolError: If the line is not valid JSON or not a JSON object
    """
    try:
        request = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(request, dict):
        raise ProtocolError("Invalid JSON: request must be an object")
    return request


def serialize_response(cmd: str, data: Any = None, request_id: Any = None) -> bytes:
    """Serialize a success response."""
    response: Dict[str, Any] = {"type": SUCCESS, "cmd": cmd}
    if data is not None:
        response["data"] = data
    if request_id is not None:
        response["id"] = request_id
    return _encode(response)


def serialize_error(
    message: str,
    code: str = ErrorKind.UNKNOWN_ERROR.value,
    request_id: Any = None,
) -> bytes:
    """Serialize an error response."""
    response: Dict[str, Any] = {"type": ERROR, "message": message, "code": code}
    if request_id is not None:
        response["id"] = request_id
    return _encode(response)


def deserialize_response(line: bytes) -> Dict[str, Any]:
    """
    Parse one response line.

    Raises:
        ProtocolError: If the line is not a JSON object with a known type
    """
    response = deserialize_request(line)
    if response.get("type") not in (SUCCESS, ERROR):
        raise ProtocolError(f"Unexpected OpenCode response: {line[:200]!r}")
    return response
