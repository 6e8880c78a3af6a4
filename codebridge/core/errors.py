"""Error taxonomy shared by the sidecar and the host.

Every failure that crosses the line protocol carries one of the ErrorKind
codes below, so callers can branch on ``err.kind`` instead of parsing
message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    PARSE_ERROR = "PARSE_ERROR"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UNKNOWN_CMD = "UNKNOWN_CMD"
    BACKEND_ERROR = "BACKEND_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "ErrorKind":
        """Map a wire code back to a kind; unrecognized codes are UNKNOWN_ERROR."""
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN_ERROR


class BridgeError(Exception):
    """Base failure with a machine-readable kind and a human message."""

    kind: ErrorKind = ErrorKind.UNKNOWN_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def code(self) -> str:
        return self.kind.value


class ProtocolError(BridgeError):
    kind = ErrorKind.PARSE_ERROR


class InvalidArgument(BridgeError):
    kind = ErrorKind.INVALID_ARGUMENT


class BackendError(BridgeError):
    kind = ErrorKind.BACKEND_ERROR


# Kinds the host retries; the rest are caller mistakes and fail fast.
RETRYABLE_KINDS = frozenset(
    {ErrorKind.TRANSPORT_ERROR, ErrorKind.BACKEND_ERROR, ErrorKind.UNKNOWN_ERROR}
)
