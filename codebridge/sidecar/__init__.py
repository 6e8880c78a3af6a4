"""OpenCode sidecar for codebridge.

A long-running child process that brokers line-protocol commands to an
OpenCode backend server, which it starts itself or attaches to.

Architecture:
- BackendHandle: HTTP client plus the optional embedded server, owned by the sidecar
- SidecarServer: stdin/stdout dispatcher routing each command to a handler
- SidecarClient: host-side client that spawns the sidecar and correlates responses by id
"""

from codebridge.sidecar.backend import BackendClient, BackendHandle, open_backend
from codebridge.sidecar.client import SidecarClient
from codebridge.sidecar.envelope import unwrap_data
from codebridge.sidecar.protocol import (
    serialize_request,
    deserialize_request,
    serialize_response,
    serialize_error,
    deserialize_response,
)

__all__ = [
    "BackendClient",
    "BackendHandle",
    "open_backend",
    "SidecarClient",
    "unwrap_data",
    "serialize_request",
    "deserialize_request",
    "serialize_response",
    "serialize_error",
    "deserialize_response",
]
