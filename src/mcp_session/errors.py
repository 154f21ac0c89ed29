"""Error taxonomy for the MCP session client.

Transport, session and dispatch errors describe protocol-level failures.
``RemoteError`` and its subclasses describe a completed round trip whose
answer was an error; they never change session state.
"""

from enum import Enum
from typing import Any, Optional


class MCPError(Exception):
    """Base exception for MCP client errors."""
    pass


class TransportErrorKind(str, Enum):
    CONNECT_FAILED = "connect_failed"
    TLS_ERROR = "tls_error"
    TIMEOUT = "timeout"
    WRITE_FAILED = "write_failed"
    READ_FAILED = "read_failed"


class SessionErrorKind(str, Enum):
    INIT_TIMEOUT = "init_timeout"
    CONNECT_FAILED = "connect_failed"
    HANDSHAKE_REJECTED = "handshake_rejected"
    NOT_READY = "not_ready"


class DispatchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SESSION_CLOSED = "session_closed"
    MALFORMED_RESPONSE = "malformed_response"


class TransportError(MCPError):
    """The duplex channel failed to open, read or write."""

    def __init__(self, kind: TransportErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SessionError(MCPError):
    """Handshake failure or lifecycle misuse."""

    def __init__(self, kind: SessionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class DispatchError(MCPError):
    """A request did not produce a response."""

    def __init__(
        self,
        kind: DispatchErrorKind,
        message: str,
        request_id: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.request_id = request_id


class RemoteError(MCPError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


class ToolNotFoundError(RemoteError):
    """The requested tool does not exist on the server."""
    pass


class InvalidArgumentsError(RemoteError):
    """Tool arguments were rejected, locally or by the server."""
    pass


# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
