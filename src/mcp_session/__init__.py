"""MCP Session Client - sessions, dispatch and discovery.

Connects to MCP servers over Streamable HTTP, HTTP+SSE or stdio, correlates JSON-RPC requests and
responses, caches discovered capabilities, and invokes tools.
"""

from mcp_session.client import MCPClient
from mcp_session.dispatcher import RequestDispatcher
from mcp_session.errors import (
    DispatchError,
    DispatchErrorKind,
    InvalidArgumentsError,
    MCPError,
    RemoteError,
    SessionError,
    SessionErrorKind,
    ToolNotFoundError,
    TransportError,
    TransportErrorKind,
)
from mcp_session.manager import ClientManager
from mcp_session.registry import CapabilityRegistry
from mcp_session.session import Session
from mcp_session.transport import (
    MemoryTransport,
    SseTransport,
    StdioTransport,
    StreamableHttpTransport,
    Transport,
    create_transport,
)

__all__ = [
    "MCPClient",
    "ClientManager",
    "CapabilityRegistry",
    "RequestDispatcher",
    "Session",
    "Transport",
    "StreamableHttpTransport",
    "SseTransport",
    "StdioTransport",
    "MemoryTransport",
    "create_transport",
    "MCPError",
    "TransportError",
    "TransportErrorKind",
    "SessionError",
    "SessionErrorKind",
    "DispatchError",
    "DispatchErrorKind",
    "RemoteError",
    "ToolNotFoundError",
    "InvalidArgumentsError",
]
