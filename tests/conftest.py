"""Shared fixtures: an in-process fake MCP server behind MemoryTransport."""

import asyncio
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from common.models import ClientIdentity
from mcp_session.client import MCPClient
from mcp_session.errors import TransportError, TransportErrorKind
from mcp_session.session import Session
from mcp_session.transport import MemoryTransport

ENDPOINT = "memory://fake/sse"

SEARCH_TOOL = {
    "name": "search",
    "description": "Web search",
    "inputSchema": {"type": "object", "properties": {"query": {"type": "string"}}},
}

ECHO_TOOL = {
    "name": "echo",
    "description": "Echo text back",
    "inputSchema": {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    },
}

SLOW_TOOL = {
    "name": "slow",
    "description": "Answers after a delay",
    "inputSchema": {"type": "object", "properties": {"delay": {"type": "number"}, "tag": {}}},
}

HANG_TOOL = {"name": "hang", "description": "Never answers", "inputSchema": {"type": "object"}}

FAIL_TOOL = {"name": "fail", "description": "Reports a tool error", "inputSchema": {"type": "object"}}


class FakeRpcError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class RefusingTransport(MemoryTransport):
    """Transport whose connect always fails."""

    async def connect(self, endpoint, tls_config=None, timeout=10.0):
        raise TransportError(TransportErrorKind.CONNECT_FAILED, f"Connection refused: {endpoint}")


class FakeServer:
    """
    Scriptable MCP server.

    Records every request it receives so tests can count round trips.
    """

    def __init__(
        self,
        tools: Optional[list[dict[str, Any]]] = None,
        capabilities: tuple[str, ...] = ("tools", "prompts", "resources"),
        protocol_version: str = "2025-03-26",
    ) -> None:
        self.tools = list(tools if tools is not None else [SEARCH_TOOL, ECHO_TOOL, SLOW_TOOL, HANG_TOOL, FAIL_TOOL])
        self.prompts: list[dict[str, Any]] = [
            {"name": "summarize", "description": "Summarize text", "arguments": [{"name": "text", "required": True}]},
        ]
        self.resources: list[dict[str, Any]] = [
            {"uri": "file:///readme.md", "name": "readme", "mimeType": "text/markdown"},
        ]
        self.capabilities = capabilities
        self.protocol_version = protocol_version

        self.init_delay = 0.0
        self.hang_initialize = False
        self.init_error: Optional[FakeRpcError] = None
        self.list_delay = 0.0
        self.page_size: Optional[int] = None
        self.tools_result: Optional[dict[str, Any]] = None
        self.call_errors: dict[str, FakeRpcError] = {}
        self.refuse_connects = 0

        self.requests: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.replies: list[dict[str, Any]] = []
        self.transports: list[MemoryTransport] = []
        self.connect_attempts = 0

    @property
    def transport(self) -> MemoryTransport:
        return self.transports[-1]

    def transport_factory(self) -> MemoryTransport:
        self.connect_attempts += 1
        if self.refuse_connects > 0:
            self.refuse_connects -= 1
            transport: MemoryTransport = RefusingTransport(self.handle)
        else:
            transport = MemoryTransport(self.handle)
        self.transports.append(transport)
        return transport

    def count(self, method: str) -> int:
        return sum(1 for r in self.requests if r["method"] == method)

    def tool_names(self) -> list[str]:
        return [t["name"] for t in self.tools]

    async def handle(self, message: dict[str, Any]) -> Optional[dict[str, Any]]:
        if "method" not in message:
            self.replies.append(message)
            return None
        if "id" not in message:
            self.notifications.append(message)
            return None

        self.requests.append(message)
        handler = getattr(self, "_on_" + message["method"].replace("/", "_"), None)
        if handler is None:
            return _error(message["id"], -32601, f"Method not found: {message['method']}")

        try:
            result = await handler(message.get("params") or {})
        except FakeRpcError as e:
            return _error(message["id"], e.code, e.message)
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}

    async def _on_initialize(self, params):
        if self.hang_initialize:
            await asyncio.Event().wait()
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.init_error is not None:
            raise self.init_error
        return {
            "protocolVersion": self.protocol_version,
            "serverInfo": {"name": "fake-server", "version": "0.1.0"},
            "capabilities": {name: {} for name in self.capabilities},
        }

    async def _on_ping(self, params):
        return {}

    async def _on_tools_list(self, params):
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.tools_result is not None:
            return self.tools_result
        return self._page("tools", self.tools, params)

    async def _on_prompts_list(self, params):
        return self._page("prompts", self.prompts, params)

    async def _on_resources_list(self, params):
        return self._page("resources", self.resources, params)

    def _page(self, key: str, items: list[dict[str, Any]], params: dict[str, Any]) -> dict[str, Any]:
        if not self.page_size:
            return {key: items}
        start = int(params.get("cursor") or 0)
        end = start + self.page_size
        result: dict[str, Any] = {key: items[start:end]}
        if end < len(items):
            result["nextCursor"] = str(end)
        return result

    async def _on_tools_call(self, params):
        name = params.get("name")
        arguments = params.get("arguments") or {}

        if name in self.call_errors:
            raise self.call_errors[name]
        if name not in self.tool_names():
            raise FakeRpcError(-32602, f"Unknown tool: {name}")

        if name == "search":
            return {"content": [{"type": "text", "text": "3 results..."}], "isError": False}
        if name == "echo":
            return {"content": [{"type": "text", "text": arguments.get("text", "")}]}
        if name == "slow":
            await asyncio.sleep(arguments.get("delay", 0))
            return {"content": [{"type": "text", "text": str(arguments.get("tag"))}]}
        if name == "hang":
            await asyncio.Event().wait()
        if name == "fail":
            return {"content": [{"type": "text", "text": "backend unavailable"}], "isError": True}
        return {"content": []}


def _error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def identity() -> ClientIdentity:
    return ClientIdentity(name="test-client", version="0.0.1")


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest_asyncio.fixture
async def session(server, identity):
    session = Session(server.transport_factory, request_timeout=2.0, name="fake")
    await session.connect(ENDPOINT, identity, timeout=2.0)
    yield session
    await session.close()


@pytest_asyncio.fixture
async def client(server, identity):
    client = MCPClient(
        request_timeout=2.0,
        client_identity=identity,
        connect_retries=3,
        retry_backoff_min=0.01,
        retry_backoff_max=0.02,
        transport_factory=server.transport_factory,
    )
    yield client
    await client.aclose()

