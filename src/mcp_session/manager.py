"""Multi-server client manager.

Owns one session per configured server, connects lazily, and routes
``"<server>/<tool>"`` calls to the owning session. An optional heartbeat
pings ready sessions and rebuilds the ones that stop answering.
"""

import asyncio
from typing import Any, Callable, Mapping, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.config import ClientSettings, ConfigError, ServerConfig, load_server_configs, parse_servers
from common.logging import get_logger
from common.models import InvocationResult, SessionState, ToolDescriptor
from mcp_session.client import MCPClient
from mcp_session.errors import INVALID_PARAMS, MCPError, SessionError, ToolNotFoundError
from mcp_session.session import Session
from mcp_session.transport import Transport, create_transport

logger = get_logger(__name__)

ServerTransportFactory = Callable[[ServerConfig], Transport]

TOOL_NAME_SEPARATOR = "/"


class ClientManager:
    """
    Manages sessions for a set of named MCP servers.

    Provides:
    - Lazy, single-flight connection per server
    - Flattened tool listing across servers
    - Routing of qualified tool calls
    - Heartbeat with bounded reconnect
    """

    def __init__(
        self,
        servers: Mapping[str, ServerConfig],
        settings: ClientSettings,
        transport_factory: Optional[ServerTransportFactory] = None,
        client: Optional[MCPClient] = None
    ) -> None:
        """
        Initialize the manager.

        Args:
            servers: Server configurations keyed by name
            settings: Client-wide settings
            transport_factory: Builds a transport for a server (defaults to its configured transport)
            client: Client used for connecting and calls (built from settings if omitted)
        """
        self.settings = settings
        self._servers = dict(servers)
        self._transport_factory = transport_factory or create_transport
        self._client = client or MCPClient.from_settings(settings)

        self._sessions: dict[str, Session] = {}
        self._connect_errors: dict[str, MCPError] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._reconnect_tasks: dict[str, asyncio.Task] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        settings: ClientSettings,
        transport_factory: Optional[ServerTransportFactory] = None
    ) -> "ClientManager":
        """Build from an ``mcpServers`` style mapping."""
        return cls(parse_servers(config), settings, transport_factory)

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "ClientManager":
        """Build from the servers file named in the settings."""
        if not settings.servers_config_path:
            raise ConfigError("servers_config_path is not set")
        return cls(load_server_configs(settings.servers_config_path), settings)

    @property
    def client(self) -> MCPClient:
        return self._client

    @property
    def server_names(self) -> list[str]:
        return list(self._servers)

    def has_server(self, name: str) -> bool:
        return name in self._servers

    def states(self) -> dict[str, SessionState]:
        """Current session state per server."""
        return {name: self._state_of(name) for name in self._servers}

    def _state_of(self, name: str) -> SessionState:
        session = self._sessions.get(name)
        if session is not None:
            return session.state
        return SessionState.FAILED if name in self._connect_errors else SessionState.DISCONNECTED

    def is_reconnecting(self, name: str) -> bool:
        task = self._reconnect_tasks.get(name)
        return task is not None and not task.done()

    def _server(self, name: str) -> ServerConfig:
        server = self._servers.get(name)
        if server is None:
            raise ConfigError(f"Unknown MCP server: {name}")
        return server

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def _connect(self, server: ServerConfig, retries: Optional[int] = None) -> Session:
        try:
            session = await self._client.connect(
                server.target,
                timeout=server.connect_timeout,
                name=server.name,
                transport_factory=lambda: self._transport_factory(server),
                tls_config=server.tls,
                request_timeout=server.request_timeout,
                retries=retries,
            )
        except MCPError as e:
            self._connect_errors[server.name] = e
            raise

        self._connect_errors.pop(server.name, None)
        self._sessions[server.name] = session
        return session

    async def session(self, name: str) -> Session:
        """
        Get the ready session for a server, connecting if needed.

        Raises:
            ConfigError: Unknown server
            SessionError: If the server cannot be reached
        """
        server = self._server(name)

        existing = self._sessions.get(name)
        if existing is not None and existing.is_ready:
            return existing

        async with self._lock(name):
            existing = self._sessions.get(name)
            if existing is not None:
                if existing.is_ready:
                    return existing
                await self._client.close(existing)
                self._sessions.pop(name, None)
            return await self._connect(server)

    async def connect_all(self) -> dict[str, SessionState]:
        """
        Connect every server concurrently.

        Failures are logged and left in the returned states; nothing is raised.
        """
        names = list(self._servers)
        results = await asyncio.gather(*(self.session(name) for name in names), return_exceptions=True)
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error("Failed to connect to MCP server", server=name, error=str(result))
            else:
                logger.info("Connected to MCP server", server=name)
        return self.states()

    async def list_all_tools(self, refresh: bool = False, timeout: Optional[float] = None) -> list[ToolDescriptor]:
        """
        List tools from every server.

        Names are qualified as ``"<server>/<tool>"`` and descriptions are
        prefixed with ``"[<server>] "``. Unreachable servers contribute nothing.
        """
        names = list(self._servers)
        listings = await asyncio.gather(*(self._server_tools(name, refresh, timeout) for name in names))
        return [tool for listing in listings for tool in listing]

    async def _server_tools(self, name: str, refresh: bool, timeout: Optional[float]) -> list[ToolDescriptor]:
        try:
            session = await self.session(name)
            tools = await self._client.list_tools(session, refresh, timeout)
        except MCPError as e:
            logger.warning("Skipping tools of unavailable server", server=name, error=str(e))
            return []

        return [
            tool.model_copy(update={
                "name": f"{name}{TOOL_NAME_SEPARATOR}{tool.name}",
                "description": f"[{name}] {tool.description}",
            })
            for tool in tools
        ]

    async def call_tool(
        self,
        qualified_name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> InvocationResult:
        """
        Call a tool by its qualified ``"<server>/<tool>"`` name.

        Raises:
            ToolNotFoundError: Unknown server or tool
            InvalidArgumentsError, RemoteError, DispatchError, SessionError: As for MCPClient.call_tool
        """
        server_name, separator, tool_name = qualified_name.partition(TOOL_NAME_SEPARATOR)
        if not separator or not tool_name or server_name not in self._servers:
            raise ToolNotFoundError(INVALID_PARAMS, f"Unknown tool: {qualified_name}")

        session = await self.session(server_name)
        return await self._client.call_tool(session, tool_name, arguments, timeout)

    async def reconnect(self, name: str) -> Session:
        """
        Replace a server's session with a fresh one.

        Retries up to the server's ``max_reconnect_attempts`` with
        exponential backoff starting at ``reconnect_interval``.
        """
        server = self._server(name)

        async with self._lock(name):
            old = self._sessions.pop(name, None)
            if old is not None:
                await self._client.close(old)

            logger.info("Reconnecting to MCP server", server=name)
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max(server.max_reconnect_attempts, 1)),
                wait=wait_exponential(multiplier=server.reconnect_interval, max=server.reconnect_backoff_max),
                retry=retry_if_exception_type(SessionError),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "Reconnect attempt",
                            server=name,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    session = await self._connect(server, retries=1)

        logger.info("Reconnected to MCP server", server=name)
        return session

    async def check_health(self) -> dict[str, bool]:
        """
        Ping every connected server with heartbeat enabled.

        Servers that fail the ping, or whose session has failed, are
        scheduled for reconnect when ``auto_reconnect`` is on.

        Returns:
            Health per checked server
        """
        checks = [
            (name, server) for name, server in self._servers.items()
            if server.heartbeat_enabled and name in self._sessions
        ]
        results = await asyncio.gather(*(self._check(name, server) for name, server in checks))
        return {name: healthy for (name, _), healthy in zip(checks, results) if healthy is not None}

    async def _check(self, name: str, server: ServerConfig) -> Optional[bool]:
        session = self._sessions.get(name)
        if session is None or self.is_reconnecting(name):
            return None

        if session.is_ready:
            try:
                latency = await self._client.ping(session, server.heartbeat_timeout)
            except MCPError as e:
                logger.warning("Heartbeat failed", server=name, error=str(e))
            else:
                logger.debug("Heartbeat ok", server=name, latency_ms=round(latency * 1000, 2))
                return True
        elif session.state is not SessionState.FAILED:
            # Connecting or closing; nothing to judge yet
            return None

        if server.auto_reconnect and server.max_reconnect_attempts > 0:
            self._schedule_reconnect(name)
        return False

    def _schedule_reconnect(self, name: str) -> None:
        if self.is_reconnecting(name):
            return
        task = asyncio.create_task(self._reconnect_in_background(name))
        self._reconnect_tasks[name] = task
        task.add_done_callback(lambda _: self._reconnect_tasks.pop(name, None))

    async def _reconnect_in_background(self, name: str) -> None:
        try:
            await self.reconnect(name)
        except MCPError as e:
            logger.error("Giving up reconnecting to MCP server", server=name, error=str(e))

    def start_heartbeat(self) -> None:
        """Start pinging servers at the smallest configured heartbeat interval."""
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            logger.warning("Heartbeat already running")
            return

        intervals = [s.heartbeat_interval for s in self._servers.values() if s.heartbeat_enabled]
        if not intervals:
            logger.info("No server has heartbeat enabled")
            return

        interval = min(intervals)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval))
        logger.info("Heartbeat started", interval=interval)

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])
        logger.info("Heartbeat stopped")

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_health()
            except Exception:
                logger.exception("Heartbeat check failed")

    async def aclose(self) -> None:
        """Stop the heartbeat, abandon reconnects and close every session."""
        await self.stop_heartbeat()

        tasks = list(self._reconnect_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

        self._sessions.clear()
        await self._client.aclose()
        logger.info("Client manager closed")

    async def __aenter__(self) -> "ClientManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
