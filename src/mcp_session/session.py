"""Session lifecycle and capability handshake.

A Session is one connection lifecycle: it builds a fresh transport and
dispatcher for every connect attempt, runs the ``initialize`` handshake,
and tears everything down on close or failure.

    disconnected -> connecting -> initializing -> ready -> closing -> disconnected
    any state -> failed  (transport failure, handshake rejection, timeout)
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.config import TLSConfig
from common.logging import get_logger
from common.models import ClientIdentity, ServerIdentity, SessionState
from mcp_session.dispatcher import RequestDispatcher
from mcp_session.errors import (
    DispatchError,
    DispatchErrorKind,
    RemoteError,
    SessionError,
    SessionErrorKind,
    TransportError,
    TransportErrorKind,
)
from mcp_session.transport import Transport

logger = get_logger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ("2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

TransportFactory = Callable[[], Transport]
StateListener = Callable[["Session", SessionState, SessionState], None]
NotificationListener = Callable[["Session", str, dict[str, Any]], None]

_INACTIVE_STATES = (SessionState.CLOSING, SessionState.DISCONNECTED, SessionState.FAILED)


class InitializeResult(BaseModel):
    protocol_version: str = Field(alias="protocolVersion")
    server_info: ServerIdentity = Field(alias="serverInfo")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def consume_task_exception(task: asyncio.Task) -> None:
    # Callers awaiting the task still see the exception
    if not task.cancelled():
        task.exception()


class Session:
    """
    One protocol-level connection to an MCP server.

    The session exclusively owns its transport. Discovery and tool calls
    are only dispatched while the state is ``ready``.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        request_timeout: float,
        tls_config: Optional[TLSConfig] = None,
        name: Optional[str] = None
    ) -> None:
        """
        Args:
            transport_factory: Returns a new, unused transport for each connect attempt
            request_timeout: Default per-request timeout in seconds
            tls_config: TLS options passed to the transport
            name: Optional label used in logs (e.g. the server name)
        """
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

        self.id = uuid.uuid4().hex
        self.name = name
        self.created_at = datetime.now(timezone.utc)
        self.request_timeout = request_timeout

        self.endpoint: Optional[str] = None
        self.capabilities: frozenset[str] = frozenset()
        self.server_info: Optional[ServerIdentity] = None
        self.protocol_version: Optional[str] = None
        self.instructions: Optional[str] = None

        self._transport_factory = transport_factory
        self._tls_config = tls_config
        self._state = SessionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._dispatcher: Optional[RequestDispatcher] = None
        self._reader: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._state_listeners: list[StateListener] = []
        self._notification_listeners: list[NotificationListener] = []
        self._log = logger.bind(session_id=self.id, server=name)

    def __repr__(self) -> str:
        return f"<Session {self.id[:8]} {self.name or self.endpoint} {self._state.value}>"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def pending_requests(self) -> int:
        return self._dispatcher.pending_count if self._dispatcher else 0

    def add_state_listener(self, listener: StateListener) -> None:
        """Call ``listener(session, old, new)`` on every state change."""
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    def add_notification_listener(self, listener: NotificationListener) -> None:
        """Call ``listener(session, method, params)`` for every server notification."""
        self._notification_listeners.append(listener)

    def remove_notification_listener(self, listener: NotificationListener) -> None:
        if listener in self._notification_listeners:
            self._notification_listeners.remove(listener)

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def connect(
        self,
        endpoint: str,
        client_identity: ClientIdentity,
        timeout: float
    ) -> "Session":
        """
        Connect and complete the initialize handshake.

        Concurrent callers share one in-flight attempt; only one
        ``initialize`` request is ever sent for it.

        Args:
            endpoint: Server endpoint URL
            client_identity: Name, version and requested capabilities
            timeout: Seconds for transport connect plus handshake

        Returns:
            This session, now ready

        Raises:
            SessionError: INIT_TIMEOUT, CONNECT_FAILED or HANDSHAKE_REJECTED;
                the session is left ``failed``
        """
        if self._state is SessionState.READY:
            return self

        task = self._connect_task
        if task is None or task.done():
            if self._state is SessionState.CLOSING:
                raise SessionError(SessionErrorKind.NOT_READY, "Session is closing")
            task = asyncio.create_task(self._connect(endpoint, client_identity, timeout))
            task.add_done_callback(consume_task_exception)
            self._connect_task = task
        else:
            self._log.debug("Joining in-flight connect")

        await asyncio.shield(task)
        return self

    async def _connect(
        self,
        endpoint: str,
        client_identity: ClientIdentity,
        timeout: float
    ) -> None:
        self.endpoint = endpoint
        self.capabilities = frozenset()
        self.server_info = None
        self.protocol_version = None
        self._dispatcher = None
        self._set_state(SessionState.CONNECTING)
        self._log.info("Connecting", endpoint=endpoint, timeout=timeout)

        try:
            await asyncio.wait_for(self._handshake(endpoint, client_identity, timeout), timeout)
        except asyncio.CancelledError:
            if self._state is SessionState.CLOSING:
                await self._release()
                raise SessionError(SessionErrorKind.NOT_READY, "Session was closed while connecting") from None
            await self._teardown("Connect cancelled", SessionState.FAILED)
            raise
        except Exception as e:
            error = self._connect_error(e, endpoint, timeout)
            self._log.error("Connect failed", reason=error.kind.value, error=str(e))
            await self._teardown(f"Connect failed: {error}", SessionState.FAILED)
            raise error from e

        self._log.info(
            "Session ready",
            server_name=self.server_info.name if self.server_info else None,
            protocol_version=self.protocol_version,
            capabilities=sorted(self.capabilities),
        )

    async def _handshake(
        self,
        endpoint: str,
        client_identity: ClientIdentity,
        timeout: float
    ) -> None:
        transport = self._transport_factory()
        self._transport = transport
        await transport.connect(endpoint, self._tls_config, timeout)

        dispatcher = RequestDispatcher(
            transport,
            on_failure=self._on_transport_failure,
            on_notification=self._on_notification,
            session_id=self.id,
        )
        self._dispatcher = dispatcher
        self._reader = asyncio.create_task(dispatcher.read_loop())
        self._set_state(SessionState.INITIALIZING)

        response = await dispatcher.dispatch(
            "initialize",
            {
                "protocolVersion": LATEST_PROTOCOL_VERSION,
                "clientInfo": {"name": client_identity.name, "version": client_identity.version},
                "capabilities": {name: {} for name in client_identity.capabilities},
            },
            timeout,
        )
        result = InitializeResult.model_validate(response.unwrap())

        if result.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise SessionError(
                SessionErrorKind.HANDSHAKE_REJECTED,
                f"Unsupported protocol version: {result.protocol_version}"
            )

        self.server_info = result.server_info
        self.protocol_version = result.protocol_version
        self.instructions = result.instructions
        self.capabilities = frozenset(client_identity.capabilities) & frozenset(result.capabilities)

        await dispatcher.notify("notifications/initialized")
        self._set_state(SessionState.READY)

    @staticmethod
    def _connect_error(exc: Exception, endpoint: str, timeout: float) -> SessionError:
        if isinstance(exc, SessionError):
            return exc
        if isinstance(exc, asyncio.TimeoutError) or (
            isinstance(exc, TransportError) and exc.kind is TransportErrorKind.TIMEOUT
        ) or (
            isinstance(exc, DispatchError) and exc.kind is DispatchErrorKind.TIMEOUT
        ):
            return SessionError(
                SessionErrorKind.INIT_TIMEOUT,
                f"No handshake acknowledgement from {endpoint} within {timeout}s"
            )
        if isinstance(exc, (TransportError, DispatchError)):
            return SessionError(SessionErrorKind.CONNECT_FAILED, f"Cannot connect to {endpoint}: {exc}")
        if isinstance(exc, (RemoteError, ValidationError)):
            return SessionError(SessionErrorKind.HANDSHAKE_REJECTED, f"Handshake rejected by {endpoint}: {exc}")
        return SessionError(SessionErrorKind.CONNECT_FAILED, f"Cannot connect to {endpoint}: {exc}")

    async def close(self) -> None:
        """
        Close the session.

        Idempotent: closing a session that is already closing,
        disconnected or failed does nothing.
        """
        if self._state in _INACTIVE_STATES:
            return

        self._log.info("Closing session")
        self._set_state(SessionState.CLOSING)

        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])

        await self._teardown("Session closed")
        self._set_state(SessionState.DISCONNECTED)

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> dict[str, Any]:
        """
        Send a request on a ready session and return its result.

        Raises:
            SessionError: NOT_READY if the session is not ready
            DispatchError: TIMEOUT, CANCELLED, SESSION_CLOSED or MALFORMED_RESPONSE
            RemoteError: If the server answered with an error object
        """
        dispatcher = self._require_ready()
        response = await dispatcher.dispatch(
            method, params, timeout if timeout is not None else self.request_timeout
        )
        return response.unwrap()

    def cancel(self, request_id: int) -> bool:
        """Cancel an outstanding request without waiting for the server."""
        if self._dispatcher is None:
            return False
        return self._dispatcher.cancel(request_id)

    async def ping(self, timeout: Optional[float] = None) -> float:
        """Round-trip a ``ping``; returns the latency in seconds."""
        started = time.monotonic()
        await self.request("ping", timeout=timeout)
        return time.monotonic() - started

    def _require_ready(self) -> RequestDispatcher:
        if self._state is not SessionState.READY or self._dispatcher is None:
            raise SessionError(SessionErrorKind.NOT_READY, f"Session is {self._state.value}")
        return self._dispatcher

    async def _on_transport_failure(self, error: Exception) -> None:
        if self._state in _INACTIVE_STATES:
            if self._dispatcher is not None:
                self._dispatcher.fail_all(f"Transport failed: {error}")
            return

        self._log.error("Transport failed", error=str(error), state=self._state.value)
        await self._teardown(f"Transport failed: {error}", SessionState.FAILED)

    def _on_notification(self, method: str, params: dict[str, Any]) -> None:
        self._log.debug("Server notification", method=method)
        for listener in list(self._notification_listeners):
            try:
                listener(self, method, params)
            except Exception:
                self._log.exception("Notification listener failed", method=method)

    async def _teardown(self, reason: str, state: Optional[SessionState] = None) -> None:
        # State first, so listeners drop caches before anything else resolves
        if state is not None:
            self._set_state(state)

        if self._dispatcher is not None:
            self._dispatcher.fail_all(reason)
        await self._release()

    async def _release(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.wait([reader])

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                self._log.warning("Error closing transport", error=str(e))

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state is new_state:
            return

        self._state = new_state
        self._log.debug("Session state changed", old_state=old_state.value, new_state=new_state.value)

        for listener in list(self._state_listeners):
            try:
                listener(self, old_state, new_state)
            except Exception:
                self._log.exception("State listener failed")
