"""MCP Client for session setup, discovery and tool invocation.

This is the surface the orchestration layer uses. It connects sessions
(with a bounded retry on the handshake), serves discovery through the
capability registry, and invokes tools. Tool calls are never retried.
"""

import json
import re
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from common.config import ClientSettings, TLSConfig
from common.logging import get_logger
from common.models import (
    CapabilityKind,
    ClientIdentity,
    InvocationResult,
    PromptDescriptor,
    ResourceDescriptor,
    ToolDescriptor,
)
from common.schema import validate_schema
from mcp_session.errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    DispatchError,
    DispatchErrorKind,
    InvalidArgumentsError,
    RemoteError,
    SessionError,
    SessionErrorKind,
    ToolNotFoundError,
)
from mcp_session.registry import CapabilityRegistry
from mcp_session.session import Session
from mcp_session.transport import StreamableHttpTransport, Transport

logger = get_logger(__name__)

TransportFactory = Callable[[], Transport]

_RETRYABLE_CONNECT_ERRORS = (SessionErrorKind.CONNECT_FAILED, SessionErrorKind.INIT_TIMEOUT)

# Some servers report a missing tool as an internal error
_MISSING_TOOL = re.compile(r"unknown tool|tool\b.*\bnot found", re.IGNORECASE)


def _is_retryable_connect_error(exc: BaseException) -> bool:
    return isinstance(exc, SessionError) and exc.kind in _RETRYABLE_CONNECT_ERRORS


def _log_connect_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Connect attempt failed, retrying",
        attempt=retry_state.attempt_number,
        error=str(error),
        next_wait=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
    )


def _classify_remote_error(tool_name: str, error: RemoteError) -> RemoteError:
    """
    Map a JSON-RPC error from ``tools/call`` onto the tool error types.

    -32602 naming a missing tool is ToolNotFound, any other -32602 is
    InvalidArguments. -32603 is ToolNotFound only when its message names a
    missing tool; other internal errors stay RemoteError. A result with
    ``isError`` set is never reclassified, even if its text says the tool
    is unknown.
    """
    if isinstance(error, (ToolNotFoundError, InvalidArgumentsError)):
        return error
    if error.code == INVALID_PARAMS:
        text = error.message.lower()
        if "unknown tool" in text or "not found" in text:
            return ToolNotFoundError(error.code, error.message or f"Unknown tool: {tool_name}", error.data)
        return InvalidArgumentsError(error.code, error.message, error.data)
    if error.code == INTERNAL_ERROR and _MISSING_TOOL.search(error.message):
        return ToolNotFoundError(error.code, error.message, error.data)
    return error


class MCPClient:
    """
    Client for interacting with MCP servers.

    Provides methods for:
    - Connecting sessions
    - Discovering tools, prompts and resources
    - Executing tool calls

    Sessions opened through the client are closed by ``aclose()`` or
    when leaving ``async with``.
    """

    def __init__(
        self,
        request_timeout: float,
        client_identity: Optional[ClientIdentity] = None,
        connect_timeout: float = 10.0,
        connect_retries: int = 3,
        retry_backoff_min: float = 0.5,
        retry_backoff_max: float = 10.0,
        transport_factory: Optional[TransportFactory] = None,
        tls_config: Optional[TLSConfig] = None,
        headers: Optional[dict[str, str]] = None,
        registry: Optional[CapabilityRegistry] = None
    ) -> None:
        """
        Initialize the client.

        Args:
            request_timeout: Default per-call timeout in seconds (required)
            client_identity: Name/version announced at handshake
            connect_timeout: Timeout for transport connect plus handshake
            connect_retries: Attempts for the initial connect (1 disables retry)
            retry_backoff_min: Minimum wait between connect attempts
            retry_backoff_max: Maximum wait between connect attempts
            transport_factory: Builds a fresh transport per connect attempt;
                defaults to the Streamable HTTP transport
            tls_config: TLS options for the transport
            headers: Static HTTP headers for the default transport
            registry: Capability registry (one is created if omitted)
        """
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

        self.request_timeout = request_timeout
        self.client_identity = client_identity or ClientIdentity(name="mcp-session-client", version="1.0.0")
        self.connect_timeout = connect_timeout
        self.connect_retries = max(connect_retries, 1)
        self.retry_backoff_min = retry_backoff_min
        self.retry_backoff_max = retry_backoff_max
        self.registry = registry or CapabilityRegistry()

        self._headers = dict(headers or {})
        self._transport_factory = transport_factory or self._default_transport
        self._tls_config = tls_config
        self._sessions: dict[str, Session] = {}

    @classmethod
    def from_settings(cls, settings: ClientSettings, **kwargs: Any) -> "MCPClient":
        """Build a client from loaded settings; keyword arguments win."""
        options: dict[str, Any] = {
            "request_timeout": settings.request_timeout,
            "client_identity": ClientIdentity(name=settings.client_name, version=settings.client_version),
            "connect_timeout": settings.connect_timeout,
            "connect_retries": settings.connect_retries,
            "retry_backoff_min": settings.retry_backoff_min,
            "retry_backoff_max": settings.retry_backoff_max,
        }
        options.update(kwargs)
        return cls(**options)

    def _default_transport(self) -> Transport:
        return StreamableHttpTransport(headers=self._headers)

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    async def __aenter__(self) -> "MCPClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def connect(
        self,
        endpoint: str,
        client_identity: Optional[ClientIdentity] = None,
        timeout: Optional[float] = None,
        *,
        name: Optional[str] = None,
        transport_factory: Optional[TransportFactory] = None,
        tls_config: Optional[TLSConfig] = None,
        request_timeout: Optional[float] = None,
        retries: Optional[int] = None
    ) -> Session:
        """
        Open a session and complete the handshake.

        Connect failures and handshake timeouts are retried with
        exponential backoff; a rejected handshake is not.

        Args:
            endpoint: Server endpoint URL
            client_identity: Overrides the client's default identity
            timeout: Connect plus handshake timeout per attempt
            name: Label for logs
            transport_factory: Overrides the client's transport factory
            tls_config: Overrides the client's TLS options
            request_timeout: Overrides the default per-call timeout for this session
            retries: Overrides the number of connect attempts

        Returns:
            A ready session

        Raises:
            SessionError: If every attempt failed
        """
        identity = client_identity or self.client_identity
        timeout = timeout or self.connect_timeout
        session = Session(
            transport_factory or self._transport_factory,
            request_timeout or self.request_timeout,
            tls_config or self._tls_config,
            name=name,
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(retries or self.connect_retries, 1)),
            wait=wait_exponential(multiplier=self.retry_backoff_min, min=self.retry_backoff_min, max=self.retry_backoff_max),
            retry=retry_if_exception(_is_retryable_connect_error),
            before_sleep=_log_connect_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await session.connect(endpoint, identity, timeout)

        self._sessions[session.id] = session
        return session

    async def list_tools(
        self,
        session: Session,
        refresh: bool = False,
        timeout: Optional[float] = None
    ) -> tuple[ToolDescriptor, ...]:
        """List the session's tools in server order; ``timeout`` bounds this caller's wait."""
        return await self.registry.list_tools(session, refresh, timeout)

    async def list_prompts(
        self,
        session: Session,
        refresh: bool = False,
        timeout: Optional[float] = None
    ) -> tuple[PromptDescriptor, ...]:
        return await self.registry.list_prompts(session, refresh, timeout)

    async def list_resources(
        self,
        session: Session,
        refresh: bool = False,
        timeout: Optional[float] = None
    ) -> tuple[ResourceDescriptor, ...]:
        return await self.registry.list_resources(session, refresh, timeout)

    async def call_tool(
        self,
        session: Session,
        name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> InvocationResult:
        """
        Execute a tool.

        When the session's tool list is cached, the name and arguments are
        checked locally first and fail without a round trip.

        Args:
            session: Ready session
            name: Tool name as listed by the server
            arguments: JSON-compatible arguments
            timeout: Per-call timeout; defaults to the session's

        Returns:
            The tool result; ``is_error`` is set for tool-level failures

        Raises:
            ToolNotFoundError: Unknown tool
            InvalidArgumentsError: Arguments rejected locally or by the server
            RemoteError: Any other JSON-RPC error
            DispatchError: TIMEOUT, SESSION_CLOSED, CANCELLED or MALFORMED_RESPONSE
            SessionError: NOT_READY
        """
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise InvalidArgumentsError(
                INVALID_PARAMS,
                f"Arguments for '{name}' must be a mapping, got {type(arguments).__name__}"
            )
        arguments = dict(arguments)

        try:
            json.dumps(arguments)
        except (TypeError, ValueError) as e:
            raise InvalidArgumentsError(INVALID_PARAMS, f"Arguments for '{name}' are not JSON: {e}") from e

        if not session.is_ready:
            raise SessionError(SessionErrorKind.NOT_READY, f"Session is {session.state.value}")

        if self.registry.is_populated(session, CapabilityKind.TOOLS):
            tool = self.registry.cached_tool(session, name)
            if tool is None:
                raise ToolNotFoundError(INVALID_PARAMS, f"Unknown tool: {name}")
            is_valid, errors = validate_schema(arguments, tool.input_schema)
            if not is_valid:
                raise InvalidArgumentsError(
                    INVALID_PARAMS,
                    f"Invalid arguments for '{name}': {'; '.join(errors)}"
                )

        logger.debug("Calling tool", tool=name, session_id=session.id)

        try:
            result = await session.request("tools/call", {"name": name, "arguments": arguments}, timeout)
        except RemoteError as e:
            error = _classify_remote_error(name, e)
            logger.info("Tool call rejected", tool=name, code=error.code, error=error.message)
            raise error from e

        try:
            invocation = InvocationResult.model_validate(result)
        except ValidationError as e:
            raise DispatchError(
                DispatchErrorKind.MALFORMED_RESPONSE,
                f"Malformed result from tool '{name}': {e}"
            ) from e

        if invocation.is_error:
            logger.info("Tool reported an error", tool=name, session_id=session.id)
        return invocation

    async def ping(self, session: Session, timeout: Optional[float] = None) -> float:
        """Ping the server; returns round-trip seconds."""
        return await session.ping(timeout)

    async def close(self, session: Session) -> None:
        """Close one session."""
        self._sessions.pop(session.id, None)
        await session.close()

    async def aclose(self) -> None:
        """Close every session this client opened."""
        sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            await session.close()
