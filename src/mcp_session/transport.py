"""Transport adapters for the MCP session client.

A transport owns exactly one duplex channel to a server. It moves opaque
JSON payloads and reports the end of the channel as a frame; it never
retries. A closed transport is discarded, never reconnected.
"""

import asyncio
import json
import os
import ssl
import sys
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union
from urllib.parse import urljoin, urlparse

import httpx
from httpx_sse import EventSource, ServerSentEvent, aconnect_sse
from pydantic import BaseModel, ConfigDict

from common.config import ServerConfig, TLSConfig
from common.logging import get_logger
from mcp_session.errors import INTERNAL_ERROR, TransportError, TransportErrorKind

logger = get_logger(__name__)


class FrameKind(str, Enum):
    MESSAGE = "message"
    CLOSED = "closed"
    ERROR = "error"


class InboundFrame(BaseModel):
    """A unit read from a transport: a message or an out-of-band event."""
    kind: FrameKind
    data: bytes = b""
    error: Optional[Exception] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @classmethod
    def message(cls, data: bytes) -> "InboundFrame":
        return cls(kind=FrameKind.MESSAGE, data=data)

    @classmethod
    def closed(cls) -> "InboundFrame":
        return cls(kind=FrameKind.CLOSED)

    @classmethod
    def failed(cls, error: Exception) -> "InboundFrame":
        return cls(kind=FrameKind.ERROR, error=error)


class Transport(ABC):
    """
    Duplex message channel to one server endpoint.

    ``receive()`` yields frames until the channel ends; the last frame is
    always ``closed`` or ``error``.
    """

    @abstractmethod
    async def connect(
        self,
        endpoint: str,
        tls_config: Optional[TLSConfig] = None,
        timeout: float = 10.0
    ) -> None:
        """
        Open the channel.

        Raises:
            TransportError: CONNECT_FAILED, TLS_ERROR or TIMEOUT
        """

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """
        Write one message.

        Raises:
            TransportError: WRITE_FAILED once the channel is closed
        """

    @abstractmethod
    def receive(self) -> AsyncIterator[InboundFrame]:
        """Iterate inbound frames; finite and not restartable."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        ...


def _caused_by(exc: BaseException, exc_type: type[BaseException]) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, exc_type):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _same_origin(left: str, right: str) -> bool:
    a, b = urlparse(left), urlparse(right)
    return (a.scheme, a.netloc) == (b.scheme, b.netloc)


def _connect_error(exc: Exception, endpoint: str) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    if _caused_by(exc, ssl.SSLError):
        return TransportError(TransportErrorKind.TLS_ERROR, f"TLS handshake with {endpoint} failed: {exc}")
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TransportError(TransportErrorKind.TIMEOUT, f"Timed out connecting to {endpoint}")
    return TransportError(TransportErrorKind.CONNECT_FAILED, f"Cannot connect to {endpoint}: {exc}")


def build_ssl_context(tls_config: Optional[TLSConfig]) -> Union[bool, ssl.SSLContext]:
    """Turn TLS options into the ``verify`` argument httpx expects."""
    if tls_config is None:
        return True
    if not tls_config.verify:
        return False

    context = ssl.create_default_context(cafile=tls_config.ca_file)
    if tls_config.cert_file:
        context.load_cert_chain(tls_config.cert_file, tls_config.key_file)
    return context


class SseTransport(Transport):
    """
    MCP HTTP+SSE transport.

    The client holds a ``GET`` event stream open; the server first sends an
    ``endpoint`` event naming the URL that accepts ``POST``ed messages, then
    delivers every server message as a ``message`` event.
    """

    def __init__(
        self,
        headers: Optional[dict[str, str]] = None,
        sse_read_timeout: float = 300.0,
        client_factory: Optional[Callable[..., httpx.AsyncClient]] = None
    ) -> None:
        """
        Args:
            headers: Static headers sent with every request
            sse_read_timeout: Max seconds to wait for the next stream event
            client_factory: Builds the ``httpx.AsyncClient`` (tests inject a mock transport here)
        """
        self._headers = dict(headers or {})
        self._sse_read_timeout = sse_read_timeout
        self._client_factory = client_factory or httpx.AsyncClient

        self._stack: Optional[AsyncExitStack] = None
        self._client: Optional[httpx.AsyncClient] = None
        self._events: Optional[AsyncIterator[ServerSentEvent]] = None
        self._post_url: Optional[str] = None
        self._used = False
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def post_url(self) -> Optional[str]:
        return self._post_url

    async def connect(
        self,
        endpoint: str,
        tls_config: Optional[TLSConfig] = None,
        timeout: float = 10.0
    ) -> None:
        if self._used:
            raise TransportError(
                TransportErrorKind.CONNECT_FAILED,
                "Transport was already used; create a new one to reconnect"
            )
        self._used = True

        try:
            verify = build_ssl_context(tls_config)
        except (ssl.SSLError, OSError) as e:
            raise TransportError(TransportErrorKind.TLS_ERROR, f"Invalid TLS configuration: {e}") from e

        stack = AsyncExitStack()
        try:
            client = await stack.enter_async_context(
                self._client_factory(
                    headers=self._headers,
                    verify=verify,
                    timeout=httpx.Timeout(timeout, read=self._sse_read_timeout),
                )
            )
            event_source = await stack.enter_async_context(
                aconnect_sse(client, "GET", endpoint)
            )
            event_source.response.raise_for_status()
            self._events = event_source.aiter_sse()
            post_url = await asyncio.wait_for(self._await_endpoint(endpoint), timeout)
        except asyncio.CancelledError:
            await stack.aclose()
            raise
        except Exception as e:
            await stack.aclose()
            raise _connect_error(e, endpoint) from e

        self._stack = stack
        self._client = client
        self._post_url = post_url
        self._closed = False
        logger.info("SSE transport connected", endpoint=endpoint, post_url=post_url)

    async def _await_endpoint(self, endpoint: str) -> str:
        assert self._events is not None
        async for sse in self._events:
            if sse.event == "endpoint":
                post_url = urljoin(endpoint, sse.data.strip())
                if not _same_origin(endpoint, post_url):
                    raise TransportError(
                        TransportErrorKind.CONNECT_FAILED,
                        f"Endpoint origin does not match connection origin: {post_url}"
                    )
                return post_url
            logger.debug("Ignoring SSE event before endpoint", sse_event=sse.event)

        raise TransportError(
            TransportErrorKind.CONNECT_FAILED,
            "Event stream ended before the server announced its endpoint"
        )

    async def send(self, data: bytes) -> None:
        if self._closed or self._client is None or self._post_url is None:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "Transport is closed")

        try:
            response = await self._client.post(
                self._post_url,
                content=data,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(
                TransportErrorKind.WRITE_FAILED,
                f"POST to {self._post_url} failed: {e}"
            ) from e

    async def receive(self) -> AsyncIterator[InboundFrame]:
        if self._events is None:
            raise TransportError(TransportErrorKind.READ_FAILED, "Transport is not connected")

        try:
            async for sse in self._events:
                if sse.event == "message":
                    yield InboundFrame.message(sse.data.encode("utf-8"))
                elif sse.event == "endpoint":
                    logger.debug("Ignoring repeated endpoint event")
                else:
                    logger.warning("Unknown SSE event", sse_event=sse.event)
        except httpx.HTTPError as e:
            if not self._closed:
                yield InboundFrame.failed(
                    TransportError(TransportErrorKind.READ_FAILED, f"Event stream failed: {e}")
                )
            return

        yield InboundFrame.closed()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        stack, self._stack = self._stack, None
        self._client = None
        if stack is not None:
            await stack.aclose()
        logger.debug("SSE transport closed", post_url=self._post_url)


MCP_SESSION_ID = "mcp-session-id"
MCP_PROTOCOL_VERSION = "mcp-protocol-version"
JSON_CONTENT = "application/json"
SSE_CONTENT = "text/event-stream"


class StreamableHttpTransport(Transport):
    """
    MCP Streamable HTTP transport.

    Every outbound message is ``POST``ed to the one server URL. The server
    answers a request with either a JSON body or an SSE stream that ends
    with the response. The ``mcp-session-id`` the server assigns while
    answering ``initialize`` is echoed on every later request, and once the
    session is initialized a ``GET`` stream picks up server-initiated
    messages if the server offers one.

    Each POST runs in its own task so ``send`` never waits for a reply.
    An HTTP error status on a request comes back as a JSON-RPC error for
    that request; losing the connection is an ``error`` frame.
    """

    def __init__(
        self,
        headers: Optional[dict[str, str]] = None,
        sse_read_timeout: float = 300.0,
        client_factory: Optional[Callable[..., httpx.AsyncClient]] = None
    ) -> None:
        """
        Args:
            headers: Static headers sent with every request
            sse_read_timeout: Max seconds to wait on a response body or stream event
            client_factory: Builds the ``httpx.AsyncClient`` (tests inject a mock transport here)
        """
        self._headers = dict(headers or {})
        self._sse_read_timeout = sse_read_timeout
        self._client_factory = client_factory or httpx.AsyncClient

        self._stack: Optional[AsyncExitStack] = None
        self._client: Optional[httpx.AsyncClient] = None
        self._url: Optional[str] = None
        self._timeout = 10.0
        self._inbox: asyncio.Queue[InboundFrame] = asyncio.Queue()
        self._posts: set[asyncio.Task] = set()
        self._listener: Optional[asyncio.Task] = None
        self._used = False
        self._closed = True

        self.session_id: Optional[str] = None
        self.protocol_version: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def connect(
        self,
        endpoint: str,
        tls_config: Optional[TLSConfig] = None,
        timeout: float = 10.0
    ) -> None:
        if self._used:
            raise TransportError(
                TransportErrorKind.CONNECT_FAILED,
                "Transport was already used; create a new one to reconnect"
            )
        self._used = True

        try:
            verify = build_ssl_context(tls_config)
        except (ssl.SSLError, OSError) as e:
            raise TransportError(TransportErrorKind.TLS_ERROR, f"Invalid TLS configuration: {e}") from e

        # Nothing goes over the wire until the first message
        stack = AsyncExitStack()
        try:
            self._client = await stack.enter_async_context(
                self._client_factory(
                    headers=self._headers,
                    verify=verify,
                    timeout=httpx.Timeout(timeout, read=self._sse_read_timeout),
                )
            )
        except Exception as e:
            await stack.aclose()
            raise _connect_error(e, endpoint) from e

        self._stack = stack
        self._url = endpoint
        self._timeout = timeout
        self._closed = False
        logger.info("Streamable HTTP transport ready", endpoint=endpoint)

    async def send(self, data: bytes) -> None:
        if self._closed or self._client is None:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "Transport is closed")

        try:
            message = json.loads(data)
        except ValueError as e:
            raise TransportError(TransportErrorKind.WRITE_FAILED, f"Outbound message is not JSON: {e}") from e

        task = asyncio.create_task(self._post(data, message))
        self._posts.add(task)
        task.add_done_callback(self._posts.discard)

    def _request_headers(self) -> dict[str, str]:
        headers = {"Accept": f"{JSON_CONTENT}, {SSE_CONTENT}", "Content-Type": JSON_CONTENT}
        if self.session_id:
            headers[MCP_SESSION_ID] = self.session_id
        if self.protocol_version:
            headers[MCP_PROTOCOL_VERSION] = self.protocol_version
        return headers

    async def _post(self, data: bytes, message: dict[str, Any]) -> None:
        assert self._client is not None and self._url is not None
        method = message.get("method")
        is_request = method is not None and "id" in message

        try:
            async with self._client.stream(
                "POST", self._url, content=data, headers=self._request_headers()
            ) as response:
                if response.status_code == 202:
                    await self._after_accepted(method)
                    return

                if response.status_code == 404 and self.session_id:
                    self._fail(TransportError(TransportErrorKind.READ_FAILED, "Server session expired"))
                    return

                if response.is_error:
                    await response.aread()
                    self._reject(message, f"HTTP {response.status_code} from {self._url}")
                    return

                if method == "initialize":
                    self._remember_session(response)
                if not is_request:
                    await self._after_accepted(method)
                    return

                content_type = response.headers.get("content-type", "").lower()
                if content_type.startswith(JSON_CONTENT):
                    self._deliver(await response.aread(), method)
                elif content_type.startswith(SSE_CONTENT):
                    async for sse in EventSource(response).aiter_sse():
                        if sse.event == "message" and sse.data.strip():
                            self._deliver(sse.data.encode("utf-8"), method)
                else:
                    self._reject(message, f"Unexpected content type: {content_type or 'none'}")
        except httpx.HTTPError as e:
            self._fail(TransportError(TransportErrorKind.WRITE_FAILED, f"POST to {self._url} failed: {e}"))

    async def _after_accepted(self, method: Optional[str]) -> None:
        if method == "notifications/initialized" and self._listener is None and not self._closed:
            self._listener = asyncio.create_task(self._listen())

    def _remember_session(self, response: httpx.Response) -> None:
        session_id = response.headers.get(MCP_SESSION_ID)
        if session_id:
            self.session_id = session_id
            logger.debug("Server assigned session", mcp_session_id=session_id)

    def _deliver(self, payload: bytes, method: Optional[str]) -> None:
        if method == "initialize" and self.protocol_version is None:
            self._note_protocol_version(payload)
        if not self._closed:
            self._inbox.put_nowait(InboundFrame.message(payload))

    def _note_protocol_version(self, payload: bytes) -> None:
        try:
            result = json.loads(payload).get("result") or {}
        except (ValueError, AttributeError):
            return
        version = result.get("protocolVersion") if isinstance(result, dict) else None
        if isinstance(version, str):
            self.protocol_version = version

    def _reject(self, message: dict[str, Any], reason: str) -> None:
        if "method" in message and "id" in message:
            reply = {"jsonrpc": "2.0", "id": message["id"], "error": {"code": INTERNAL_ERROR, "message": reason}}
            self._deliver(json.dumps(reply).encode("utf-8"), None)
        else:
            logger.warning("Server refused message", method=message.get("method"), reason=reason)

    def _fail(self, error: TransportError) -> None:
        if not self._closed:
            self._inbox.put_nowait(InboundFrame.failed(error))

    async def _listen(self) -> None:
        assert self._client is not None and self._url is not None
        try:
            async with aconnect_sse(self._client, "GET", self._url, headers=self._request_headers()) as source:
                if source.response.status_code == 405:
                    logger.debug("Server offers no event stream", endpoint=self._url)
                    return
                source.response.raise_for_status()
                async for sse in source.aiter_sse():
                    if sse.event == "message" and sse.data.strip():
                        self._deliver(sse.data.encode("utf-8"), None)
        except httpx.HTTPError as e:
            logger.debug("Event stream ended", endpoint=self._url, error=str(e))

    async def receive(self) -> AsyncIterator[InboundFrame]:
        while True:
            frame = await self._inbox.get()
            yield frame
            if frame.kind is not FrameKind.MESSAGE:
                return

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        tasks = list(self._posts)
        if self._listener is not None:
            tasks.append(self._listener)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

        client = self._client
        if client is not None and self.session_id:
            try:
                await client.delete(self._url, headers=self._request_headers(), timeout=self._timeout)
            except httpx.HTTPError as e:
                logger.debug("Session termination failed", error=str(e))

        stack, self._stack = self._stack, None
        self._client = None
        if stack is not None:
            await stack.aclose()
        self._inbox.put_nowait(InboundFrame.closed())
        logger.debug("Streamable HTTP transport closed", endpoint=self._url)


# Environment a stdio server inherits; anything else must come from its entry
DEFAULT_INHERITED_ENV_VARS = (
    (
        "APPDATA", "HOMEDRIVE", "HOMEPATH", "LOCALAPPDATA", "PATH", "PATHEXT",
        "PROCESSOR_ARCHITECTURE", "SYSTEMDRIVE", "SYSTEMROOT", "TEMP", "USERNAME", "USERPROFILE",
    )
    if sys.platform == "win32"
    else ("HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER")
)

PROCESS_TERMINATION_TIMEOUT = 2.0
STDIO_LINE_LIMIT = 16 * 1024 * 1024

_WINDOWS_SCRIPT_COMMANDS = ("npx", "npm", "pnpm", "yarn", "bun")


def default_environment() -> dict[str, str]:
    """Inherited environment variables that are safe to pass to a server."""
    env: dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        # Exported shell functions start with "()"
        if value is None or value.startswith("()"):
            continue
        env[key] = value
    return env


def _platform_command(command: str, args: list[str]) -> tuple[str, list[str]]:
    name = command.lower()
    if sys.platform == "win32" and (name in _WINDOWS_SCRIPT_COMMANDS or name.endswith((".cmd", ".bat"))):
        return "cmd.exe", ["/c", command, *args]
    return command, list(args)


class StdioTransport(Transport):
    """
    MCP stdio transport.

    Spawns the server as a subprocess and exchanges newline-delimited JSON
    over its stdin and stdout. The server's stderr is passed through.
    """

    def __init__(
        self,
        command: str,
        args: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None
    ) -> None:
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd

        self._process: Optional[asyncio.subprocess.Process] = None
        self._used = False
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    async def connect(
        self,
        endpoint: str,
        tls_config: Optional[TLSConfig] = None,
        timeout: float = 10.0
    ) -> None:
        if self._used:
            raise TransportError(
                TransportErrorKind.CONNECT_FAILED,
                "Transport was already used; create a new one to reconnect"
            )
        self._used = True

        command, args = _platform_command(self.command, self.args)
        try:
            self._process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env={**default_environment(), **self.env},
                cwd=self.cwd,
                limit=STDIO_LINE_LIMIT,
            )
        except OSError as e:
            raise TransportError(TransportErrorKind.CONNECT_FAILED, f"Cannot start {command}: {e}") from e

        self._closed = False
        logger.info("Stdio server started", command=command, pid=self._process.pid)

    async def send(self, data: bytes) -> None:
        process = self._process
        if self._closed or process is None or process.stdin is None:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "Transport is closed")

        try:
            process.stdin.write(data.rstrip(b"\n") + b"\n")
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(TransportErrorKind.WRITE_FAILED, f"Writing to {self.command} failed: {e}") from e

    async def receive(self) -> AsyncIterator[InboundFrame]:
        if self._process is None or self._process.stdout is None:
            raise TransportError(TransportErrorKind.READ_FAILED, "Transport is not connected")

        stdout = self._process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError as e:
                # Line longer than STDIO_LINE_LIMIT
                yield InboundFrame.failed(
                    TransportError(TransportErrorKind.READ_FAILED, f"Oversized message from {self.command}: {e}")
                )
                return
            if not line:
                break
            line = line.strip()
            if line:
                yield InboundFrame.message(line)

        yield InboundFrame.closed()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        process = self._process
        if process is None:
            return
        if process.stdin is not None:
            process.stdin.close()

        # Closing stdin asks the server to exit; escalate if it does not
        try:
            await asyncio.wait_for(process.wait(), PROCESS_TERMINATION_TIMEOUT)
        except asyncio.TimeoutError:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), PROCESS_TERMINATION_TIMEOUT)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        logger.debug("Stdio server stopped", command=self.command, returncode=process.returncode)


MessageHandler = Callable[[dict[str, Any]], Awaitable[Optional[dict[str, Any]]]]


class MemoryTransport(Transport):
    """
    In-process transport whose peer is an async handler.

    Every outbound message is handled in its own task, so a slow reply
    never holds back a fast one. The handler returns the reply message, or
    None for notifications and replies it wants to send later via ``push``.
    """

    def __init__(self, handler: MessageHandler, connect_delay: float = 0.0) -> None:
        self._handler = handler
        self._connect_delay = connect_delay
        self._inbox: asyncio.Queue[InboundFrame] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._used = False
        self._closed = True

        self.endpoint: Optional[str] = None
        self.sent: list[dict[str, Any]] = []

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def connect(
        self,
        endpoint: str,
        tls_config: Optional[TLSConfig] = None,
        timeout: float = 10.0
    ) -> None:
        if self._used:
            raise TransportError(
                TransportErrorKind.CONNECT_FAILED,
                "Transport was already used; create a new one to reconnect"
            )
        self._used = True

        if self._connect_delay:
            try:
                await asyncio.wait_for(asyncio.sleep(self._connect_delay), timeout)
            except asyncio.TimeoutError:
                raise TransportError(
                    TransportErrorKind.TIMEOUT,
                    f"Timed out connecting to {endpoint}"
                ) from None

        self.endpoint = endpoint
        self._closed = False

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "Transport is closed")

        message = json.loads(data)
        self.sent.append(message)

        task = asyncio.create_task(self._respond(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _respond(self, message: dict[str, Any]) -> None:
        try:
            reply = await self._handler(message)
        except Exception as e:
            logger.exception("Memory transport handler failed", method=message.get("method"))
            if "id" not in message:
                return
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": INTERNAL_ERROR, "message": str(e)},
            }
        if reply is not None:
            self.push(reply)

    def push(self, message: Union[dict[str, Any], bytes]) -> None:
        """Deliver a server message to the client side; bytes are delivered as-is."""
        if self._closed:
            return
        data = message if isinstance(message, bytes) else json.dumps(message).encode("utf-8")
        self._inbox.put_nowait(InboundFrame.message(data))

    def inject_error(self, error: Exception) -> None:
        """Make the channel fail as if the connection broke."""
        self._inbox.put_nowait(InboundFrame.failed(error))

    async def receive(self) -> AsyncIterator[InboundFrame]:
        while True:
            frame = await self._inbox.get()
            yield frame
            if frame.kind is not FrameKind.MESSAGE:
                return

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for task in list(self._tasks):
            task.cancel()
        self._inbox.put_nowait(InboundFrame.closed())


def create_transport(server: ServerConfig) -> Transport:
    """Build the transport a server entry asks for."""
    if server.transport == "stdio":
        return StdioTransport(server.command or "", server.args, server.env, server.cwd)
    if server.transport == "sse":
        return SseTransport(headers=server.request_headers())
    if server.transport == "streamable_http":
        return StreamableHttpTransport(headers=server.request_headers())
    raise ValueError(f"Unsupported transport: {server.transport}")
