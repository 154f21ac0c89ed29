"""Request dispatcher: JSON-RPC correlation over a transport.

Every outbound request gets a fresh id and a future. A single reader task
drains the transport and resolves futures strictly by id, so responses may
arrive in any order. The pending table is only touched from the event loop
between suspension points, which keeps resolution exactly-once without a
lock.
"""

import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from common.logging import get_logger
from mcp_session.errors import (
    METHOD_NOT_FOUND,
    DispatchError,
    DispatchErrorKind,
    RemoteError,
    TransportError,
    TransportErrorKind,
)
from mcp_session.transport import FrameKind, Transport

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"

FailureCallback = Callable[[Exception], Awaitable[None]]
NotificationCallback = Callable[[str, dict[str, Any]], None]


class JsonRpcErrorObject(BaseModel):
    code: int
    message: str = ""
    data: Any = None

    model_config = ConfigDict(extra="ignore")


class JsonRpcResponse(BaseModel):
    """A response matched to one of our requests."""
    id: int
    result: Optional[dict[str, Any]] = None
    error: Optional[JsonRpcErrorObject] = None

    model_config = ConfigDict(extra="ignore")

    def unwrap(self) -> dict[str, Any]:
        """Return the result, or raise the error the server sent."""
        if self.error is not None:
            raise RemoteError(self.error.code, self.error.message, self.error.data)
        return self.result or {}


class PendingRequest:
    """Bookkeeping for one outbound request awaiting its response."""

    __slots__ = ("id", "method", "params", "deadline", "future")

    def __init__(
        self,
        request_id: int,
        method: str,
        params: Optional[dict[str, Any]],
        deadline: float,
        future: "asyncio.Future[JsonRpcResponse]"
    ) -> None:
        self.id = request_id
        self.method = method
        self.params = params
        self.deadline = deadline
        self.future = future

    @property
    def done(self) -> bool:
        return self.future.done()


class RequestDispatcher:
    """
    Correlates requests and responses for one session.

    The dispatcher is bound to one transport for its whole life. When the
    transport fails, every outstanding request resolves with
    ``SESSION_CLOSED`` and the dispatcher refuses new work.
    """

    def __init__(
        self,
        transport: Transport,
        on_failure: Optional[FailureCallback] = None,
        on_notification: Optional[NotificationCallback] = None,
        session_id: Optional[str] = None
    ) -> None:
        self._transport = transport
        self._on_failure = on_failure
        self._on_notification = on_notification
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._background: set[asyncio.Task] = set()
        self._closed = False
        self._log = logger.bind(session_id=session_id) if session_id else logger

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[int]:
        return list(self._pending)

    async def dispatch(
        self,
        method: str,
        params: Optional[dict[str, Any]],
        timeout: float
    ) -> JsonRpcResponse:
        """
        Send a request and wait for its response.

        Args:
            method: JSON-RPC method name
            params: Request parameters
            timeout: Seconds before the request fails with TIMEOUT

        Returns:
            The matching response; JSON-RPC errors are left for the caller to unwrap

        Raises:
            DispatchError: TIMEOUT, CANCELLED, SESSION_CLOSED or MALFORMED_RESPONSE
        """
        if self._closed:
            raise DispatchError(DispatchErrorKind.SESSION_CLOSED, "Session is closed")

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)

        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        payload = _encode(message)

        pending = PendingRequest(
            request_id, method, params, loop.time() + timeout, loop.create_future()
        )
        self._pending[request_id] = pending
        self._log.debug("Dispatching request", request_id=request_id, method=method)

        try:
            try:
                await self._transport.send(payload)
            except TransportError as e:
                await self._fail(e)
                self._settle(pending, error=DispatchError(
                    DispatchErrorKind.SESSION_CLOSED, f"Transport failed: {e}", request_id
                ))
                return pending.future.result()
            except asyncio.CancelledError:
                self._abandon(pending)
                raise

            remaining = max(pending.deadline - loop.time(), 0)
            try:
                await asyncio.wait_for(asyncio.shield(pending.future), remaining)
            except asyncio.TimeoutError:
                if self._settle(pending, error=DispatchError(
                    DispatchErrorKind.TIMEOUT,
                    f"Request '{method}' timed out after {timeout}s",
                    request_id,
                )):
                    self._log.warning("Request timed out", request_id=request_id, method=method)
                    self._notify_cancelled(request_id, "timeout")
            except asyncio.CancelledError:
                self._abandon(pending)
                raise

            return pending.future.result()
        finally:
            self._pending.pop(request_id, None)

    def _abandon(self, pending: PendingRequest) -> None:
        if self._settle(pending, error=DispatchError(
            DispatchErrorKind.CANCELLED, f"Request '{pending.method}' was cancelled", pending.id
        )):
            self._notify_cancelled(pending.id, "cancelled by caller")
        # Mark the stored exception as retrieved
        pending.future.exception()

    def cancel(self, request_id: int, reason: str = "cancelled by caller") -> bool:
        """
        Resolve a pending request with CANCELLED right away.

        The server is told with a best-effort notification; nothing waits
        for it.

        Returns:
            True if the request was still pending
        """
        pending = self._pending.get(request_id)
        if pending is None:
            return False

        settled = self._settle(pending, error=DispatchError(
            DispatchErrorKind.CANCELLED, f"Request '{pending.method}' was cancelled", request_id
        ))
        if settled:
            self._log.debug("Request cancelled", request_id=request_id, method=pending.method)
            self._notify_cancelled(request_id, reason)
        return settled

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        """Send a notification (no id, no response)."""
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        await self._transport.send(_encode(message))

    def fail_all(self, reason: str = "Session closed") -> int:
        """
        Resolve every outstanding request with SESSION_CLOSED.

        Returns:
            Number of requests resolved
        """
        self._closed = True
        count = 0
        for pending in list(self._pending.values()):
            if self._settle(pending, error=DispatchError(
                DispatchErrorKind.SESSION_CLOSED, reason, pending.id
            )):
                count += 1
        self._pending.clear()

        for task in list(self._background):
            task.cancel()

        if count:
            self._log.info("Failed outstanding requests", count=count, reason=reason)
        return count

    async def read_loop(self) -> None:
        """
        Drain the transport until it ends.

        This is the only consumer of ``transport.receive()`` for the
        session. Any end of the stream is a session failure unless the
        dispatcher was already closed.
        """
        failure: Optional[Exception] = None
        try:
            async for frame in self._transport.receive():
                if frame.kind is FrameKind.MESSAGE:
                    self._handle_payload(frame.data)
                elif frame.kind is FrameKind.ERROR:
                    failure = frame.error or TransportError(
                        TransportErrorKind.READ_FAILED, "Transport failed"
                    )
                    break
                else:
                    break
        except TransportError as e:
            failure = e
        except Exception as e:
            self._log.exception("Reader failed")
            failure = TransportError(TransportErrorKind.READ_FAILED, f"Reader failed: {e!r}")

        if self._closed:
            return
        await self._fail(failure or TransportError(
            TransportErrorKind.READ_FAILED, "Connection closed by server"
        ))

    async def _fail(self, error: Exception) -> None:
        if self._on_failure is not None:
            await self._on_failure(error)
        else:
            self.fail_all(f"Transport failed: {error}")

    def _settle(
        self,
        pending: PendingRequest,
        response: Optional[JsonRpcResponse] = None,
        error: Optional[Exception] = None
    ) -> bool:
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(response)
        return True

    def _handle_payload(self, data: bytes) -> None:
        try:
            message = json.loads(data)
        except (ValueError, RecursionError) as e:
            # Undecodable, or nested too deeply to parse
            self._log.warning("Dropping undecodable message", error=str(e))
            return

        if not isinstance(message, dict):
            self._log.warning("Dropping non-object message", payload_type=type(message).__name__)
            return

        if "method" in message:
            if "id" in message:
                self._answer_server_request(message)
            elif self._on_notification is not None:
                params = message.get("params")
                self._on_notification(message["method"], params if isinstance(params, dict) else {})
            return

        self._handle_response(message)

    def _handle_response(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        pending = self._pending.get(request_id) if _is_request_id(request_id) else None
        if pending is None:
            self._log.debug("Dropping response for unknown request", request_id=request_id)
            return

        if "result" not in message and "error" not in message:
            self._settle(pending, error=DispatchError(
                DispatchErrorKind.MALFORMED_RESPONSE,
                f"Response to '{pending.method}' has neither result nor error",
                pending.id,
            ))
            return

        try:
            response = JsonRpcResponse.model_validate(message)
        except ValidationError as e:
            self._settle(pending, error=DispatchError(
                DispatchErrorKind.MALFORMED_RESPONSE,
                f"Malformed response to '{pending.method}': {e}",
                pending.id,
            ))
            return

        self._settle(pending, response=response)

    def _answer_server_request(self, message: dict[str, Any]) -> None:
        method = message["method"]
        reply: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": message["id"]}
        if method == "ping":
            reply["result"] = {}
        else:
            self._log.debug("Rejecting server request", method=method)
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        self._spawn(self._transport.send(_encode(reply)))

    def _notify_cancelled(self, request_id: int, reason: str) -> None:
        if self._closed or self._transport.is_closed:
            return
        self._spawn(self.notify(
            "notifications/cancelled", {"requestId": request_id, "reason": reason}
        ))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log.debug("Best-effort send failed", error=str(error))


def _is_request_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8")
