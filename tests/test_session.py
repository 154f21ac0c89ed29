"""Tests for session lifecycle and handshake."""

import asyncio
from unittest.mock import patch

import pytest

from common.models import ClientIdentity, SessionState
from conftest import ENDPOINT, FakeRpcError, FakeServer, wait_until
from mcp_session.errors import (
    DispatchError,
    DispatchErrorKind,
    SessionError,
    SessionErrorKind,
    TransportError,
    TransportErrorKind,
)
from mcp_session.dispatcher import RequestDispatcher
from mcp_session.session import LATEST_PROTOCOL_VERSION, Session


def new_session(server: FakeServer, request_timeout: float = 2.0) -> Session:
    return Session(server.transport_factory, request_timeout=request_timeout, name="fake")


class TestSessionConnect:
    """Tests for Session.connect."""

    @pytest.mark.asyncio
    async def test_connect_reaches_ready(self, server, identity):
        """Test a prompt acknowledgement makes the session ready."""
        server.init_delay = 0.05
        session = new_session(server)
        states = []
        session.add_state_listener(lambda s, old, new: states.append(new))

        result = await session.connect(ENDPOINT, identity, timeout=3.0)

        assert result is session
        assert session.state is SessionState.READY
        assert states == [SessionState.CONNECTING, SessionState.INITIALIZING, SessionState.READY]
        assert session.server_info.name == "fake-server"
        assert session.protocol_version == LATEST_PROTOCOL_VERSION
        assert session.endpoint == ENDPOINT
        await session.close()

    @pytest.mark.asyncio
    async def test_handshake_payload(self, server, identity):
        """Test initialize carries client identity and requested capabilities."""
        session = new_session(server)
        await session.connect(ENDPOINT, identity, timeout=2.0)

        params = server.requests[0]["params"]
        assert server.requests[0]["method"] == "initialize"
        assert params["clientInfo"] == {"name": "test-client", "version": "0.0.1"}
        assert set(params["capabilities"]) == {"tools", "prompts", "resources"}
        assert params["protocolVersion"] == LATEST_PROTOCOL_VERSION
        await wait_until(lambda: server.notifications)
        assert server.notifications[0]["method"] == "notifications/initialized"
        await session.close()

    @pytest.mark.asyncio
    async def test_capabilities_are_intersected(self, identity):
        """Test the negotiated set is what both sides support."""
        server = FakeServer(capabilities=("tools", "logging"))
        session = new_session(server)
        identity = ClientIdentity(name="c", version="1", capabilities=["tools", "prompts"])

        await session.connect(ENDPOINT, identity, timeout=2.0)

        assert session.capabilities == frozenset({"tools"})
        await session.close()

    @pytest.mark.asyncio
    async def test_init_timeout_ends_failed(self, server, identity):
        """Test a server that never acknowledges leaves the session failed."""
        server.hang_initialize = True
        session = new_session(server)

        with pytest.raises(SessionError) as exc_info:
            await session.connect(ENDPOINT, identity, timeout=0.1)

        assert exc_info.value.kind is SessionErrorKind.INIT_TIMEOUT
        assert session.state is SessionState.FAILED
        assert session.pending_requests == 0
        assert server.transport.is_closed

    @pytest.mark.asyncio
    async def test_connect_failure(self, server, identity):
        """Test a refused transport maps to CONNECT_FAILED."""
        server.refuse_connects = 1
        session = new_session(server)

        with pytest.raises(SessionError) as exc_info:
            await session.connect(ENDPOINT, identity, timeout=1.0)

        assert exc_info.value.kind is SessionErrorKind.CONNECT_FAILED
        assert session.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_unsupported_protocol_rejected(self, identity):
        """Test an unknown protocol version rejects the handshake."""
        server = FakeServer(protocol_version="1999-01-01")
        session = new_session(server)

        with pytest.raises(SessionError) as exc_info:
            await session.connect(ENDPOINT, identity, timeout=1.0)

        assert exc_info.value.kind is SessionErrorKind.HANDSHAKE_REJECTED
        assert session.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_initialize_error_rejected(self, server, identity):
        """Test a JSON-RPC error to initialize rejects the handshake."""
        server.init_error = FakeRpcError(-32600, "unsupported client")
        session = new_session(server)

        with pytest.raises(SessionError) as exc_info:
            await session.connect(ENDPOINT, identity, timeout=1.0)

        assert exc_info.value.kind is SessionErrorKind.HANDSHAKE_REJECTED

    @pytest.mark.asyncio
    async def test_concurrent_connect_single_handshake(self, server, identity):
        """Test concurrent callers share one attempt and one initialize."""
        server.init_delay = 0.05
        session = new_session(server)

        results = await asyncio.gather(*(
            session.connect(ENDPOINT, identity, timeout=2.0) for _ in range(5)
        ))

        assert all(r is session for r in results)
        assert server.count("initialize") == 1
        assert len(server.transports) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_concurrent_connect_shares_failure(self, server, identity):
        """Test every joined caller sees the same failure."""
        server.hang_initialize = True
        session = new_session(server)

        results = await asyncio.gather(
            *(session.connect(ENDPOINT, identity, timeout=0.1) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, SessionError) for r in results)
        assert server.count("initialize") == 1

    @pytest.mark.asyncio
    async def test_reconnect_after_failure_uses_fresh_transport(self, server, identity):
        """Test a failed session can connect again on a new transport."""
        server.refuse_connects = 1
        session = new_session(server)
        with pytest.raises(SessionError):
            await session.connect(ENDPOINT, identity, timeout=1.0)

        await session.connect(ENDPOINT, identity, timeout=1.0)

        assert session.is_ready
        assert len(server.transports) == 2
        await session.close()


class TestSessionLifecycle:
    """Tests for close, requests and failure handling."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, session, server):
        """Test closing twice is a no-op success."""
        await session.close()
        await session.close()

        assert session.state is SessionState.DISCONNECTED
        assert server.transport.is_closed

    @pytest.mark.asyncio
    async def test_close_never_connected(self, server):
        """Test closing a fresh session does nothing."""
        session = new_session(server)

        await session.close()

        assert session.state is SessionState.DISCONNECTED
        assert server.transports == []

    @pytest.mark.asyncio
    async def test_close_during_connect(self, server, identity):
        """Test close aborts an in-flight handshake."""
        server.hang_initialize = True
        session = new_session(server)
        connecting = asyncio.create_task(session.connect(ENDPOINT, identity, timeout=5.0))
        await wait_until(lambda: session.state is SessionState.INITIALIZING)

        await session.close()

        with pytest.raises(SessionError) as exc_info:
            await connecting
        assert exc_info.value.kind is SessionErrorKind.NOT_READY
        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_request_requires_ready(self, server):
        """Test requests before the handshake fail with NOT_READY."""
        session = new_session(server)

        with pytest.raises(SessionError) as exc_info:
            await session.request("tools/list")

        assert exc_info.value.kind is SessionErrorKind.NOT_READY

    @pytest.mark.asyncio
    async def test_ping(self, session, server):
        """Test ping round-trips."""
        latency = await session.ping()

        assert latency >= 0
        assert server.count("ping") == 1

    @pytest.mark.asyncio
    async def test_transport_failure_cascades(self, session, server):
        """Test a broken transport fails the session and every outstanding request."""
        calls = [
            asyncio.create_task(session.request("tools/call", {"name": "hang", "arguments": {}}))
            for _ in range(3)
        ]
        await wait_until(lambda: session.pending_requests == 3)

        server.transport.inject_error(TransportError(TransportErrorKind.READ_FAILED, "reset by peer"))
        results = await asyncio.gather(*calls, return_exceptions=True)

        assert [r.kind for r in results] == [DispatchErrorKind.SESSION_CLOSED] * 3
        assert all(isinstance(r, DispatchError) for r in results)
        assert session.state is SessionState.FAILED
        assert session.pending_requests == 0

    @pytest.mark.asyncio
    async def test_server_closing_stream_fails_session(self, session, server):
        """Test the end of the inbound stream is a failure."""
        await server.transport.close()

        await wait_until(lambda: session.state is SessionState.FAILED)

    @pytest.mark.asyncio
    async def test_unparseable_frame_keeps_session_ready(self, session, server):
        """Test a frame nested too deeply to parse is dropped."""
        server.transport.push(b"[" * 100000 + b"]" * 100000)

        await session.ping()

        assert session.state is SessionState.READY

    @pytest.mark.asyncio
    async def test_reader_crash_fails_session(self, session, server):
        """Test an unexpected reader error fails the session instead of leaving it unread."""
        call = asyncio.create_task(session.request("tools/call", {"name": "hang", "arguments": {}}))
        await wait_until(lambda: session.pending_requests == 1)

        with patch.object(RequestDispatcher, "_handle_payload", side_effect=RecursionError("too deep")):
            server.transport.push({"jsonrpc": "2.0", "method": "notifications/message"})
            await wait_until(lambda: session.state is SessionState.FAILED)

        with pytest.raises(DispatchError) as exc_info:
            await call
        assert exc_info.value.kind is DispatchErrorKind.SESSION_CLOSED

    @pytest.mark.asyncio
    async def test_close_resolves_pending_requests(self, session):
        """Test close cascades SESSION_CLOSED to in-flight calls."""
        call = asyncio.create_task(session.request("tools/call", {"name": "hang", "arguments": {}}))
        await wait_until(lambda: session.pending_requests == 1)

        await session.close()

        with pytest.raises(DispatchError) as exc_info:
            await call
        assert exc_info.value.kind is DispatchErrorKind.SESSION_CLOSED

    @pytest.mark.asyncio
    async def test_notification_listeners(self, session, server):
        """Test server notifications reach listeners; a failing listener is isolated."""
        seen = []

        def broken(s, method, params):
            raise RuntimeError("listener bug")

        session.add_notification_listener(broken)
        session.add_notification_listener(lambda s, method, params: seen.append(method))
        server.transport.push({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})

        await wait_until(lambda: seen)
        assert seen == ["notifications/message"]

    @pytest.mark.asyncio
    async def test_server_ping_is_answered(self, session, server):
        """Test the session replies to server-initiated pings."""
        server.transport.push({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})

        await wait_until(lambda: server.replies)
        assert server.replies[0] == {"jsonrpc": "2.0", "id": "srv-1", "result": {}}

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, server, identity):
        """Test leaving the context closes the session."""
        async with new_session(server) as session:
            await session.connect(ENDPOINT, identity, timeout=1.0)
            assert session.is_ready

        assert session.state is SessionState.DISCONNECTED
