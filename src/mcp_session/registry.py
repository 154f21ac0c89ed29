"""Capability registry for MCP sessions.

Caches discovered tool, prompt and resource descriptors per session.
Concurrent cache misses share one upstream fetch, and a session's cache
is dropped the moment the session leaves ``ready``.
"""

import asyncio
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from common.logging import get_logger
from common.models import (
    CapabilityKind,
    PromptDescriptor,
    ResourceDescriptor,
    SessionState,
    ToolDescriptor,
)
from mcp_session.errors import DispatchError, DispatchErrorKind, SessionError, SessionErrorKind
from mcp_session.session import Session, consume_task_exception

logger = get_logger(__name__)

Descriptor = Union[ToolDescriptor, PromptDescriptor, ResourceDescriptor]

# kind -> (list method, result key, descriptor model)
_LISTINGS: dict[CapabilityKind, tuple[str, str, type[BaseModel]]] = {
    CapabilityKind.TOOLS: ("tools/list", "tools", ToolDescriptor),
    CapabilityKind.PROMPTS: ("prompts/list", "prompts", PromptDescriptor),
    CapabilityKind.RESOURCES: ("resources/list", "resources", ResourceDescriptor),
}

_LIST_CHANGED: dict[str, CapabilityKind] = {
    "notifications/tools/list_changed": CapabilityKind.TOOLS,
    "notifications/prompts/list_changed": CapabilityKind.PROMPTS,
    "notifications/resources/list_changed": CapabilityKind.RESOURCES,
}

# Guards against servers that hand out cursors forever
MAX_PAGES = 100


class _SessionCache:
    def __init__(self) -> None:
        self.entries: dict[CapabilityKind, tuple[Descriptor, ...]] = {}
        self.inflight: dict[CapabilityKind, asyncio.Task] = {}
        # Bumped on every invalidation so late fetches cannot repopulate
        self.generation = 0


class CapabilityRegistry:
    """
    Per-session cache of discovered descriptors.

    Provides:
    - Cached listings in server order
    - Single-flight fetches for concurrent cache misses
    - Automatic invalidation when a session leaves ``ready``
    """

    def __init__(self, request_timeout: Optional[float] = None) -> None:
        """
        Args:
            request_timeout: Timeout for each list request; defaults to the session's
        """
        self.request_timeout = request_timeout
        self._caches: dict[str, _SessionCache] = {}

    async def list_tools(
        self,
        session: Session,
        refresh: bool = False,
        timeout: Optional[float] = None
    ) -> tuple[ToolDescriptor, ...]:
        """
        List tools, fetching once per session unless ``refresh`` is set.

        Args:
            session: Ready session
            refresh: Re-fetch even when cached
            timeout: Longest this caller waits; a shared fetch keeps running for the others

        Raises:
            DispatchError: TIMEOUT if the listing is not ready within ``timeout``
        """
        return await self._list(session, CapabilityKind.TOOLS, refresh, timeout)  # type: ignore[return-value]

    async def list_prompts(
        self,
        session: Session,
        refresh: bool = False,
        timeout: Optional[float] = None
    ) -> tuple[PromptDescriptor, ...]:
        """List prompts, fetching once per session unless ``refresh`` is set."""
        return await self._list(session, CapabilityKind.PROMPTS, refresh, timeout)  # type: ignore[return-value]

    async def list_resources(
        self,
        session: Session,
        refresh: bool = False,
        timeout: Optional[float] = None
    ) -> tuple[ResourceDescriptor, ...]:
        """List resources, fetching once per session unless ``refresh`` is set."""
        return await self._list(session, CapabilityKind.RESOURCES, refresh, timeout)  # type: ignore[return-value]

    async def search_tools(
        self,
        session: Session,
        query: str,
        refresh: bool = False
    ) -> list[ToolDescriptor]:
        """
        Search tools by name or description.

        Args:
            session: Ready session
            query: Search query (case-insensitive)
            refresh: Force a re-fetch first

        Returns:
            Matching tools in server order
        """
        tools = await self.list_tools(session, refresh)
        query_lower = query.lower()
        return [
            tool for tool in tools
            if query_lower in tool.name.lower() or query_lower in tool.description.lower()
        ]

    def is_populated(self, session: Session, kind: CapabilityKind = CapabilityKind.TOOLS) -> bool:
        """Whether a listing is cached for the session."""
        cache = self._caches.get(session.id)
        return cache is not None and kind in cache.entries

    def cached_tool(self, session: Session, name: str) -> Optional[ToolDescriptor]:
        """Look a tool up in the cache without any network traffic."""
        cache = self._caches.get(session.id)
        if cache is None:
            return None
        for tool in cache.entries.get(CapabilityKind.TOOLS, ()):
            if tool.name == name:
                return tool  # type: ignore[return-value]
        return None

    def invalidate(self, session: Session, kind: Optional[CapabilityKind] = None) -> None:
        """Drop cached listings for a session (one kind, or all of them)."""
        cache = self._caches.get(session.id)
        if cache is None:
            return

        cache.generation += 1
        if kind is None:
            cache.entries.clear()
            cache.inflight.clear()
        else:
            cache.entries.pop(kind, None)
            cache.inflight.pop(kind, None)
        logger.debug("Capability cache invalidated", session_id=session.id, kind=kind.value if kind else "all")

    async def _list(
        self,
        session: Session,
        kind: CapabilityKind,
        refresh: bool,
        timeout: Optional[float] = None
    ) -> tuple[Descriptor, ...]:
        if session.state is not SessionState.READY:
            raise SessionError(SessionErrorKind.NOT_READY, f"Session is {session.state.value}")

        if kind.value not in session.capabilities:
            logger.debug("Capability not negotiated", session_id=session.id, kind=kind.value)
            return ()

        cache = self._track(session)

        if not refresh and kind in cache.entries:
            return cache.entries[kind]

        task = cache.inflight.get(kind)
        if task is None or task.done():
            task = asyncio.create_task(self._fetch(session, cache, kind, cache.generation))
            task.add_done_callback(consume_task_exception)
            cache.inflight[kind] = task

        # Shield so one caller giving up does not cancel the fetch for the others
        if timeout is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            raise DispatchError(
                DispatchErrorKind.TIMEOUT,
                f"'{_LISTINGS[kind][0]}' did not complete within {timeout}s"
            ) from None

    def _track(self, session: Session) -> _SessionCache:
        cache = self._caches.get(session.id)
        if cache is None:
            cache = _SessionCache()
            self._caches[session.id] = cache
            session.add_state_listener(self._on_state_change)
            session.add_notification_listener(self._on_notification)
        return cache

    async def _fetch(
        self,
        session: Session,
        cache: _SessionCache,
        kind: CapabilityKind,
        generation: int
    ) -> tuple[Descriptor, ...]:
        method, key, model = _LISTINGS[kind]
        logger.debug("Fetching listing", session_id=session.id, method=method)

        try:
            items: list[Any] = []
            cursor: Optional[str] = None
            for _ in range(MAX_PAGES):
                result = await session.request(
                    method, {"cursor": cursor} if cursor else None, self.request_timeout
                )
                page = result.get(key)
                if not isinstance(page, list):
                    raise DispatchError(
                        DispatchErrorKind.MALFORMED_RESPONSE,
                        f"'{method}' result has no '{key}' list"
                    )
                items.extend(page)
                cursor = result.get("nextCursor")
                if not cursor:
                    break
            else:
                logger.warning("Stopped following cursors", method=method, pages=MAX_PAGES)

            try:
                descriptors = tuple(model.model_validate(item) for item in items)
            except ValidationError as e:
                raise DispatchError(
                    DispatchErrorKind.MALFORMED_RESPONSE,
                    f"Invalid descriptor in '{method}' result: {e}"
                ) from e
        finally:
            if cache.inflight.get(kind) is asyncio.current_task():
                del cache.inflight[kind]

        if cache.generation == generation and session.state is SessionState.READY:
            cache.entries[kind] = descriptors  # type: ignore[assignment]
            logger.info("Listing cached", session_id=session.id, kind=kind.value, count=len(descriptors))
        return descriptors  # type: ignore[return-value]

    def _on_state_change(self, session: Session, old: SessionState, new: SessionState) -> None:
        if old is SessionState.READY and new is not SessionState.READY:
            self.invalidate(session)
            if new in (SessionState.CLOSING, SessionState.FAILED, SessionState.DISCONNECTED):
                self._caches.pop(session.id, None)
                session.remove_state_listener(self._on_state_change)
                session.remove_notification_listener(self._on_notification)

    def _on_notification(self, session: Session, method: str, params: dict[str, Any]) -> None:
        kind = _LIST_CHANGED.get(method)
        if kind is not None:
            self.invalidate(session, kind)
