"""Process-local registry of live push connections per user."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Any, Protocol

from bidding_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable


class LiveHandle(Protocol):
    """
    A live transport endpoint that can receive pushes.

    `closed` is the connection-lifetime cancellation token: once set, no
    further pushes are attempted on the handle.
    """

    closed: asyncio.Event

    async def send_json(self, payload: dict[str, Any]) -> None: ...

    async def close(self, code: int) -> None: ...


# Close code used when a handle misses its heartbeat.
HEARTBEAT_CLOSE_CODE = 4408


class ConnectionRegistry:
    """
    Tracks live handles per authenticated user for the lifetime of the process.

    A user may hold several handles at once (one per browser tab). All
    bookkeeping happens under an asyncio.Lock; network sends (pings, closes)
    happen outside it. State is in-memory only and is lost on restart.
    """

    def __init__(
        self,
        heartbeat_timeout_seconds: float,
        ping_timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self._ping_timeout_seconds = ping_timeout_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._handles: dict[str, set[LiveHandle]] = {}
        self._owners: dict[LiveHandle, str] = {}
        self._last_seen: dict[LiveHandle, float] = {}
        self._logger = get_logger(__name__)

    async def register(self, user_id: str, handle: LiveHandle) -> None:
        """Add handle to the user's handle set, creating the set if absent."""
        async with self._lock:
            self._handles.setdefault(user_id, set()).add(handle)
            self._owners[handle] = user_id
            self._last_seen[handle] = self._clock()
        self._logger.debug("Live connection registered", extra={"user_id": user_id})

    async def unregister(self, user_id: str, handle: LiveHandle) -> bool:
        """Remove handle; drop the user entry once the set is empty. Returns True if removed."""
        async with self._lock:
            return self._remove_locked(user_id, handle)

    def _remove_locked(self, user_id: str, handle: LiveHandle) -> bool:
        handles = self._handles.get(user_id)
        if handles is None or handle not in handles:
            return False
        handles.discard(handle)
        if len(handles) == 0:
            del self._handles[user_id]
        self._owners.pop(handle, None)
        self._last_seen.pop(handle, None)
        return True

    async def handles_for(self, user_id: str) -> frozenset[LiveHandle]:
        """Return a snapshot of the user's live handles, possibly empty."""
        async with self._lock:
            return frozenset(self._handles.get(user_id, ()))

    async def touch(self, handle: LiveHandle) -> None:
        """Record activity on a handle (any inbound frame, including pong)."""
        async with self._lock:
            if handle in self._last_seen:
                self._last_seen[handle] = self._clock()

    async def connection_count(self) -> int:
        """Total number of registered handles."""
        async with self._lock:
            return len(self._owners)

    async def user_count(self) -> int:
        """Number of users with at least one live handle."""
        async with self._lock:
            return len(self._handles)

    async def sweep(self) -> int:
        """
        Probe every handle once.

        Pings go out concurrently, each bounded by the ping timeout. Handles
        silent for longer than the heartbeat timeout, or whose ping fails or
        times out, are unregistered and closed. Returns the number evicted.
        """
        now = self._clock()
        async with self._lock:
            snapshot = [
                (handle, user_id, now - self._last_seen.get(handle, now))
                for handle, user_id in self._owners.items()
            ]

        to_evict: list[tuple[str, LiveHandle]] = []
        to_ping: list[tuple[str, LiveHandle]] = []
        for handle, user_id, silent_for in snapshot:
            if handle.closed.is_set() or silent_for > self._heartbeat_timeout_seconds:
                to_evict.append((user_id, handle))
            else:
                to_ping.append((user_id, handle))

        results = await asyncio.gather(*(self._ping(handle) for _, handle in to_ping))
        to_evict.extend(entry for entry, ok in zip(to_ping, results, strict=True) if not ok)

        evicted = 0
        for user_id, handle in to_evict:
            async with self._lock:
                removed = self._remove_locked(user_id, handle)
            if not removed:
                continue
            evicted += 1
            self._logger.info("Evicting unresponsive live connection", extra={"user_id": user_id})
            with contextlib.suppress(Exception):
                await asyncio.wait_for(
                    handle.close(HEARTBEAT_CLOSE_CODE), timeout=self._ping_timeout_seconds
                )
        return evicted

    async def _ping(self, handle: LiveHandle) -> bool:
        try:
            await asyncio.wait_for(
                handle.send_json({"type": "ping"}), timeout=self._ping_timeout_seconds
            )
        except Exception as exc:
            self._logger.debug("Heartbeat ping failed", extra={"error": repr(exc)})
            return False
        return True

    async def run_heartbeat(self, interval_seconds: float) -> None:
        """Sweep forever at the given interval. Cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception:
                self._logger.exception("Heartbeat sweep failed")

    async def close_all(self) -> None:
        """Close and forget every handle (shutdown)."""
        async with self._lock:
            handles = list(self._owners)
            self._handles.clear()
            self._owners.clear()
            self._last_seen.clear()
        for handle in handles:
            with contextlib.suppress(Exception):
                await handle.close(1001)
