"""Per-server health tracking shared by every tool call in the process."""

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import replace

from orion.tools.types import ServerHealth

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 60.0
DEFAULT_MAX_SERVERS = 256


class HealthRegistry:
    """Concurrency-safe map of server id to ``ServerHealth``.

    A server flips to unavailable after ``failure_threshold`` consecutive
    failures and back on the next success. While unavailable and inside the
    cooldown window callers should skip it; once the window passes one call
    is let through to probe it and everyone else keeps skipping until that
    probe records a result. A probe that never reports back stops blocking
    after another cooldown. Entries are evicted least-recently-updated
    first once ``max_servers`` is exceeded. Reads return copies.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        max_servers: int = DEFAULT_MAX_SERVERS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = cooldown_seconds
        self.max_servers = max(1, max_servers)
        self._clock = clock
        self._entries: OrderedDict[str, ServerHealth] = OrderedDict()
        self._probes: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _touch(self, server_id: str) -> ServerHealth:
        self._probes.pop(server_id, None)
        entry = self._entries.get(server_id)
        if entry is None:
            entry = ServerHealth(server_id=server_id, updated_at=self._clock())
            self._entries[server_id] = entry
        self._entries.move_to_end(server_id)
        while len(self._entries) > self.max_servers:
            evicted, _ = self._entries.popitem(last=False)
            self._probes.pop(evicted, None)
        return entry

    async def get(self, server_id: str) -> ServerHealth:
        async with self._lock:
            entry = self._entries.get(server_id)
            if entry is None:
                return ServerHealth(server_id=server_id)
            return replace(entry)

    async def is_available(self, server_id: str) -> bool:
        return (await self.get(server_id)).available

    async def should_skip(self, server_id: str) -> bool:
        """True while the caller should not contact ``server_id``.

        A False answer for a degraded server claims the probe slot.
        """
        async with self._lock:
            entry = self._entries.get(server_id)
            if entry is None or entry.available:
                return False
            now = self._clock()
            last = entry.last_error_at if entry.last_error_at is not None else entry.updated_at
            if now - last < self.cooldown_seconds:
                return True
            probe_started = self._probes.get(server_id)
            if probe_started is not None and now - probe_started < self.cooldown_seconds:
                return True
            self._probes[server_id] = now
            return False

    async def record_failure(self, server_id: str, error: str) -> tuple[ServerHealth, bool]:
        """Count a failure. Returns the new state and whether it just degraded."""
        async with self._lock:
            entry = self._touch(server_id)
            now = self._clock()
            entry.consecutive_failures += 1
            entry.last_error = error
            entry.last_error_at = now
            entry.updated_at = now
            degraded = entry.available and entry.consecutive_failures >= self.failure_threshold
            if degraded:
                entry.available = False
            return replace(entry), degraded

    async def record_success(self, server_id: str) -> tuple[ServerHealth, bool]:
        """Reset the failure count. Returns the new state and whether it recovered."""
        async with self._lock:
            entry = self._touch(server_id)
            recovered = not entry.available
            entry.available = True
            entry.consecutive_failures = 0
            entry.updated_at = self._clock()
            return replace(entry), recovered

    async def snapshot(self) -> dict[str, ServerHealth]:
        async with self._lock:
            return {server_id: replace(entry) for server_id, entry in self._entries.items()}
