"""MemoryBackend: process-local CacheBackend with explicit expiry.

Entries carry an absolute expiry timestamp and are dropped lazily on read
and by a periodic sweep task. Not shared across processes and lost on
restart, so it cannot enforce replay protection for a multi-process
deployment.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Rough per-entry footprint used for the stats estimate
_AVG_ENTRY_BYTES = 200


class MemoryBackend:
    """In-process dict store implementing ``CacheBackend``."""

    def __init__(
        self,
        sweep_interval_secs: float = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: dict[str, tuple[str, float]] = {}  # key -> (value, expires_at)
        self._sweep_interval = sweep_interval_secs
        self._clock = clock
        self._sweep_task: asyncio.Task[None] | None = None

    # -- lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        logger.info("Memory replay cache initialized (entries lost on restart).")
        if self._sweep_task is None and self._sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._entries.clear()

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._sweep_interval)
                removed = self.sweep()
                if removed:
                    logger.debug("Swept %d expired replay cache entries.", removed)
        except asyncio.CancelledError:
            pass

    def sweep(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, (_, exp) in self._entries.items() if now > exp]
        for key in expired:
            del self._entries[key]
        return len(expired)

    # -- CacheBackend ---------------------------------------------------------

    def _live(self, key: str) -> str | None:
        item = self._entries.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_secs: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_secs)

    async def add(self, key: str, value: str, ttl_secs: int) -> bool:
        # No await between check and write, so this is atomic on the event loop
        if self._live(key) is not None:
            return False
        self._entries[key] = (value, self._clock() + ttl_secs)
        return True

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def count(self, prefix: str) -> int:
        self.sweep()
        return sum(1 for k in self._entries if k.startswith(prefix))

    async def info(self) -> dict[str, Any]:
        estimated = len(self._entries) * _AVG_ENTRY_BYTES
        return {
            "memory": f"~{estimated / 1024:.2f} KB",
            "sweeper_running": self._sweep_task is not None and not self._sweep_task.done(),
        }

    @property
    def size(self) -> int:
        return len(self._entries)
