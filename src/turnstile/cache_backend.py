"""Abstract storage interface for the replay cache.

Defines the CacheBackend Protocol that ReplayCache depends on.
Concrete implementations live in ``turnstile.backends``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class CacheBackend(Protocol):
    """Async key/value store with per-key expiry.

    Values are opaque JSON strings. Keys arrive already namespaced.
    Implementations raise on I/O failure; ReplayCache decides whether the
    failure is swallowed.
    """

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_secs: int) -> None: ...

    async def add(self, key: str, value: str, ttl_secs: int) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self, prefix: str) -> int: ...

    async def count(self, prefix: str) -> int: ...

    async def info(self) -> dict[str, Any]: ...
