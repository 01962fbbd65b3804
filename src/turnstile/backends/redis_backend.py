"""RedisBackend: durable, shared CacheBackend using redis-py's asyncio client.

Per-key expiry is native (``SET ... EX``). Safe for several server processes
sharing one Redis; ``add()`` uses ``SET NX EX`` so only one process can bind
a signature.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_USED_MEMORY_RE = re.compile(r"used_memory_human:(\S+)")


class RedisBackend:
    """Redis store implementing ``CacheBackend``.

    Pass either ``redis_url`` (a client is created on ``connect()``) or a
    ready ``client``.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        client: redis.Redis | None = None,
    ) -> None:
        if redis_url is None and client is None:
            raise ValueError("RedisBackend needs redis_url or client.")
        self._redis_url = redis_url
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis client not connected")
        return self._client

    # -- lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        try:
            await self._client.ping()
            logger.info("Redis replay cache connected.")
        except redis.ConnectionError as e:
            # Stay usable: per-call failures are handled by ReplayCache policy
            logger.error("Failed to connect to Redis: %s", e)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            logger.info("Redis replay cache disconnected.")

    # -- CacheBackend ---------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_secs: int) -> None:
        await self.client.set(key, value, ex=ttl_secs)

    async def add(self, key: str, value: str, ttl_secs: int) -> bool:
        result = await self.client.set(key, value, ex=ttl_secs, nx=True)
        return bool(result)

    async def exists(self, key: str) -> bool:
        return await self.client.exists(key) == 1

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def clear(self, prefix: str) -> int:
        keys = await self.client.keys(f"{prefix}*")
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def count(self, prefix: str) -> int:
        return len(await self.client.keys(f"{prefix}*"))

    async def info(self) -> dict[str, Any]:
        info = await self.client.info("memory")
        if isinstance(info, dict):
            return {"memory": info.get("used_memory_human", "unknown")}
        match = _USED_MEMORY_RE.search(str(info))
        return {"memory": match.group(1) if match else "unknown"}
