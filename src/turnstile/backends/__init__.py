"""Replay cache backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from turnstile.backends.memory_backend import MemoryBackend
from turnstile.backends.redis_backend import RedisBackend

if TYPE_CHECKING:
    from turnstile.cache_backend import CacheBackend
    from turnstile.config import TurnstileConfig

__all__ = ["MemoryBackend", "RedisBackend", "create_backend"]


def create_backend(config: TurnstileConfig) -> CacheBackend:
    """Select the backend named by ``config.cache_backend``."""
    if config.cache_backend == "redis":
        if not config.redis_url:
            raise ValueError("cache_backend='redis' requires redis_url.")
        return RedisBackend(redis_url=config.redis_url)
    if config.cache_backend == "memory":
        return MemoryBackend(sweep_interval_secs=config.cache_sweep_interval_secs)
    raise ValueError(f"Unknown cache backend '{config.cache_backend}'.")
