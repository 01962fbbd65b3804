"""Replay-prevention cache: transaction signature -> the call it paid for.

Entries are written once, after a successful on-chain verification, and
never updated. Absence means "never verified". Backend failures are
swallowed (fail-open, the default) or raised as CacheUnavailableError
(fail-closed), per configuration.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from turnstile.cache_backend import CacheBackend
from turnstile.constants import CACHE_PREFIX, CACHE_TTL_SECS
from turnstile.errors import CacheUnavailableError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CacheEntry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    """Historical record of one verified payment."""

    tool_id: str
    amount: Decimal  # on-chain observed amount, not the required one
    verified_at: float  # unix seconds
    verified: bool = True
    params: dict[str, Any] | None = None

    def to_json(self) -> str:
        return json.dumps({
            "tool_id": self.tool_id,
            "amount": str(self.amount),
            "verified_at": self.verified_at,
            "verified": self.verified,
            "params": self.params,
        }, default=str)

    @classmethod
    def from_json(cls, data: str) -> CacheEntry:
        """Deserialize. Raises ValueError on corrupt data."""
        try:
            obj = json.loads(data)
            return cls(
                tool_id=str(obj["tool_id"]),
                amount=Decimal(str(obj["amount"])),
                verified_at=float(obj["verified_at"]),
                verified=bool(obj.get("verified", True)),
                params=obj.get("params"),
            )
        except (json.JSONDecodeError, TypeError, KeyError, InvalidOperation) as e:
            raise ValueError(f"Corrupt cache entry: {e}") from e


@dataclass(frozen=True)
class CacheStats:
    count: int
    hit_count: int
    miss_count: int
    backend: str
    memory: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "backend": self.backend,
            "memory": self.memory,
        }


# ---------------------------------------------------------------------------
# ReplayCache
# ---------------------------------------------------------------------------


class ReplayCache:
    """Namespaced, TTL-bounded view over a CacheBackend.

    - ``get()``/``has()`` count hits and misses.
    - ``add()`` is an atomic set-if-absent; returns False when another
      call already bound the signature.
    - With ``fail_open=True`` a backend error reads as a miss and writes are
      best-effort. With ``fail_open=False`` it raises CacheUnavailableError.
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttl_secs: int = CACHE_TTL_SECS,
        prefix: str = CACHE_PREFIX,
        fail_open: bool = True,
    ) -> None:
        self._backend = backend
        self._ttl = ttl_secs
        self._prefix = prefix
        self._fail_open = fail_open
        self._hits = 0
        self._misses = 0

    @property
    def backend_name(self) -> str:
        return type(self._backend).__name__

    def _key(self, signature: str) -> str:
        return f"{self._prefix}{signature}"

    def _handle_failure(self, op: str, signature: str, exc: Exception) -> None:
        if not self._fail_open:
            raise CacheUnavailableError(f"Replay cache {op} failed: {exc}") from exc
        logger.warning("Replay cache %s failed for %s: %s", op, signature, exc)

    # -- lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        await self._backend.connect()

    async def close(self) -> None:
        await self._backend.close()

    # -- contract -------------------------------------------------------------

    async def get(self, signature: str) -> CacheEntry | None:
        try:
            raw = await self._backend.get(self._key(signature))
        except Exception as exc:
            self._misses += 1
            self._handle_failure("get", signature, exc)
            return None

        if raw is None:
            self._misses += 1
            return None
        try:
            entry = CacheEntry.from_json(raw)
        except ValueError:
            logger.warning("Discarding corrupt cache entry for %s.", signature)
            self._misses += 1
            return None
        self._hits += 1
        return entry

    async def set(self, signature: str, entry: CacheEntry) -> None:
        try:
            await self._backend.set(self._key(signature), entry.to_json(), self._ttl)
        except Exception as exc:
            self._handle_failure("set", signature, exc)

    async def add(self, signature: str, entry: CacheEntry) -> bool:
        """Bind *signature* to *entry* only if it is unbound."""
        try:
            return await self._backend.add(self._key(signature), entry.to_json(), self._ttl)
        except Exception as exc:
            self._handle_failure("add", signature, exc)
            return True

    async def has(self, signature: str) -> bool:
        return await self.get(signature) is not None

    async def delete(self, signature: str) -> None:
        try:
            await self._backend.delete(self._key(signature))
        except Exception as exc:
            self._handle_failure("delete", signature, exc)

    async def clear(self) -> int:
        try:
            return await self._backend.clear(self._prefix)
        except Exception as exc:
            self._handle_failure("clear", "*", exc)
            return 0

    async def stats(self) -> CacheStats:
        count = 0
        memory = "unknown"
        try:
            count = await self._backend.count(self._prefix)
            memory = str((await self._backend.info()).get("memory", "unknown"))
        except Exception as exc:
            logger.warning("Replay cache stats unavailable: %s", exc)
        return CacheStats(
            count=count,
            hit_count=self._hits,
            miss_count=self._misses,
            backend=self.backend_name,
            memory=memory,
        )
