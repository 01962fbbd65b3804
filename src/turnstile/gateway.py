"""Rate-limited, health-aware gateway over several Solana RPC endpoints.

Calls are spread round-robin over endpoints currently marked healthy. A
process-wide RateLimiter bounds the outgoing call rate. Transient failures
(rate limit, timeout) mark an endpoint unhealthy; a background loop
re-checks every endpoint on a fixed interval.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from turnstile.rpc_client import RpcError, SolanaRpcClient, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Token reservoir + concurrency cap + minimum spacing, all at once.

    The reservoir holds ``reservoir`` tokens and is refilled to full every
    ``refresh_interval_secs``. Admission is serialized so waiting callers
    are served in arrival order.
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        reservoir: int = 50,
        refresh_interval_secs: float = 1.0,
        min_interval_secs: float = 0.02,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1 or reservoir < 1:
            raise ValueError("max_concurrent and reservoir must be >= 1")
        self._capacity = reservoir
        self._tokens = reservoir
        self._refresh_interval = refresh_interval_secs
        self._min_interval = min_interval_secs
        self._clock = clock
        self._refreshed_at = clock()
        self._last_start: float | None = None
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._admission = asyncio.Lock()
        self.running = 0
        self.queued = 0
        self.done = 0

    @property
    def tokens(self) -> int:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._refreshed_at
        if elapsed >= self._refresh_interval:
            periods = int(elapsed // self._refresh_interval)
            self._refreshed_at += periods * self._refresh_interval
            self._tokens = self._capacity

    async def _admit(self) -> None:
        async with self._admission:
            while True:
                self._refill()
                now = self._clock()
                if self._tokens <= 0:
                    wait = self._refreshed_at + self._refresh_interval - now
                elif (
                    self._last_start is not None
                    and now - self._last_start < self._min_interval
                ):
                    wait = self._min_interval - (now - self._last_start)
                else:
                    self._tokens -= 1
                    self._last_start = now
                    return
                await asyncio.sleep(max(wait, 0))

    async def schedule(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn()`` once a concurrency slot and a token are available."""
        self.queued += 1
        async with self._semaphore:
            try:
                await self._admit()
            finally:
                self.queued -= 1
            self.running += 1
            try:
                return await fn()
            finally:
                self.running -= 1
                self.done += 1

    def stats(self) -> dict[str, int]:
        return {
            "running": self.running,
            "queued": self.queued,
            "done": self.done,
            "reservoir": self.tokens,
        }


# ---------------------------------------------------------------------------
# Endpoint arena
# ---------------------------------------------------------------------------


@dataclass
class EndpointState:
    """One RPC endpoint and its liveness flag."""

    url: str
    client: Any
    healthy: bool = True
    last_checked_at: float | None = None
    last_error: str | None = None


def select_endpoint(endpoints: Sequence[EndpointState], cursor: int) -> tuple[int, int]:
    """Pick the next healthy endpoint at or after *cursor*.

    Returns ``(index, next_cursor)``. When every endpoint is unhealthy the
    endpoint at *cursor* is returned anyway so calls degrade instead of
    stalling.
    """
    count = len(endpoints)
    for offset in range(count):
        index = (cursor + offset) % count
        if endpoints[index].healthy:
            return index, (index + 1) % count
    index = cursor % count
    return index, (index + 1) % count


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class RpcGateway:
    """Round-robin connection pool with rate limiting, retry and health checks."""

    def __init__(
        self,
        endpoints: Sequence[str],
        limiter: RateLimiter | None = None,
        health_interval_secs: float = 30,
        retry_base_delay_secs: float = 1.0,
        commitment: str = "confirmed",
        client_factory: Callable[[str], Any] = SolanaRpcClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")
        self._endpoints = [EndpointState(url=url, client=client_factory(url)) for url in endpoints]
        self._cursor = 0
        self._limiter = limiter or RateLimiter()
        self._health_interval = health_interval_secs
        self._retry_base_delay = retry_base_delay_secs
        self._commitment = commitment
        self._clock = clock
        self._health_task: asyncio.Task[None] | None = None

    @property
    def endpoints(self) -> list[EndpointState]:
        return list(self._endpoints)

    def _mark(self, endpoint: EndpointState, healthy: bool, error: BaseException | None = None) -> None:
        if not healthy and endpoint.healthy:
            logger.warning("RPC endpoint marked unhealthy: %s (%s)", endpoint.url, error)
        elif healthy and not endpoint.healthy:
            logger.info("RPC endpoint recovered: %s", endpoint.url)
        endpoint.healthy = healthy
        endpoint.last_error = None if healthy else str(error)

    # -- calls ----------------------------------------------------------------

    async def schedule(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``fn(client)`` against the next endpoint, under the rate limiter."""

        async def _call() -> T:
            index, self._cursor = select_endpoint(self._endpoints, self._cursor)
            endpoint = self._endpoints[index]
            try:
                result = await fn(endpoint.client)
            except Exception as exc:
                if is_transient(exc):
                    self._mark(endpoint, False, exc)
                raise
            self._mark(endpoint, True)
            return result

        return await self._limiter.schedule(_call)

    async def schedule_with_retry(
        self, fn: Callable[[Any], Awaitable[T]], max_retries: int = 3
    ) -> T:
        """``schedule()`` with exponential backoff between attempts.

        Each attempt may land on a different endpoint. The last RpcError is
        re-raised once attempts are exhausted.
        """
        attempts = max(max_retries, 1)
        for attempt in range(attempts - 1):
            try:
                return await self.schedule(fn)
            except RpcError as exc:
                delay = self._retry_base_delay * (2 ** attempt)
                logger.debug(
                    "RPC attempt %d/%d failed (%s); retrying in %.2fs.",
                    attempt + 1, attempts, exc, delay,
                )
                await asyncio.sleep(delay)
        return await self.schedule(fn)

    async def get_slot(self) -> int:
        return await self.schedule(lambda client: client.get_slot(self._commitment))

    # -- health ---------------------------------------------------------------

    async def check_endpoints(self) -> dict[str, bool]:
        """Call getSlot on every endpoint, under the rate limiter, and update the arena."""
        for endpoint in self._endpoints:
            try:
                await self._limiter.schedule(
                    functools.partial(endpoint.client.get_slot, self._commitment)
                )
                self._mark(endpoint, True)
            except Exception as exc:
                self._mark(endpoint, False, exc)
            endpoint.last_checked_at = self._clock()
        return self.health_status()

    def health_status(self) -> dict[str, bool]:
        return {endpoint.url: endpoint.healthy for endpoint in self._endpoints}

    def stats(self) -> dict[str, int]:
        return self._limiter.stats()

    async def start_health_checks(self) -> None:
        """Start the periodic endpoint health-check task."""
        if self._health_task is not None or self._health_interval <= 0:
            return
        self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        logger.info("RPC health-check loop started (interval=%ss).", self._health_interval)
        try:
            while True:
                await asyncio.sleep(self._health_interval)
                status = await self.check_endpoints()
                unhealthy = [url for url, ok in status.items() if not ok]
                if unhealthy:
                    logger.warning("Unhealthy RPC endpoints: %s", ", ".join(unhealthy))
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Cancel the health-check task and close every endpoint client."""
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        for endpoint in self._endpoints:
            close = getattr(endpoint.client, "close", None)
            if close is not None:
                await close()
