"""Async JSON-RPC client for a single Solana RPC endpoint."""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any

import httpx


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """Base exception for ledger RPC operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RpcRateLimitError(RpcError):
    """429: endpoint is throttling us (transient)."""


class RpcTimeoutError(RpcError):
    """Request or confirmation wait timed out (transient)."""


class RpcConnectionError(RpcError):
    """Network/DNS failure (retryable)."""


class RpcServerError(RpcError):
    """5xx: server-side error (retryable)."""


class RpcResponseError(RpcError):
    """JSON-RPC ``error`` object in an otherwise successful response."""

    def __init__(self, message: str, rpc_code: int | None = None) -> None:
        super().__init__(message)
        self.rpc_code = rpc_code


# JSON-RPC codes some providers use for throttling instead of HTTP 429
_RATE_LIMIT_RPC_CODES = frozenset({-32005, 429})


def is_transient(exc: BaseException) -> bool:
    """True for failures that say "this endpoint is struggling right now"."""
    if isinstance(exc, (RpcRateLimitError, RpcTimeoutError)):
        return True
    text = str(exc).lower()
    return "429" in text or "rate limit" in text or "timeout" in text or "timed out" in text


# ---------------------------------------------------------------------------
# Status code → exception mapping
# ---------------------------------------------------------------------------

_STATUS_MAP: dict[int, type[RpcError]] = {
    429: RpcRateLimitError,
    408: RpcTimeoutError,
    504: RpcTimeoutError,
}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SolanaRpcClient:
    """Async client for one Solana JSON-RPC endpoint.

    Constructor accepts explicit params, no env-var loading.
    """

    def __init__(self, url: str, timeout: float = 15.0) -> None:
        self.url = url
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=timeout, write=10.0, pool=5.0),
            headers={"Content-Type": "application/json"},
        )

    # -- internal request dispatcher -----------------------------------------

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """POST a JSON-RPC request and map failures to the RpcError hierarchy."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as exc:
            raise RpcTimeoutError(f"{method} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise RpcConnectionError(str(exc)) from exc

        if response.status_code >= 400:
            body = response.text
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise RpcServerError(body, status_code=response.status_code)
            raise RpcError(body, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise RpcError(f"Invalid JSON from {method}: {exc}") from exc

        error = data.get("error")
        if error:
            code = error.get("code")
            message = error.get("message", "unknown RPC error")
            if code in _RATE_LIMIT_RPC_CODES:
                raise RpcRateLimitError(message, status_code=response.status_code)
            raise RpcResponseError(message, rpc_code=code)
        return data.get("result")

    # -- public API methods ---------------------------------------------------

    async def get_transaction(
        self, signature: str, commitment: str = "confirmed"
    ) -> dict[str, Any] | None:
        """getTransaction: full transaction with token balance snapshots, or None."""
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_slot(self, commitment: str = "confirmed") -> int:
        """getSlot: current network height, used as a liveness check."""
        return int(await self._call("getSlot", [{"commitment": commitment}]))

    async def get_signature_statuses(
        self, signatures: list[str]
    ) -> list[dict[str, Any] | None]:
        """getSignatureStatuses: confirmation status per signature."""
        result = await self._call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": True}],
        )
        return list((result or {}).get("value", []))

    async def wait_for_confirmation(
        self,
        signature: str,
        timeout_secs: float = 60.0,
        poll_interval_secs: float = 2.0,
        commitment: str = "confirmed",
    ) -> dict[str, Any]:
        """Poll until *signature* reaches *commitment*. Raises RpcTimeoutError."""
        wanted = ("confirmed", "finalized") if commitment == "confirmed" else ("finalized",)
        deadline = time.monotonic() + timeout_secs
        while True:
            statuses = await self.get_signature_statuses([signature])
            status = statuses[0] if statuses else None
            if status is not None:
                if status.get("err"):
                    raise RpcResponseError(f"Transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in wanted:
                    return status
            if time.monotonic() >= deadline:
                raise RpcTimeoutError(
                    f"Transaction {signature} not {commitment} after {timeout_secs}s"
                )
            await asyncio.sleep(poll_interval_secs)

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> SolanaRpcClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
