"""PaymentService: single entry point that gates tool calls on verified payment.

Per call: syntax check → replay cache lookup → on-chain verification →
conditional cache write. Every failure surfaces as a PaymentError subclass;
transport and backend failures are folded into RPC_ERROR or
VERIFICATION_TIMEOUT here and never leak as raw exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping

from turnstile.backends import create_backend
from turnstile.config import TurnstileConfig
from turnstile.constants import PAYMENT_SIGNATURE_PARAM
from turnstile.errors import (
    CacheUnavailableError,
    InvalidSignatureError,
    PaymentError,
    ReplayAttackError,
    RpcCallError,
    VerificationTimeoutError,
)
from turnstile.gateway import RateLimiter, RpcGateway
from turnstile.monitor import PaymentMonitor
from turnstile.pricing import PriceCalculator
from turnstile.replay_cache import CacheEntry, ReplayCache
from turnstile.rpc_client import RpcError, RpcTimeoutError
from turnstile.verifier import TokenTransfer, TransferVerifier, is_valid_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRequirement:
    amount: Decimal
    recipient: str
    token_mint: str
    network: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "recipient": self.recipient,
            "token_mint": self.token_mint,
            "network": self.network,
            "description": self.description,
        }


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    cached: bool
    signature: str
    amount: Decimal | None = None
    transfer: TokenTransfer | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "valid": self.valid,
            "cached": self.cached,
            "signature": self.signature,
        }
        if self.amount is not None:
            result["amount"] = str(self.amount)
        if self.transfer is not None:
            result["transaction_details"] = self.transfer.to_dict()
        return result


class PaymentService:
    """Owns the replay cache, RPC gateway, verifier, pricing and monitor.

    Collaborators default to instances built from ``config`` and can be
    injected for tests or custom wiring.
    """

    def __init__(
        self,
        config: TurnstileConfig,
        *,
        cache: ReplayCache | None = None,
        gateway: RpcGateway | None = None,
        verifier: TransferVerifier | None = None,
        monitor: PaymentMonitor | None = None,
        pricing: PriceCalculator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._clock = clock
        self._cache = cache or ReplayCache(
            create_backend(config),
            ttl_secs=config.cache_ttl_secs,
            prefix=config.cache_prefix,
            fail_open=config.cache_fail_open,
        )
        self._gateway = gateway or RpcGateway(
            config.rpc_endpoints,
            limiter=RateLimiter(
                max_concurrent=config.rpc_max_concurrent,
                reservoir=config.rpc_reservoir,
                refresh_interval_secs=config.rpc_reservoir_refresh_secs,
                min_interval_secs=config.rpc_min_interval_secs,
            ),
            health_interval_secs=config.rpc_health_interval_secs,
            retry_base_delay_secs=config.rpc_retry_base_delay_secs,
            commitment=config.commitment,
        )
        self._verifier = verifier or TransferVerifier(
            self._gateway,
            recipient=config.recipient_address,
            token_mint=config.token_mint,
            commitment=config.commitment,
            max_age_secs=config.max_transaction_age_secs,
            retry_attempts=config.verification_retry_attempts,
            retry_delay_secs=config.verification_retry_delay_secs,
            clock=clock,
        )
        self._monitor = monitor or PaymentMonitor(
            failure_threshold=config.alert_failure_threshold,
            rpc_error_threshold=config.alert_rpc_error_threshold,
            slow_verification_ms=config.alert_slow_verification_ms,
            alerts_enabled=config.monitoring_enabled,
        )
        self._pricing = pricing or PriceCalculator(decimals=config.token_decimals)
        self._abandoned: set[asyncio.Future[VerificationResult]] = set()

    @property
    def monitor(self) -> PaymentMonitor:
        return self._monitor

    @property
    def pricing(self) -> PriceCalculator:
        return self._pricing

    @property
    def abandoned_verifications(self) -> int:
        """Timed-out verifications still running in the background."""
        return len(self._abandoned)

    # -- lifecycle ------------------------------------------------------------

    async def initialize(self) -> None:
        await self._cache.connect()
        await self._gateway.start_health_checks()
        logger.info(
            "Payment service initialized (network=%s, cache=%s).",
            self._config.network, self._cache.backend_name,
        )

    async def shutdown(self) -> None:
        for task in list(self._abandoned):
            task.cancel()
        if self._abandoned:
            await asyncio.gather(*self._abandoned, return_exceptions=True)
        await self._gateway.stop()
        await self._cache.close()
        logger.info("Payment service shut down.")

    # -- verification ---------------------------------------------------------

    async def verify_payment(
        self,
        signature: str,
        expected_amount: Decimal | str | float,
        tool_id: str,
        params: Mapping[str, Any] | None = None,
    ) -> VerificationResult:
        """Verify *signature* pays at least *expected_amount* for *tool_id*.

        Raises a PaymentError subclass on every classified failure.
        """
        started = time.monotonic()
        timeout = self._config.verification_timeout_secs
        task = asyncio.ensure_future(
            self._verify(signature, Decimal(str(expected_amount)), tool_id, params)
        )
        try:
            # shield: on timeout the lookup is abandoned, not cancelled
            result = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._abandon(task)
            error = VerificationTimeoutError(signature, timeout)
            self._record_failure(started, error)
            raise error from exc
        except PaymentError as exc:
            self._record_failure(started, exc)
            raise
        except RpcTimeoutError as exc:
            error = VerificationTimeoutError(signature, timeout)
            self._record_failure(started, error)
            raise error from exc
        except CacheUnavailableError as exc:
            self._monitor.record_rpc_error()
            error = RpcCallError(str(exc), component="replay_cache")
            self._record_failure(started, error)
            raise error from exc
        except (RpcError, OSError) as exc:
            self._monitor.record_rpc_error()
            error = RpcCallError(str(exc))
            self._record_failure(started, error)
            raise error from exc

        self._monitor.record_verification(
            True,
            self._elapsed_ms(started),
            result.cached,
            amount=None if result.cached else result.amount,
        )
        return result

    async def _verify(
        self,
        signature: str,
        expected_amount: Decimal,
        tool_id: str,
        params: Mapping[str, Any] | None,
    ) -> VerificationResult:
        if not is_valid_signature(signature):
            raise InvalidSignatureError(str(signature))

        cached = await self._cache.get(signature)
        if cached is not None:
            return self._resolve_cached(signature, cached, tool_id)

        transfer = await self._verifier.verify(signature, expected_amount)

        entry = CacheEntry(
            tool_id=tool_id,
            amount=transfer.amount,
            verified_at=self._clock(),
            verified=True,
            params=_strip_signature(params),
        )
        if not await self._cache.add(signature, entry):
            # A concurrent call bound this signature between our get and add
            winner = await self._cache.get(signature)
            if winner is None:
                # Key is held but unreadable; the original binding is unknown
                logger.warning("Signature %s is bound to an unreadable cache entry.", signature[:8])
                raise ReplayAttackError(signature, "unknown")
            return self._resolve_cached(signature, winner, tool_id)

        return VerificationResult(
            valid=True,
            cached=False,
            signature=signature,
            amount=transfer.amount,
            transfer=transfer,
        )

    def _abandon(self, task: asyncio.Future[VerificationResult]) -> None:
        self._abandoned.add(task)
        task.add_done_callback(self._reap_abandoned)

    def _reap_abandoned(self, task: asyncio.Future[VerificationResult]) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Abandoned verification ended with %r", exc)

    @staticmethod
    def _resolve_cached(signature: str, entry: CacheEntry, tool_id: str) -> VerificationResult:
        if entry.tool_id != tool_id:
            raise ReplayAttackError(signature, entry.tool_id)
        return VerificationResult(valid=True, cached=True, signature=signature, amount=entry.amount)

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.monotonic() - started) * 1000

    def _record_failure(self, started: float, error: PaymentError) -> None:
        logger.info("Payment verification failed: %s (%s)", error.code.value, error.message)
        self._monitor.record_verification(
            False, self._elapsed_ms(started), False, error_code=error.code.value,
        )

    # -- pricing --------------------------------------------------------------

    def calculate_price(self, tool_id: str, params: Mapping[str, Any] | None = None) -> Decimal:
        return self._pricing.calculate_price(tool_id, params)

    def get_payment_requirement(
        self, tool_id: str, params: Mapping[str, Any] | None = None
    ) -> PaymentRequirement:
        return PaymentRequirement(
            amount=self.calculate_price(tool_id, params),
            recipient=self._config.recipient_address,
            token_mint=self._config.token_mint,
            network=self._config.network,
            description=f"Payment for {tool_id}",
        )

    # -- diagnostics ----------------------------------------------------------

    async def health_check(self) -> dict[str, Any]:
        """Query the ledger and report cache, limiter and metrics state."""
        details: dict[str, Any] = {"network": self._config.network}
        healthy = False
        try:
            slot = await self._gateway.get_slot()
            details["current_slot"] = slot
            healthy = slot > 0
        except RpcError as e:
            details["error"] = str(e)
        details["endpoints"] = self._gateway.health_status()
        details["rate_limiter"] = self._gateway.stats()
        details["cache"] = (await self._cache.stats()).to_dict()
        details["metrics"] = self._monitor.get_metrics().to_dict()
        return {"healthy": healthy, "details": details}

    def get_metrics(self) -> dict[str, Any]:
        return self._monitor.get_metrics().to_dict()

    def export_metrics_text(self) -> str:
        return self._monitor.export_metrics_text()


def _strip_signature(params: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if params is None:
        return None
    return {k: v for k, v in params.items() if k != PAYMENT_SIGNATURE_PARAM}
