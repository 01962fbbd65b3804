"""Tests for PaymentService: the cache/verify/bind pipeline and error folding."""

import asyncio
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock

from turnstile.backends import MemoryBackend
from turnstile.config import TurnstileConfig
from turnstile.errors import (
    InvalidSignatureError,
    PaymentErrorCode,
    ReplayAttackError,
    RpcCallError,
    VerificationTimeoutError,
    WrongRecipientError,
)
from turnstile.gateway import RateLimiter, RpcGateway
from turnstile.replay_cache import CacheEntry, ReplayCache
from turnstile.rpc_client import RpcRateLimitError, RpcTimeoutError
from turnstile.service import PaymentService

NOW = 1_700_000_000
SIG = "5" + "K" * 87
MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
RECIPIENT = "RecipientWa11et111111111111111111111111111"
SENDER = "SenderWa11et11111111111111111111111111111"
URLS = ("https://rpc-a", "https://rpc-b", "https://rpc-c")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _balance(index: int, owner: str, raw: int) -> dict:
    return {
        "accountIndex": index,
        "mint": MINT,
        "owner": owner,
        "uiTokenAmount": {"amount": str(raw), "decimals": 6},
    }


def _transaction(raw: int = 50_000, recipient: str = RECIPIENT) -> dict:
    return {
        "blockTime": NOW - 10,
        "meta": {
            "err": None,
            "preTokenBalances": [_balance(0, SENDER, 1_000_000), _balance(1, recipient, 0)],
            "postTokenBalances": [
                _balance(0, SENDER, 1_000_000 - raw),
                _balance(1, recipient, raw),
            ],
        },
    }


def _make_config(**overrides) -> TurnstileConfig:
    values = dict(
        rpc_endpoints=URLS,
        verification_retry_delay_secs=0,
        rpc_retry_base_delay_secs=0,
        rpc_min_interval_secs=0,
        rpc_health_interval_secs=0,
        cache_sweep_interval_secs=0,
    )
    values.update(overrides)
    return TurnstileConfig.for_network("devnet", RECIPIENT, **values)


def _make_service(transaction=None, side_effect=None, cache=None, **overrides):
    """PaymentService over mocked RPC clients; returns (service, clients)."""
    config = _make_config(**overrides)
    clients: dict = {}

    def factory(url: str) -> AsyncMock:
        client = AsyncMock()
        if side_effect is not None:
            client.get_transaction = AsyncMock(side_effect=side_effect)
        else:
            client.get_transaction = AsyncMock(return_value=transaction)
        client.get_slot = AsyncMock(return_value=250_000_000)
        client.close = AsyncMock()
        clients[url] = client
        return client

    gateway = RpcGateway(
        config.rpc_endpoints,
        limiter=RateLimiter(min_interval_secs=0),
        retry_base_delay_secs=0,
        health_interval_secs=0,
        client_factory=factory,
    )
    service = PaymentService(config, gateway=gateway, cache=cache, clock=lambda: NOW)
    return service, clients


def _rpc_calls(clients: dict) -> int:
    return sum(c.get_transaction.await_count for c in clients.values())


def _broken_backend() -> AsyncMock:
    backend = AsyncMock()
    backend.get = AsyncMock(side_effect=ConnectionError("redis down"))
    backend.add = AsyncMock(side_effect=ConnectionError("redis down"))
    return backend


# ---------------------------------------------------------------------------
# Fresh verification
# ---------------------------------------------------------------------------


class TestVerifyFresh:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        service, clients = _make_service(_transaction())
        result = await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert result.valid is True
        assert result.cached is False
        assert result.amount == Decimal("0.05")
        assert result.transfer is not None and result.transfer.sender == SENDER
        assert _rpc_calls(clients) == 1
        m = service.get_metrics()
        assert m["successful_verifications"] == 1
        assert m["cache_misses"] == 1
        assert m["total_amount"] == "0.050000"

    @pytest.mark.asyncio
    async def test_accepts_string_amount(self) -> None:
        service, _ = _make_service(_transaction())
        result = await service.verify_payment(SIG, "0.05", "analyzeMarket")
        assert result.valid

    @pytest.mark.asyncio
    async def test_binds_signature_to_tool_without_signature_param(self) -> None:
        cache = ReplayCache(MemoryBackend(sweep_interval_secs=0))
        service, _ = _make_service(_transaction(), cache=cache)
        await service.verify_payment(
            SIG, Decimal("0.05"), "analyzeMarket",
            {"market": "NBA", "timeframe": "24h", "x402_payment_signature": SIG},
        )
        entry = await cache.get(SIG)
        assert entry is not None
        assert entry.tool_id == "analyzeMarket"
        assert entry.amount == Decimal("0.05")
        assert entry.verified_at == NOW
        assert entry.params == {"market": "NBA", "timeframe": "24h"}

    @pytest.mark.asyncio
    async def test_failed_verification_is_not_cached(self) -> None:
        cache = ReplayCache(MemoryBackend(sweep_interval_secs=0))
        service, _ = _make_service(_transaction(recipient="Mallory"), cache=cache)
        with pytest.raises(WrongRecipientError):
            await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert await cache.get(SIG) is None
        assert service.monitor.get_error_breakdown() == {"WRONG_RECIPIENT": 1}


# ---------------------------------------------------------------------------
# Syntax gate
# ---------------------------------------------------------------------------


class TestSignatureGate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("sig", ["", "abc", "0" * 88])
    async def test_invalid_signature_skips_rpc(self, sig) -> None:
        service, clients = _make_service(_transaction())
        with pytest.raises(InvalidSignatureError) as exc_info:
            await service.verify_payment(sig, Decimal("0.05"), "getOdds")
        assert exc_info.value.code is PaymentErrorCode.INVALID_SIGNATURE
        assert _rpc_calls(clients) == 0
        assert service.get_metrics()["failed_verifications"] == 1


# ---------------------------------------------------------------------------
# Cache hits and replay
# ---------------------------------------------------------------------------


class TestCacheAndReplay:
    @pytest.mark.asyncio
    async def test_second_call_same_tool_is_cached(self) -> None:
        service, clients = _make_service(_transaction())
        await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        result = await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert result.cached is True
        assert result.amount == Decimal("0.05")
        assert _rpc_calls(clients) == 1
        m = service.get_metrics()
        assert m["cache_hits"] == 1
        # amount counted once, for the fresh verification only
        assert m["total_amount"] == "0.050000"

    @pytest.mark.asyncio
    async def test_prepopulated_cache_short_circuits(self) -> None:
        cache = ReplayCache(MemoryBackend(sweep_interval_secs=0))
        await cache.set(SIG, CacheEntry("getOdds", Decimal("0.02"), NOW - 5))
        service, clients = _make_service(_transaction(), cache=cache)
        result = await service.verify_payment(SIG, Decimal("0.02"), "getOdds")
        assert result.cached is True
        assert _rpc_calls(clients) == 0

    @pytest.mark.asyncio
    async def test_replay_for_other_tool_rejected(self) -> None:
        service, clients = _make_service(_transaction())
        await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        with pytest.raises(ReplayAttackError) as exc_info:
            await service.verify_payment(SIG, Decimal("0.02"), "getOdds")
        assert exc_info.value.details["originalTool"] == "analyzeMarket"
        assert _rpc_calls(clients) == 1

    @pytest.mark.asyncio
    async def test_unreadable_binding_is_never_rebound(self) -> None:
        backend = MemoryBackend(sweep_interval_secs=0)
        await backend.set(f"x402:payment:{SIG}", "not-json", 3600)
        service, _ = _make_service(_transaction(), cache=ReplayCache(backend))
        for tool_id, amount in (("analyzeMarket", "0.05"), ("getOdds", "0.02")):
            with pytest.raises(ReplayAttackError) as exc_info:
                await service.verify_payment(SIG, Decimal(amount), tool_id)
            assert exc_info.value.details["originalTool"] == "unknown"
        assert service.get_metrics()["successful_verifications"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_for_different_tools(self) -> None:
        async def slow_lookup(signature, commitment):
            await asyncio.sleep(0)
            return _transaction()

        service, clients = _make_service(side_effect=slow_lookup)
        results = await asyncio.gather(
            service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket"),
            service.verify_payment(SIG, Decimal("0.02"), "getOdds"),
            return_exceptions=True,
        )
        # both missed the cache and verified on-chain; only one may bind
        assert _rpc_calls(clients) == 2
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, ReplayAttackError)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert successes[0].cached is False

    @pytest.mark.asyncio
    async def test_concurrent_calls_for_same_tool(self) -> None:
        async def slow_lookup(signature, commitment):
            await asyncio.sleep(0)
            return _transaction()

        service, _ = _make_service(side_effect=slow_lookup)
        results = await asyncio.gather(
            service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket"),
            service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket"),
        )
        assert sorted(r.cached for r in results) == [False, True]


# ---------------------------------------------------------------------------
# Error folding
# ---------------------------------------------------------------------------


class TestErrorFolding:
    @pytest.mark.asyncio
    async def test_all_endpoints_rate_limited(self) -> None:
        service, clients = _make_service(side_effect=RpcRateLimitError("429 Too Many Requests"))
        with pytest.raises(RpcCallError) as exc_info:
            await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert exc_info.value.code is PaymentErrorCode.RPC_ERROR
        assert "429" in exc_info.value.details["error"]
        for client in clients.values():
            assert client.get_transaction.await_count == 1
            client.get_slot = AsyncMock(side_effect=RpcRateLimitError("429"))
        endpoints = (await service.health_check())["details"]["endpoints"]
        assert all(ok is False for ok in endpoints.values())
        assert service.get_metrics()["rpc_errors"] == 1

    @pytest.mark.asyncio
    async def test_rpc_timeout_becomes_verification_timeout(self) -> None:
        service, _ = _make_service(side_effect=RpcTimeoutError("read timed out"))
        with pytest.raises(VerificationTimeoutError):
            await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")

    @pytest.mark.asyncio
    async def test_overall_deadline(self) -> None:
        async def hang(signature, commitment):
            await asyncio.sleep(5)

        service, _ = _make_service(side_effect=hang, verification_timeout_secs=0.05)
        with pytest.raises(VerificationTimeoutError) as exc_info:
            await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert exc_info.value.code is PaymentErrorCode.VERIFICATION_TIMEOUT
        assert service.monitor.get_error_breakdown() == {"VERIFICATION_TIMEOUT": 1}
        await service.shutdown()
        assert service.abandoned_verifications == 0

    @pytest.mark.asyncio
    async def test_timed_out_lookup_is_abandoned_not_cancelled(self) -> None:
        async def slow(signature, commitment):
            await asyncio.sleep(0.1)
            return _transaction()

        cache = ReplayCache(MemoryBackend(sweep_interval_secs=0))
        service, _ = _make_service(side_effect=slow, cache=cache, verification_timeout_secs=0.02)
        with pytest.raises(VerificationTimeoutError):
            await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        await asyncio.sleep(0.2)
        # the background verification ran to completion and bound the signature
        entry = await cache.get(SIG)
        assert entry is not None and entry.tool_id == "analyzeMarket"
        assert service.abandoned_verifications == 0

    @pytest.mark.asyncio
    async def test_cache_outage_fail_open_still_verifies(self) -> None:
        cache = ReplayCache(_broken_backend(), fail_open=True)
        service, clients = _make_service(_transaction(), cache=cache)
        result = await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert result.valid is True
        assert _rpc_calls(clients) == 1

    @pytest.mark.asyncio
    async def test_cache_outage_fail_closed_is_rpc_error(self) -> None:
        cache = ReplayCache(_broken_backend(), fail_open=False)
        service, clients = _make_service(_transaction(), cache=cache)
        with pytest.raises(RpcCallError) as exc_info:
            await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert exc_info.value.details["component"] == "replay_cache"
        assert _rpc_calls(clients) == 0


# ---------------------------------------------------------------------------
# Pricing, requirements, diagnostics, lifecycle
# ---------------------------------------------------------------------------


class TestRequirementsAndDiagnostics:
    def test_payment_requirement(self) -> None:
        service, _ = _make_service()
        req = service.get_payment_requirement("executeBet", {"amount": 100})
        assert req.amount == Decimal("2.10")
        assert req.recipient == RECIPIENT
        assert req.token_mint == MINT
        assert req.network == "devnet"
        assert req.to_dict()["amount"] == "2.100000"

    def test_requirement_for_unknown_tool(self) -> None:
        service, _ = _make_service()
        assert service.get_payment_requirement("nope").amount == Decimal("0.01")

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        service, _ = _make_service()
        health = await service.health_check()
        assert health["healthy"] is True
        details = health["details"]
        assert details["network"] == "devnet"
        assert details["current_slot"] == 250_000_000
        assert details["cache"]["backend"] == "MemoryBackend"
        assert set(details["endpoints"]) == set(URLS)
        assert "metrics" in details

    @pytest.mark.asyncio
    async def test_health_check_unhealthy(self) -> None:
        service, clients = _make_service()
        for client in clients.values():
            client.get_slot = AsyncMock(side_effect=RpcRateLimitError("429"))
        health = await service.health_check()
        assert health["healthy"] is False
        assert "429" in health["details"]["error"]

    @pytest.mark.asyncio
    async def test_export_metrics_text(self) -> None:
        service, _ = _make_service(_transaction())
        await service.verify_payment(SIG, Decimal("0.05"), "analyzeMarket")
        assert "payment_verifications_success_total 1" in service.export_metrics_text()

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown(self) -> None:
        service, clients = _make_service()
        await service.initialize()
        await service.shutdown()
        for client in clients.values():
            client.close.assert_awaited_once()
