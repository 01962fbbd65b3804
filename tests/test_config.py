"""Tests for TurnstileConfig construction."""

import dataclasses

import pytest

from turnstile.config import TurnstileConfig
from turnstile.constants import NETWORKS


class TestForNetwork:
    def test_devnet_defaults(self) -> None:
        cfg = TurnstileConfig.for_network("devnet", "Recipient111")
        assert cfg.network == "devnet"
        assert cfg.recipient_address == "Recipient111"
        assert cfg.token_mint == NETWORKS["devnet"]["token_mint"]
        assert cfg.commitment == "confirmed"
        assert cfg.rpc_endpoints == ("https://api.devnet.solana.com",)

    def test_mainnet_uses_finalized(self) -> None:
        cfg = TurnstileConfig.for_network("mainnet", "Recipient111")
        assert cfg.commitment == "finalized"
        assert len(cfg.rpc_endpoints) == 2

    def test_overrides_applied(self) -> None:
        cfg = TurnstileConfig.for_network(
            "devnet", "R", rpc_endpoints=["https://a", "https://b"], cache_ttl_secs=60,
        )
        assert cfg.rpc_endpoints == ("https://a", "https://b")
        assert cfg.cache_ttl_secs == 60

    def test_unknown_network(self) -> None:
        with pytest.raises(ValueError, match="Unknown network"):
            TurnstileConfig.for_network("testnet", "R")

    def test_missing_recipient(self) -> None:
        with pytest.raises(ValueError, match="Missing recipient"):
            TurnstileConfig.for_network("devnet", "")


class TestDefaults:
    def test_documented_defaults(self) -> None:
        cfg = TurnstileConfig.for_network("devnet", "R")
        assert cfg.cache_backend == "memory"
        assert cfg.cache_ttl_secs == 3600
        assert cfg.cache_prefix == "x402:payment:"
        assert cfg.cache_fail_open is True
        assert cfg.max_transaction_age_secs == 300
        assert cfg.verification_retry_attempts == 3
        assert cfg.verification_timeout_secs == 60.0
        assert cfg.rpc_max_concurrent == 10
        assert cfg.rpc_reservoir == 50
        assert cfg.rpc_min_interval_secs == 0.02
        assert cfg.rpc_health_interval_secs == 30
        assert cfg.alert_failure_threshold == 0.1
        assert cfg.alert_rpc_error_threshold == 10

    def test_frozen(self) -> None:
        cfg = TurnstileConfig.for_network("devnet", "R")
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.network = "mainnet"  # type: ignore[misc]
