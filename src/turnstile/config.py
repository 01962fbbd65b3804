"""Turnstile configuration: plain frozen dataclass, no pydantic.

The host application constructs this from its own settings (env vars,
pydantic-settings, etc.) and passes it to the PaymentService.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from turnstile.constants import CACHE_PREFIX, CACHE_TTL_SECS, NETWORKS, USDC_DECIMALS


@dataclass(frozen=True)
class TurnstileConfig:
    recipient_address: str
    token_mint: str
    rpc_endpoints: tuple[str, ...]
    network: str = "devnet"
    token_decimals: int = USDC_DECIMALS
    commitment: str = "confirmed"
    # Replay cache
    cache_backend: str = "memory"  # memory | redis
    redis_url: str | None = None
    cache_ttl_secs: int = CACHE_TTL_SECS
    cache_prefix: str = CACHE_PREFIX
    cache_fail_open: bool = True
    cache_sweep_interval_secs: int = 60
    # Verification
    max_transaction_age_secs: int = 300
    verification_retry_attempts: int = 3
    verification_retry_delay_secs: float = 1.0
    verification_timeout_secs: float = 60.0
    # RPC rate limiting
    rpc_max_concurrent: int = 10
    rpc_reservoir: int = 50
    rpc_reservoir_refresh_secs: float = 1.0
    rpc_min_interval_secs: float = 0.02
    rpc_retry_base_delay_secs: float = 1.0
    rpc_health_interval_secs: int = 30
    # Monitoring
    monitoring_enabled: bool = True
    alert_failure_threshold: float = 0.1
    alert_rpc_error_threshold: int = 10
    alert_slow_verification_ms: float = 5000.0

    @classmethod
    def for_network(
        cls, network: str, recipient_address: str, **overrides: Any
    ) -> TurnstileConfig:
        """Build a config from the ``NETWORKS`` defaults for *network*.

        Raises ValueError for an unknown network or a missing recipient.
        """
        defaults = NETWORKS.get(network)
        if defaults is None:
            raise ValueError(
                f"Unknown network '{network}'. Expected one of: {', '.join(sorted(NETWORKS))}"
            )
        if not recipient_address:
            raise ValueError(f"Missing recipient address for {network}.")
        values: dict[str, Any] = {
            "network": network,
            "recipient_address": recipient_address,
            "rpc_endpoints": tuple(defaults["rpc_endpoints"]),  # type: ignore[arg-type]
            "token_mint": defaults["token_mint"],
            "commitment": defaults["commitment"],
        }
        values.update(overrides)
        if "rpc_endpoints" in overrides:
            values["rpc_endpoints"] = tuple(overrides["rpc_endpoints"])
        return cls(**values)
