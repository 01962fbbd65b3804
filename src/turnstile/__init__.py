"""Turnstile: pay-per-call gating for agent tools.

Verifies Solana USDC micropayments referenced by transaction signature,
with replay protection, multi-endpoint RPC failover and metrics.
"""

__version__ = "0.1.0"

from turnstile.config import TurnstileConfig
from turnstile.errors import PaymentError, PaymentErrorCode
from turnstile.gateway import RateLimiter, RpcGateway
from turnstile.monitor import PaymentMonitor
from turnstile.pricing import FixedPrice, PercentagePrice, PriceCalculator, TieredPrice
from turnstile.replay_cache import CacheEntry, ReplayCache
from turnstile.rpc_client import RpcError, SolanaRpcClient
from turnstile.service import PaymentRequirement, PaymentService, VerificationResult
from turnstile.verifier import TokenTransfer, TransferVerifier
from turnstile.backends import MemoryBackend, RedisBackend

__all__ = [
    "TurnstileConfig",
    "PaymentError",
    "PaymentErrorCode",
    "RateLimiter",
    "RpcGateway",
    "PaymentMonitor",
    "FixedPrice",
    "PercentagePrice",
    "PriceCalculator",
    "TieredPrice",
    "CacheEntry",
    "ReplayCache",
    "RpcError",
    "SolanaRpcClient",
    "PaymentRequirement",
    "PaymentService",
    "VerificationResult",
    "TokenTransfer",
    "TransferVerifier",
    "MemoryBackend",
    "RedisBackend",
]
