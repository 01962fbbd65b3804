"""Constants for Turnstile payment gating."""

from decimal import Decimal


# Solana signatures are base58, 64 bytes -> 87 or 88 characters.
SIGNATURE_PATTERN = r"^[1-9A-HJ-NP-Za-km-z]{87,88}$"

USDC_DECIMALS = 6
USDC_UNIT = Decimal(1).scaleb(-USDC_DECIMALS)  # 0.000001 USDC

# 1 micro-USDC absorbs rounding in uiAmount-style balances
AMOUNT_TOLERANCE = USDC_UNIT

DEFAULT_TOOL_PRICE = Decimal("0.01")

CACHE_PREFIX = "x402:payment:"
CACHE_TTL_SECS = 3600

PAYMENT_SIGNATURE_PARAM = "x402_payment_signature"
EXAMPLE_SIGNATURE = "5KxR7...9mJp"


NETWORKS: dict[str, dict[str, object]] = {
    "devnet": {
        "rpc_endpoints": ("https://api.devnet.solana.com",),
        "token_mint": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
        "commitment": "confirmed",
    },
    "mainnet": {
        "rpc_endpoints": (
            "https://api.mainnet-beta.solana.com",
            "https://rpc.ankr.com/solana",
        ),
        "token_mint": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        "commitment": "finalized",
    },
}
