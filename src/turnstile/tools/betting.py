"""Simulated betting tool bodies run after a payment clears.

No real market integration: odds, trends and statistics are random.
Parameter validation is real and raises ValueError.
"""

from __future__ import annotations

import random
import uuid
from datetime import datetime, timezone
from typing import Any

SIDES = ("home", "away", "draw")
TIMEFRAMES = ("1h", "24h", "7d")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def market_odds(market: str) -> dict[str, float]:
    """Odds that sum to a little over 100% implied probability."""
    base = random.random() * 0.5 + 1.5
    return {
        "home": round(base + random.random() * 0.5, 2),
        "away": round(base + random.random() * 0.5, 2),
        "draw": round(base + random.random() + 1.0, 2),
    }


def _trend() -> dict[str, Any]:
    return {
        "direction": random.choice(("bullish", "bearish", "neutral")),
        "strength": random.random(),
        "confidence": random.random(),
    }


def execute_bet(params: dict[str, Any]) -> dict[str, Any]:
    market = params.get("market")
    amount = params.get("amount")
    side = params.get("side")
    if not market or amount is None or not side:
        raise ValueError("Missing required parameters: market, amount, side")
    if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
        raise ValueError("Bet amount must be positive")
    if side not in SIDES:
        raise ValueError(f"Invalid side. Must be one of: {', '.join(SIDES)}")

    odds = market_odds(market)
    return {
        "bet_id": f"bet_{uuid.uuid4().hex[:12]}",
        "market": market,
        "amount": amount,
        "side": side,
        "odds": odds[side],
        "potential_payout": round(amount * odds[side], 2),
        "status": "pending",
        "timestamp": _now(),
    }


def analyze_market(params: dict[str, Any]) -> dict[str, Any]:
    market = params.get("market")
    timeframe = params.get("timeframe")
    if not market or not timeframe:
        raise ValueError("Missing required parameters: market, timeframe")
    if timeframe not in TIMEFRAMES:
        raise ValueError(f"Invalid timeframe. Must be one of: {', '.join(TIMEFRAMES)}")

    return {
        "market": market,
        "timeframe": timeframe,
        "timestamp": _now(),
        "trends": {side: _trend() for side in SIDES},
        "statistics": {
            "volume": random.randint(0, 1_000_000),
            "volatility": random.random() * 0.5,
            "momentum": (random.random() - 0.5) * 2,
        },
        "recommendations": {
            "confidence": random.random(),
            "suggestion": random.choice(SIDES),
        },
        "price_movement": {side: (random.random() - 0.5) * 0.2 for side in SIDES},
    }


def get_odds(params: dict[str, Any]) -> dict[str, Any]:
    market = params.get("market")
    if not market:
        raise ValueError("Missing required parameter: market")
    now = _now()
    return {
        "market": market,
        "timestamp": now,
        "odds": market_odds(market),
        "spread": {"home": random.random() * 2 - 1, "away": random.random() * 2 - 1},
        "total_volume": random.randint(0, 1_000_000),
        "last_update": now,
    }


_HANDLERS = {
    "executeBet": execute_bet,
    "analyzeMarket": analyze_market,
    "getOdds": get_odds,
}

PAID_TOOLS = frozenset(_HANDLERS)


async def execute_tool(tool_id: str, params: dict[str, Any]) -> dict[str, Any]:
    """Run a paid tool body. Raises ValueError for unknown tools or bad params."""
    handler = _HANDLERS.get(tool_id)
    if handler is None:
        raise ValueError(f"Unknown tool: {tool_id}")
    return handler(params)
