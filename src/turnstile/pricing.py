"""Dynamic per-call pricing for paid tools.

Pure functions, no I/O. Amounts are ``Decimal`` USDC, quantized once to the
token's smallest unit (round-half-up) after the rule is evaluated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Union

from turnstile.constants import DEFAULT_TOOL_PRICE, USDC_DECIMALS

logger = logging.getLogger(__name__)


def _param_decimal(params: Mapping[str, Any] | None, name: str) -> Decimal:
    """Read a numeric call parameter as Decimal; missing or junk counts as 0."""
    if not params:
        return Decimal(0)
    raw = params.get(name)
    if raw is None or isinstance(raw, bool):
        return Decimal(0)
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return Decimal(0)
    return value if value.is_finite() else Decimal(0)


# ---------------------------------------------------------------------------
# Rule shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FixedPrice:
    """Constant amount per call."""

    amount: Decimal

    def evaluate(self, params: Mapping[str, Any] | None) -> Decimal:
        return self.amount


@dataclass(frozen=True)
class PercentagePrice:
    """``base + rate * params[field]``, clamped to [minimum, maximum]."""

    base: Decimal
    rate: Decimal
    field: str
    minimum: Decimal | None = None
    maximum: Decimal | None = None

    def evaluate(self, params: Mapping[str, Any] | None) -> Decimal:
        amount = self.base + self.rate * _param_decimal(params, self.field)
        if self.minimum is not None and amount < self.minimum:
            amount = self.minimum
        if self.maximum is not None and amount > self.maximum:
            amount = self.maximum
        return amount


@dataclass(frozen=True)
class TieredPrice:
    """Amount chosen by comparing ``params[field]`` to ascending thresholds.

    ``tiers`` is a sequence of ``(threshold, amount)`` pairs; the last tier
    whose threshold is <= the parameter wins. Below every threshold the
    ``base`` amount applies.
    """

    field: str
    base: Decimal
    tiers: tuple[tuple[Decimal, Decimal], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        thresholds = [t for t, _ in self.tiers]
        if thresholds != sorted(thresholds):
            raise ValueError("Tier thresholds must be ascending.")

    def evaluate(self, params: Mapping[str, Any] | None) -> Decimal:
        value = _param_decimal(params, self.field)
        amount = self.base
        for threshold, tier_amount in self.tiers:
            if value >= threshold:
                amount = tier_amount
            else:
                break
        return amount


PriceRule = Union[FixedPrice, PercentagePrice, TieredPrice]


DEFAULT_PRICING: dict[str, PriceRule] = {
    # $0.10 base + 2% of the bet amount, never below the base
    "executeBet": PercentagePrice(
        base=Decimal("0.10"), rate=Decimal("0.02"), field="amount", minimum=Decimal("0.10"),
    ),
    "analyzeMarket": FixedPrice(Decimal("0.05")),
    "getOdds": FixedPrice(Decimal("0.02")),
}


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class PriceCalculator:
    """Map ``(tool_id, params)`` to the USDC amount a call must pay.

    Unknown tools fall back to ``default_price`` so pricing never blocks
    tool discovery.
    """

    def __init__(
        self,
        rules: Mapping[str, PriceRule] | None = None,
        default_price: Decimal = DEFAULT_TOOL_PRICE,
        decimals: int = USDC_DECIMALS,
    ) -> None:
        self._rules = dict(DEFAULT_PRICING if rules is None else rules)
        self._default_price = default_price
        self._quantum = Decimal(1).scaleb(-decimals)

    def quantize(self, amount: Decimal) -> Decimal:
        return amount.quantize(self._quantum, rounding=ROUND_HALF_UP)

    def calculate_price(self, tool_id: str, params: Mapping[str, Any] | None = None) -> Decimal:
        rule = self._rules.get(tool_id)
        if rule is None:
            logger.debug("No pricing rule for %s; using default %s.", tool_id, self._default_price)
            return self.quantize(self._default_price)
        # a rule never asks for a negative payment
        return self.quantize(max(rule.evaluate(params), Decimal(0)))

    def describe(self, tool_id: str) -> str:
        """Short human-readable price text for tool listings."""
        rule = self._rules.get(tool_id)
        if isinstance(rule, FixedPrice):
            return f"${rule.amount} USDC"
        if isinstance(rule, PercentagePrice):
            pct = (rule.rate * 100).normalize()
            return f"${rule.base} base fee + {pct}% of {rule.field} in USDC"
        if isinstance(rule, TieredPrice):
            return f"tiered by {rule.field}, from ${rule.base} USDC"
        return f"${self._default_price} USDC"
