"""Paid tool gating: call_paid_tool, health_check_tool, payment_metrics_tool, list_tools."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Collection

from turnstile.constants import EXAMPLE_SIGNATURE, PAYMENT_SIGNATURE_PARAM
from turnstile.errors import TOOL_EXECUTION_ERROR, PaymentError, PaymentRequiredError
from turnstile.service import PaymentRequirement, PaymentService
from turnstile.tools.betting import PAID_TOOLS, SIDES, TIMEFRAMES, execute_tool

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]

_SIGNATURE_SCHEMA = {
    "type": "string",
    "description": (
        "Solana transaction signature for x402 payment (optional on first "
        "call, required after receiving PAYMENT_REQUIRED error)"
    ),
}


def build_payment_required(tool_id: str, requirement: PaymentRequirement) -> PaymentRequiredError:
    """PAYMENT_REQUIRED error with the requirement, steps and an example."""
    instructions = [
        "1. Create a USDC transfer transaction to the recipient wallet",
        f"2. Amount: {requirement.amount} USDC",
        f"3. Recipient: {requirement.recipient}",
        f"4. Network: {requirement.network}",
        "5. Sign and send the transaction to Solana",
        "6. Wait for confirmation (usually 2-5 seconds)",
        f"7. Call this tool again with {PAYMENT_SIGNATURE_PARAM} set to the transaction signature",
    ]
    return PaymentRequiredError(
        tool_id,
        requirement.to_dict(),
        instructions,
        {PAYMENT_SIGNATURE_PARAM: EXAMPLE_SIGNATURE},
    )


def _error_envelope(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"success": False, "error": code, "message": message, "details": details or {}}


async def call_paid_tool(
    service: PaymentService,
    tool_id: str,
    params: dict[str, Any] | None,
    executor: ToolExecutor = execute_tool,
    known_tools: Collection[str] = PAID_TOOLS,
) -> dict[str, Any]:
    """Gate one tool call on a verified payment, then run the tool body.

    Returns a success envelope ``{success, payment, result}`` or an error
    envelope ``{success: False, error, message, hint, details}``. A missing
    payment signature always yields PAYMENT_REQUIRED with the full
    requirement and step-by-step instructions.
    """
    params = dict(params or {})
    if tool_id not in known_tools:
        return _error_envelope(
            TOOL_EXECUTION_ERROR,
            f"Unknown tool: {tool_id}",
            {"available_tools": sorted(known_tools)},
        )

    requirement = service.get_payment_requirement(tool_id, params)
    signature = params.get(PAYMENT_SIGNATURE_PARAM)

    try:
        if not signature:
            raise build_payment_required(tool_id, requirement)
        verification = await service.verify_payment(
            signature, requirement.amount, tool_id, params,
        )
    except PaymentError as e:
        return {"success": False, **e.to_envelope()}
    except Exception as e:
        logger.exception("Unexpected failure verifying payment for %s.", tool_id)
        return _error_envelope(TOOL_EXECUTION_ERROR, str(e), {"tool": tool_id})

    tool_params = {k: v for k, v in params.items() if k != PAYMENT_SIGNATURE_PARAM}
    try:
        result = await executor(tool_id, tool_params)
    except Exception as e:
        logger.warning("Tool %s failed after payment %s: %s", tool_id, signature, e)
        return _error_envelope(
            TOOL_EXECUTION_ERROR,
            str(e),
            {
                "tool": tool_id,
                "payment_signature": signature,
                "hint": (
                    "Payment is bound to this tool; retry with the same "
                    f"{PAYMENT_SIGNATURE_PARAM} after fixing the parameters."
                ),
            },
        )

    return {
        "success": True,
        "payment": {
            "verified": True,
            "cached": verification.cached,
            "amount": str(requirement.amount),
            "signature": signature,
        },
        "result": result,
    }


async def health_check_tool(service: PaymentService) -> dict[str, Any]:
    """Report RPC, cache and payment metrics health. Free, no payment required."""
    health = await service.health_check()
    return {
        "status": "healthy" if health["healthy"] else "unhealthy",
        "rpc": health["details"],
        "payment": {
            "metrics": service.get_metrics(),
            "cache": health["details"].get("cache"),
        },
    }


async def payment_metrics_tool(
    service: PaymentService, window_ms: float | None = None
) -> dict[str, Any]:
    """Payment metrics: lifetime or over the last *window_ms*, plus exposition text."""
    monitor = service.monitor
    metrics = (
        monitor.get_windowed_metrics(window_ms) if window_ms else monitor.get_metrics()
    )
    return {
        "metrics": metrics.to_dict(),
        "error_breakdown": monitor.get_error_breakdown(),
        "exposition": service.export_metrics_text(),
    }


def list_tools(service: PaymentService) -> list[dict[str, Any]]:
    """Tool catalog with price text taken from the live pricing rules."""
    pricing = service.pricing
    return [
        {
            "name": "executeBet",
            "description": (
                "Execute a bet on a market.\n\n"
                f"PAYMENT REQUIRED: {pricing.describe('executeBet')}.\n\n"
                "On first call without payment, you will receive payment instructions. "
                f"Then call again with {PAYMENT_SIGNATURE_PARAM}."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "market": {"type": "string", "description": "Market identifier, e.g. NBA-LAL-vs-GSW"},
                    "amount": {"type": "number", "description": "Bet amount in USD (must be positive)"},
                    "side": {"type": "string", "enum": list(SIDES)},
                    PAYMENT_SIGNATURE_PARAM: _SIGNATURE_SCHEMA,
                },
                "required": ["market", "amount", "side"],
            },
        },
        {
            "name": "analyzeMarket",
            "description": (
                "Analyze a betting market: trends, statistics, recommendations.\n\n"
                f"PAYMENT REQUIRED: {pricing.describe('analyzeMarket')}."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "market": {"type": "string"},
                    "timeframe": {"type": "string", "enum": list(TIMEFRAMES)},
                    PAYMENT_SIGNATURE_PARAM: _SIGNATURE_SCHEMA,
                },
                "required": ["market", "timeframe"],
            },
        },
        {
            "name": "getOdds",
            "description": (
                "Get current odds, spreads and volume for a market.\n\n"
                f"PAYMENT REQUIRED: {pricing.describe('getOdds')}."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "market": {"type": "string"},
                    PAYMENT_SIGNATURE_PARAM: _SIGNATURE_SCHEMA,
                },
                "required": ["market"],
            },
        },
        {
            "name": "healthCheck",
            "description": "Server health and payment metrics. NO PAYMENT REQUIRED.",
            "inputSchema": {"type": "object", "properties": {}, "required": []},
        },
    ]
