"""Payment verification failures, one exception class per failure kind.

Every class carries a machine-readable ``code``, a human-readable
``message`` and a ``details`` dict with enough context for an agent to
self-correct. ``to_envelope()`` renders the structured error returned
across the tool-call boundary.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any


class PaymentErrorCode(str, Enum):
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    INSUFFICIENT_AMOUNT = "INSUFFICIENT_AMOUNT"
    WRONG_RECIPIENT = "WRONG_RECIPIENT"
    WRONG_TOKEN = "WRONG_TOKEN"
    EXPIRED_PAYMENT = "EXPIRED_PAYMENT"
    REPLAY_ATTACK = "REPLAY_ATTACK"
    RPC_ERROR = "RPC_ERROR"
    VERIFICATION_TIMEOUT = "VERIFICATION_TIMEOUT"


TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"


def _usdc(amount: Decimal) -> str:
    return f"{amount} USDC"


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class PaymentError(Exception):
    """Base class for all typed payment failures."""

    code: PaymentErrorCode

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def user_message(self) -> str:
        """Return an actionable explanation for the calling agent."""
        return self.message

    def to_envelope(self) -> dict[str, Any]:
        return {
            "error": self.code.value,
            "message": self.message,
            "hint": self.user_message(),
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Failure kinds
# ---------------------------------------------------------------------------


class PaymentRequiredError(PaymentError):
    code = PaymentErrorCode.PAYMENT_REQUIRED

    def __init__(self, tool_id: str, requirement: dict[str, Any],
                 instructions: list[str], example: dict[str, str]) -> None:
        super().__init__(
            f"Payment of {requirement['amount']} USDC required for {tool_id}",
            {"payment": requirement, "instructions": instructions, "example": example},
        )
        self.tool_id = tool_id


class InvalidSignatureError(PaymentError):
    code = PaymentErrorCode.INVALID_SIGNATURE

    def __init__(self, signature: str) -> None:
        super().__init__(
            "Invalid transaction signature format",
            {
                "signature": signature,
                "expected_format": "base58 string, 87-88 characters",
            },
        )
        self.signature = signature

    def user_message(self) -> str:
        return (
            "Invalid transaction signature format. Please ensure you're "
            "providing a valid Solana transaction signature."
        )


class TransactionNotFoundError(PaymentError):
    code = PaymentErrorCode.TRANSACTION_NOT_FOUND

    def __init__(self, signature: str, reason: str | None = None) -> None:
        details: dict[str, Any] = {
            "signature": signature,
            "possible_reasons": [
                "Transaction not yet confirmed (wait a few seconds)",
                "Invalid signature",
                "Transaction on different network (check devnet vs mainnet)",
                "Transaction failed or dropped",
            ],
        }
        if reason:
            details["reason"] = reason
        super().__init__("Transaction not found on Solana", details)
        self.signature = signature

    def user_message(self) -> str:
        return (
            "Transaction not found on Solana. It may not be confirmed yet "
            "(wait a few seconds and try again), the signature may be wrong, "
            "or it was sent on a different network."
        )


class InsufficientAmountError(PaymentError):
    code = PaymentErrorCode.INSUFFICIENT_AMOUNT

    def __init__(self, expected: Decimal, actual: Decimal) -> None:
        self.expected = expected
        self.actual = actual
        self.shortfall = expected - actual
        super().__init__(
            "Insufficient payment amount",
            {
                "expected": _usdc(expected),
                "actual": _usdc(actual),
                "shortfall": _usdc(self.shortfall),
                "hint": "Send a new payment for the full amount",
            },
        )

    def user_message(self) -> str:
        return (
            f"Insufficient payment amount. Expected: {_usdc(self.expected)}, "
            f"Received: {_usdc(self.actual)}"
        )


class WrongRecipientError(PaymentError):
    code = PaymentErrorCode.WRONG_RECIPIENT

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            "Payment sent to wrong recipient",
            {"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual

    def user_message(self) -> str:
        return (
            f"Payment sent to wrong recipient. Expected: {self.expected}, "
            f"Actual: {self.actual}"
        )


class WrongTokenError(PaymentError):
    code = PaymentErrorCode.WRONG_TOKEN

    def __init__(self, expected_mint: str) -> None:
        super().__init__(
            "No USDC transfer found in transaction",
            {
                "expected_mint": expected_mint,
                "hint": "Ensure you are sending USDC tokens to the correct recipient",
            },
        )
        self.expected_mint = expected_mint

    def user_message(self) -> str:
        return f"Payment must be made in USDC. Expected mint: {self.expected_mint}"


class ExpiredPaymentError(PaymentError):
    code = PaymentErrorCode.EXPIRED_PAYMENT

    def __init__(self, age_secs: float | None, max_age_secs: int) -> None:
        details: dict[str, Any] = {
            "max_age": f"{max_age_secs} seconds",
            "hint": "Create a new payment transaction",
        }
        if age_secs is None:
            message = "Transaction does not have a block time"
        else:
            message = "Payment transaction is too old"
            details["age"] = f"{round(age_secs)} seconds"
        super().__init__(message, details)
        self.age_secs = age_secs
        self.max_age_secs = max_age_secs

    def user_message(self) -> str:
        if self.age_secs is None:
            return "Payment transaction has no block time yet. Wait for confirmation."
        return (
            f"Payment transaction is too old. Maximum age: {self.max_age_secs} "
            f"seconds, Actual age: {round(self.age_secs)} seconds"
        )


class ReplayAttackError(PaymentError):
    code = PaymentErrorCode.REPLAY_ATTACK

    def __init__(self, signature: str, original_tool: str) -> None:
        super().__init__(
            "Payment signature already used",
            {
                "signature": signature,
                "originalTool": original_tool,
                "hint": "Each payment can only be used once. Please create a new payment.",
            },
        )
        self.signature = signature
        self.original_tool = original_tool

    def user_message(self) -> str:
        return (
            f"This payment signature has already been used for {self.original_tool}. "
            "Each payment can only be used once."
        )


class RpcCallError(PaymentError):
    code = PaymentErrorCode.RPC_ERROR

    def __init__(self, error: str, component: str = "rpc") -> None:
        super().__init__(
            "Failed to communicate with Solana RPC"
            if component == "rpc" else f"Payment backend unavailable: {component}",
            {
                "error": error,
                "component": component,
                "suggestion": "Check RPC endpoint configuration and network connectivity",
            },
        )

    def user_message(self) -> str:
        return "Failed to verify payment due to RPC connection issues. Please try again."


class VerificationTimeoutError(PaymentError):
    code = PaymentErrorCode.VERIFICATION_TIMEOUT

    def __init__(self, signature: str, timeout_secs: float) -> None:
        super().__init__(
            "Transaction verification timed out",
            {"signature": signature, "timeout": f"{timeout_secs} seconds"},
        )
        self.signature = signature

    def user_message(self) -> str:
        return (
            "Payment verification timed out. The transaction may still be "
            "pending confirmation; retry with the same signature."
        )


class CacheUnavailableError(Exception):
    """Replay cache backend failed while running fail-closed."""
