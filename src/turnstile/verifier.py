"""On-chain verification of a USDC transfer referenced by a transaction signature."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from turnstile.constants import AMOUNT_TOLERANCE, SIGNATURE_PATTERN
from turnstile.errors import (
    ExpiredPaymentError,
    InsufficientAmountError,
    InvalidSignatureError,
    TransactionNotFoundError,
    WrongRecipientError,
    WrongTokenError,
)
from turnstile.gateway import RpcGateway

logger = logging.getLogger(__name__)

_SIGNATURE_RE = re.compile(SIGNATURE_PATTERN)


def is_valid_signature(signature: object) -> bool:
    """Syntactic check only: base58 alphabet, 87-88 characters."""
    return isinstance(signature, str) and _SIGNATURE_RE.fullmatch(signature) is not None


@dataclass(frozen=True)
class TokenTransfer:
    """The asset movement observed in one transaction."""

    signature: str
    amount: Decimal
    sender: str
    recipient: str
    timestamp: int  # block time, unix seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "amount": str(self.amount),
            "sender": self.sender,
            "recipient": self.recipient,
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Balance-delta parsing
# ---------------------------------------------------------------------------


def _token_amount(balance: dict[str, Any]) -> Decimal:
    """Exact balance from raw base units + decimals, falling back to UI strings."""
    ui = balance.get("uiTokenAmount") or {}
    raw = ui.get("amount")
    decimals = ui.get("decimals")
    try:
        if raw is not None and decimals is not None:
            return Decimal(str(raw)).scaleb(-int(decimals))
        ui_amount = ui.get("uiAmountString", ui.get("uiAmount"))
        return Decimal(str(ui_amount)) if ui_amount is not None else Decimal(0)
    except (InvalidOperation, ValueError):
        return Decimal(0)


def extract_token_transfer(
    transaction: dict[str, Any], mint: str
) -> tuple[Decimal, str, str] | None:
    """Find the ``(amount, recipient, sender)`` of a *mint* transfer.

    The recipient is the first account whose *mint* balance increased. The
    sender is the account whose balance fell by the same amount, else the
    first account whose balance fell at all, else ``"unknown"``.
    """
    meta = transaction.get("meta") or {}
    pre = {
        b.get("accountIndex"): b
        for b in meta.get("preTokenBalances") or []
        if b.get("mint") == mint
    }
    post = {
        b.get("accountIndex"): b
        for b in meta.get("postTokenBalances") or []
        if b.get("mint") == mint
    }

    for index, after in post.items():
        before = _token_amount(pre[index]) if index in pre else Decimal(0)
        received = _token_amount(after) - before
        if received <= 0:
            continue

        sender = "unknown"
        for sender_index, sender_before in pre.items():
            sender_after = post.get(sender_index)
            if sender_after is None:
                continue
            delta = _token_amount(sender_after) - _token_amount(sender_before)
            if delta == -received:
                sender = str(sender_before.get("owner", "unknown"))
                break
            if delta < 0 and sender == "unknown":
                sender = str(sender_before.get("owner", "unknown"))
        return received, str(after.get("owner", "")), sender

    return None


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class TransferVerifier:
    """Check that a signature proves a fresh, sufficient USDC payment to us.

    Steps run in order and the first failing one raises its own
    PaymentError subclass: format, lookup, age, token, amount, recipient.
    """

    def __init__(
        self,
        gateway: RpcGateway,
        recipient: str,
        token_mint: str,
        commitment: str = "confirmed",
        max_age_secs: int = 300,
        retry_attempts: int = 3,
        retry_delay_secs: float = 1.0,
        tolerance: Decimal = AMOUNT_TOLERANCE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._recipient = recipient
        self._mint = token_mint
        self._commitment = commitment
        self._max_age = max_age_secs
        self._retry_attempts = max(retry_attempts, 1)
        self._retry_delay = retry_delay_secs
        self._tolerance = tolerance
        self._clock = clock

    async def fetch_transaction(self, signature: str) -> dict[str, Any]:
        """Look the transaction up, waiting out "not visible yet" races.

        RPC failures propagate from the gateway once its own retries are
        spent; a transaction still missing after ``retry_attempts`` lookups
        raises TransactionNotFoundError.
        """
        for attempt in range(self._retry_attempts):
            transaction = await self._gateway.schedule_with_retry(
                lambda client: client.get_transaction(signature, self._commitment),
                max_retries=self._retry_attempts,
            )
            if transaction:
                return transaction
            if attempt < self._retry_attempts - 1:
                await asyncio.sleep(self._retry_delay * (attempt + 1))
        raise TransactionNotFoundError(signature)

    async def verify(
        self,
        signature: str,
        expected_amount: Decimal,
        recipient: str | None = None,
    ) -> TokenTransfer:
        if not is_valid_signature(signature):
            raise InvalidSignatureError(str(signature))

        transaction = await self.fetch_transaction(signature)

        meta = transaction.get("meta") or {}
        if meta.get("err"):
            raise TransactionNotFoundError(signature, reason=f"transaction failed: {meta['err']}")

        block_time = transaction.get("blockTime")
        if block_time is None:
            raise ExpiredPaymentError(None, self._max_age)
        age = self._clock() - block_time
        if age > self._max_age:
            raise ExpiredPaymentError(age, self._max_age)

        transfer = extract_token_transfer(transaction, self._mint)
        if transfer is None:
            raise WrongTokenError(self._mint)
        amount, observed_recipient, sender = transfer

        if amount < expected_amount - self._tolerance:
            raise InsufficientAmountError(expected_amount, amount)

        expected_recipient = recipient or self._recipient
        if observed_recipient != expected_recipient:
            raise WrongRecipientError(expected_recipient, observed_recipient)

        logger.debug("Verified %s USDC from %s in %s.", amount, sender, signature)
        return TokenTransfer(
            signature=signature,
            amount=amount,
            sender=sender,
            recipient=observed_recipient,
            timestamp=int(block_time),
        )
