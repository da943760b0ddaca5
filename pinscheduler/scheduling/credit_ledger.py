"""
Credit ledger adapter.

Subtracts publish credits from ``profiles.credits_remaining``.  The read and
write are two statements, so concurrent debits from unrelated flows may
interleave; the executor's ``credits_deducted`` flag is what guarantees a
job is charged at most once.
"""

import logging
from typing import Any

from pinscheduler.exceptions import ValidationError

logger = logging.getLogger(__name__)


class CreditLedger:
    """Debits credits through a backend exposing
    ``get_credits_remaining(owner)`` and ``set_credits_remaining(owner, value)``.
    """

    def __init__(self, backend: Any) -> None:
        self.backend = backend

    async def debit(self, owner: str, amount: int = 1) -> int:
        """Subtract ``amount`` credits, floored at zero.

        Args:
            owner: User whose balance is charged.
            amount: Credits to subtract (non-negative).

        Returns:
            The new balance.  A missing profile counts as a zero balance.
        """
        if amount < 0:
            raise ValidationError(f"debit amount must be >= 0, got {amount}")

        current = await self.backend.get_credits_remaining(owner)
        balance = max(0, (current or 0) - amount)
        await self.backend.set_credits_remaining(owner, balance)

        logger.info(
            "[LEDGER] Debited %d credit(s) from %s (%s -> %d)",
            amount,
            owner,
            current,
            balance,
        )
        return balance


__all__ = [
    "CreditLedger",
]
