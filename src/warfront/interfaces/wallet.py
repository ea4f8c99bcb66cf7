"""Wallet Protocol Interface.

The currency economy lives outside the combat core; battle rewards are paid
through this narrow contract.
"""

from typing import Protocol


class IWallet(Protocol):
    """Protocol for crediting and debiting a user's currency balance."""

    def credit(self, user_id: int, currency: str, amount: int, reason: str) -> None:
        """Add ``amount`` of ``currency`` to a user's balance.

        Args:
            user_id: Receiving user
            currency: Currency code (e.g. "gold")
            amount: Positive amount
            reason: Audit tag (e.g. "medal:battle_hero")
        """
        ...

    def debit(self, user_id: int, currency: str, amount: int, reason: str) -> None:
        """Remove ``amount`` of ``currency`` from a user's balance."""
        ...
