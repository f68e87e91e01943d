"""
Balance sufficiency pre-check.

Advisory only: two concurrent callers can both pass this check. The
authoritative non-negative guarantee is the conditional debit in the
priority ledger, which may still reject after this check passed.
"""

from dataclasses import dataclass

from token_ledger.storage.repository import LedgerRepository


@dataclass(frozen=True)
class BalanceCheck:
    """Result of a sufficiency check."""
    sufficient: bool
    current_balance: int
    required: int
    exists: bool = True

    def to_dict(self) -> dict:
        return {
            "sufficient": self.sufficient,
            "currentBalance": self.current_balance,
            "required": self.required,
        }


class BalanceGuard:
    """Read-only sufficiency check against the stored balance."""

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def sufficient(self, user_id: str, required_total: int) -> BalanceCheck:
        """Check whether a user's balance covers required_total.

        A missing account reads as a zero balance that is never sufficient.
        """
        account = self.repository.get_account(user_id)
        if account is None:
            return BalanceCheck(
                sufficient=False,
                current_balance=0,
                required=required_total,
                exists=False
            )
        return BalanceCheck(
            sufficient=account.balance >= required_total,
            current_balance=account.balance,
            required=required_total
        )
