"""
Reference priority ledger backed by the flat account balance.

Debits are a conditional decrement; credits are journaled with the token
type and an expiry for subscription tokens.
"""

import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, Optional

from token_ledger.core.errors import AccountNotFoundError, InsufficientTokensError
from token_ledger.core.features import Feature, TokenType

from .repository import LedgerRepository, utcnow

logger = logging.getLogger(__name__)


class SqlitePriorityLedger:
    """PriorityLedger implementation over LedgerRepository."""

    def __init__(self, repository: LedgerRepository, subscription_period_days: int = 30):
        self.repository = repository
        self.subscription_period_days = subscription_period_days

    def debit(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        feature: Feature,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        before = self.repository.balance_in(conn, user_id)
        if before is None:
            raise AccountNotFoundError(user_id)
        if not self.repository.try_decrement(conn, user_id, amount):
            raise InsufficientTokensError(current_balance=before, required=amount)
        after = before - amount
        self.repository.insert_transaction(
            conn,
            user_id=user_id,
            token_type=None,
            amount=-amount,
            balance_before=before,
            balance_after=after,
            source=f"{feature.value.lower()}:{action}",
            metadata=metadata,
        )
        return after

    def credit(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        token_type: TokenType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        before = self.repository.balance_in(conn, user_id)
        if before is None:
            raise AccountNotFoundError(user_id)
        after = self.repository.increment(conn, user_id, amount)

        # Only subscription tokens expire; the rest are kept until spent
        expires_at = None
        if token_type is TokenType.SUBSCRIPTION:
            expires_at = utcnow() + timedelta(days=self.subscription_period_days)

        self.repository.insert_transaction(
            conn,
            user_id=user_id,
            token_type=token_type,
            amount=amount,
            balance_before=before,
            balance_after=after,
            source=(metadata or {}).get("source", "token_addition"),
            expires_at=expires_at,
            metadata=metadata,
        )
        logger.debug("Credited %d %s tokens to %s", amount, token_type.value, user_id)
        return after
