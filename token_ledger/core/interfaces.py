"""
Collaborator interfaces.

The core depends only on these protocols; concrete implementations live in
token_ledger.storage and token_ledger.core.events.
"""

import sqlite3
from typing import Any, Dict, Optional, Protocol

from .features import Feature, TokenType


class PriorityLedger(Protocol):
    """Atomic multi-bucket debit/credit primitive.

    Both methods run inside the caller's transaction so the balance change
    commits together with the caller's audit writes.
    """

    def debit(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        feature: Feature,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Debit amount and return the new balance.

        Raises:
            InsufficientTokensError: If the balance cannot cover amount at write time
            AccountNotFoundError: If the account does not exist
        """
        ...

    def credit(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        token_type: TokenType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Credit amount with the token type's expiry policy; return the new balance."""
        ...


class PermissionService(Protocol):
    """Authorization checks for admin operations."""

    def has_permission(self, actor_id: str, resource: str, action: str) -> bool:
        ...


class Notifier(Protocol):
    """Delivers a balance notification; delivery mechanics are out of scope."""

    def send(self, user_id: str, kind: str, balance: int) -> None:
        ...
