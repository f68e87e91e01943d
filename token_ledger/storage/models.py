"""
Data models for storage layer.

Immutable views of ledger rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from token_ledger.core.features import Feature, TokenType


@dataclass(frozen=True)
class AccountBalance:
    """Current flat balance of a user's token account."""
    user_id: str
    balance: int
    updated_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Append-only audit row of token usage.

    Once written, these records must never be modified or deleted. For a
    batch record the per-operation costs in metadata sum to tokens_consumed.
    """
    id: int
    user_id: str
    feature: Feature
    operation: str
    tokens_consumed: int
    tokens_remaining: int
    item_count: int
    batch_id: Optional[str]
    is_batch: bool
    metadata: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class TokenTransaction:
    """Credit or debit journal entry kept by the priority ledger."""
    id: int
    user_id: str
    token_type: Optional[TokenType]
    amount: int
    balance_before: int
    balance_after: int
    source: str
    expires_at: Optional[datetime]
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActivityEntry:
    """Attempt log entry (successful or failed consumption, admin change)."""
    id: int
    user_id: str
    action: str
    metadata: Dict[str, Any]
    created_at: datetime
