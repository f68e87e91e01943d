"""
Usage recording and batch splitting.

Writes the append-only audit rows for a consumption and owns the
remainder-preserving split of a batch total across its sub-operations.
"""

import secrets
import sqlite3
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from token_ledger.storage.models import UsageRecord
from token_ledger.storage.repository import LedgerRepository

from .errors import BatchIdCollisionError, ValidationError
from .features import Feature

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class SubOperation:
    """One item of a batch with its exact token cost."""
    tokens_consumed: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None


def split_evenly(total: int, count: int) -> List[int]:
    """Split an integer total into count parts that sum to total exactly.

    The first ``total % count`` parts get one extra token, so the largest
    and smallest parts differ by at most one.

    Args:
        total: Non-negative integer total
        count: Number of parts (>= 1)

    Returns:
        List of count integers summing to total
    """
    if count < 1:
        raise ValidationError("count must be >= 1")
    if total < 0:
        raise ValidationError("total cannot be negative")
    base = total // count
    remainder = total - base * count
    return [base + (1 if i < remainder else 0) for i in range(count)]


def generate_batch_id(feature: Feature, user_id: str) -> str:
    """Build a batch id: batch_{feature}_{user prefix}_{epoch ms}_{random6}."""
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"batch_{feature.value}_{user_id[:8]}_{millis}_{suffix}"


class UsageRecorder:
    """Persists usage records inside the consumption transaction."""

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def new_batch_id(self, conn: sqlite3.Connection, feature: Feature, user_id: str) -> str:
        batch_id = generate_batch_id(feature, user_id)
        if self.repository.batch_id_exists(conn, batch_id):
            raise BatchIdCollisionError(batch_id)
        return batch_id

    def record_single(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        feature: Feature,
        operation: str,
        tokens_consumed: int,
        tokens_remaining: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageRecord:
        return self.repository.insert_usage_record(
            conn,
            user_id=user_id,
            feature=feature,
            operation=operation,
            tokens_consumed=tokens_consumed,
            tokens_remaining=tokens_remaining,
            item_count=1,
            is_batch=False,
            metadata={
                "type": "single_operation",
                "feature": feature.value,
                "operation": operation,
                "description": f"{feature.value} single operation - {tokens_consumed} tokens",
                "operation_metadata": metadata or {},
            }
        )

    def record_batch(
        self,
        conn: sqlite3.Connection,
        batch_id: str,
        user_id: str,
        feature: Feature,
        operation: str,
        operations: List[SubOperation],
        tokens_consumed: int,
        tokens_remaining: int,
    ) -> UsageRecord:
        """Write one parent record grouping all sub-operations.

        Raises:
            ValidationError: If the sub-operation costs do not sum to tokens_consumed
            BatchIdCollisionError: If batch_id is already recorded
        """
        if not operations:
            raise ValidationError("a batch needs at least one operation")
        recorded_sum = sum(op.tokens_consumed for op in operations)
        if recorded_sum != tokens_consumed:
            raise ValidationError(
                f"batch sub-costs sum to {recorded_sum}, expected {tokens_consumed}"
            )
        if self.repository.batch_id_exists(conn, batch_id):
            raise BatchIdCollisionError(batch_id)

        operation_types: Dict[str, int] = {}
        for op in operations:
            op_type = op.metadata.get("type", "unknown")
            operation_types[op_type] = operation_types.get(op_type, 0) + 1

        item_count = len(operations)
        metadata = {
            "batch_info": {
                "total_operations": item_count,
                "total_tokens": tokens_consumed,
                "average_tokens_per_operation": tokens_consumed / item_count,
                "operation_types": operation_types,
            },
            "operations": [
                {
                    "index": index,
                    "tokens_consumed": op.tokens_consumed,
                    "metadata": op.metadata,
                    "description": op.description or f"Operation {index + 1}",
                }
                for index, op in enumerate(operations)
            ],
        }
        return self.repository.insert_usage_record(
            conn,
            user_id=user_id,
            feature=feature,
            operation=operation,
            tokens_consumed=tokens_consumed,
            tokens_remaining=tokens_remaining,
            item_count=item_count,
            batch_id=batch_id,
            is_batch=True,
            metadata=metadata
        )


def even_sub_operations(
    feature: Feature,
    total: int,
    batch_size: int,
    metadata: Optional[Dict[str, Any]] = None,
) -> List[SubOperation]:
    """Build batch_size sub-operations sharing total via split_evenly."""
    return [
        SubOperation(
            tokens_consumed=amount,
            metadata={**(metadata or {}), "index": i + 1},
            description=f"{feature.value} operation {i + 1}",
        )
        for i, amount in enumerate(split_evenly(total, batch_size))
    ]
