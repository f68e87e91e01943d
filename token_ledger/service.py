"""
Token service facade.

Exposes the ledger's boundary operations (balance lookups, consumption,
admin changes, history, the journal and system statistics) on one explicitly
constructed object. Use build_service() to wire the default sqlite-backed collaborators.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from token_ledger.config.loader import LedgerConfig
from token_ledger.core.admin import AdminLedgerOps, AdminResult, BatchResetResult, ResetRequest
from token_ledger.core.consumption import (
    ConsumeOptions,
    ConsumeResult,
    ConsumptionOrchestrator,
    Operation,
)
from token_ledger.core.errors import ValidationError
from token_ledger.core.events import BestEffortDispatcher, EventBus, LocalEventBus
from token_ledger.core.features import Feature, TokenType, normalize_feature
from token_ledger.core.guard import BalanceCheck, BalanceGuard
from token_ledger.core.interfaces import Notifier, PermissionService, PriorityLedger
from token_ledger.core.notifications import NotificationTrigger
from token_ledger.core.permissions import StaticPermissionService
from token_ledger.core.pricing import PricingResolver, PricingRule
from token_ledger.core.recorder import UsageRecorder
from token_ledger.storage.db import DEFAULT_DB_PATH
from token_ledger.storage.models import AccountBalance, TokenTransaction, UsageRecord
from token_ledger.storage.priority import SqlitePriorityLedger
from token_ledger.storage.repository import LedgerRepository, as_utc, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class UsageHistory:
    """One page of a user's usage records."""
    records: List[UsageRecord]
    total: int
    page: int
    total_pages: int
    has_more: bool


@dataclass(frozen=True)
class BatchOperationDetails:
    """Summary and per-operation breakdown of one batch."""
    batch_id: str
    feature: Feature
    operation: str
    total_tokens_consumed: int
    operation_count: int
    created_at: datetime
    operations: List[Dict[str, Any]]
    summary: Dict[str, Any]


@dataclass
class FeatureUsage:
    tokens: int = 0
    operations: int = 0
    last_used: Optional[datetime] = None


@dataclass
class UsageStats:
    """Aggregated usage of one user."""
    total_tokens: int = 0
    total_operations: int = 0
    by_feature: Dict[str, FeatureUsage] = field(default_factory=dict)
    by_date: Dict[str, Dict[str, int]] = field(default_factory=dict)
    batch_count: int = 0
    batch_tokens: int = 0
    avg_batch_size: float = 0.0


@dataclass(frozen=True)
class LowBalanceUser:
    user_id: str
    balance: int
    last_used: Optional[datetime]


@dataclass(frozen=True)
class TransactionHistory:
    """One page of a user's credit/debit journal."""
    transactions: List[TokenTransaction]
    total: int
    page: int
    total_pages: int
    has_more: bool


@dataclass(frozen=True)
class BalancePoint:
    date: str
    balance: int
    change: int


@dataclass(frozen=True)
class SystemTokenStats:
    """Consumption across all users."""
    total_users: int
    total_consumed: int
    average_per_user: float
    top_features: List[Tuple[str, int]]
    top_users: List[Tuple[str, int]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalUsers": self.total_users,
            "totalConsumed": self.total_consumed,
            "averagePerUser": self.average_per_user,
            "topFeatures": [{"feature": name, "usage": used} for name, used in self.top_features],
            "topUsers": [{"userId": user_id, "usage": used} for user_id, used in self.top_users],
        }


class TokenService:
    """Boundary operations of the token ledger."""

    def __init__(
        self,
        repository: LedgerRepository,
        pricing: PricingResolver,
        consumption: ConsumptionOrchestrator,
        admin: AdminLedgerOps,
        guard: BalanceGuard,
    ):
        self.repository = repository
        self.pricing = pricing
        self.consumption = consumption
        self.admin = admin
        self.guard = guard

    # Balances

    def open_account(self, user_id: str, balance: int = 0) -> AccountBalance:
        """Create a token account with an opening balance (zero or a plan grant)."""
        account = self.repository.create_account(user_id, balance)
        logger.info("Opened token account %s with balance %d", user_id, balance)
        return account

    def get_token_balance(self, user_id: str) -> Optional[AccountBalance]:
        return self.repository.get_account(user_id)

    def check_token_balance(self, user_id: str, required_amount: int) -> BalanceCheck:
        return self.guard.sufficient(user_id, required_amount)

    # Consumption

    def consume_tokens(
        self,
        user_id: str,
        feature,
        action: str,
        options: Optional[ConsumeOptions] = None,
    ) -> ConsumeResult:
        return self.consumption.consume(user_id, feature, action, options)

    def consume_batch_tokens(
        self,
        user_id: str,
        feature,
        action: str,
        operations: Sequence[Dict[str, Any]],
    ) -> ConsumeResult:
        """Consume one unit cost per operation as a single batch.

        Args:
            operations: Dicts with optional "metadata" and "description" keys
        """
        if not operations:
            raise ValidationError("operations cannot be empty")
        unit = self.pricing.resolve(normalize_feature(feature), action, 1).unit
        priced = [
            Operation(
                amount=unit,
                metadata=dict(op.get("metadata") or {}),
                description=op.get("description"),
            )
            for op in operations
        ]
        return self.consumption.consume(user_id, feature, action, ConsumeOptions(operations=priced))

    # Admin

    def add_tokens(
        self,
        user_id: str,
        amount: int,
        reason: str,
        added_by: str,
        token_type=TokenType.BONUS,
    ) -> AdminResult:
        return self.admin.add_tokens(user_id, amount, reason, added_by, token_type)

    def reset_token_balance(self, request: ResetRequest) -> AdminResult:
        return self.admin.reset_token_balance(request)

    def batch_reset_tokens(
        self,
        user_ids: Sequence[str],
        new_balance: int,
        reason: str,
        reset_by: str,
    ) -> BatchResetResult:
        return self.admin.batch_reset_tokens(user_ids, new_balance, reason, reset_by)

    def replenish_tokens(
        self,
        user_id: str,
        amount: Optional[int] = None,
        reset_to: Optional[int] = None,
    ) -> AdminResult:
        """System replenishment: reset to an amount, or add an amount.

        The system actor must hold users:write in the permission grants.
        """
        if reset_to is not None:
            return self.admin.reset_token_balance(
                ResetRequest(
                    user_id=user_id,
                    new_balance=reset_to,
                    reason="Token replenishment (reset)",
                    reset_by=SYSTEM_ACTOR,
                )
            )
        if amount is not None and amount > 0:
            return self.admin.add_tokens(user_id, amount, "Token replenishment (add)", SYSTEM_ACTOR)
        raise ValidationError("Either amount or reset_to must be specified")

    # History and statistics

    def get_user_token_history(
        self,
        user_id: str,
        feature=None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
        include_batch_details: bool = False,
    ) -> UsageHistory:
        """Page through a user's usage records, newest first.

        Batch records are trimmed to their batch_info unless
        include_batch_details is set.
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be >= 1")
        feature_enum = None
        if feature is not None:
            feature_enum = _history_feature(feature)

        records, total = self.repository.fetch_usage_history(
            user_id,
            feature=feature_enum,
            start=start,
            end=end,
            limit=limit,
            offset=(page - 1) * limit,
        )
        if not include_batch_details:
            records = [_trim_batch(record) for record in records]
        total_pages = math.ceil(total / limit)
        return UsageHistory(
            records=records,
            total=total,
            page=page,
            total_pages=total_pages,
            has_more=page < total_pages,
        )

    def get_batch_operation_details(self, batch_id: str, user_id: str) -> Optional[BatchOperationDetails]:
        record = self.repository.fetch_batch_record(batch_id, user_id)
        if record is None:
            return None
        summary = record.metadata.get("batch_info") or {
            "total_tokens": record.tokens_consumed,
            "average_tokens_per_operation": (
                record.tokens_consumed / record.item_count if record.item_count else 0
            ),
            "operation_types": {},
        }
        return BatchOperationDetails(
            batch_id=batch_id,
            feature=record.feature,
            operation=record.operation,
            total_tokens_consumed=record.tokens_consumed,
            operation_count=record.item_count,
            created_at=record.created_at,
            operations=record.metadata.get("operations", []),
            summary=summary,
        )

    def get_user_usage_stats(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UsageStats:
        """Aggregate consumption by feature, by day and for batches.

        Admin rows (grants and resets) are not consumption and are skipped.
        """
        stats = UsageStats()
        batch_size_sum = 0
        page = 1
        while True:
            records, total = self.repository.fetch_usage_history(
                user_id, start=start, end=end, limit=500, offset=(page - 1) * 500
            )
            for record in records:
                if record.feature is Feature.ADMIN:
                    continue
                operations = record.item_count if record.is_batch else 1
                stats.total_tokens += record.tokens_consumed
                stats.total_operations += operations

                usage = stats.by_feature.setdefault(record.feature.value, FeatureUsage())
                usage.tokens += record.tokens_consumed
                usage.operations += operations
                if usage.last_used is None or record.created_at > usage.last_used:
                    usage.last_used = record.created_at

                day = stats.by_date.setdefault(
                    record.created_at.date().isoformat(), {"tokens": 0, "operations": 0}
                )
                day["tokens"] += record.tokens_consumed
                day["operations"] += operations

                if record.is_batch:
                    stats.batch_count += 1
                    stats.batch_tokens += record.tokens_consumed
                    batch_size_sum += record.item_count
            if page * 500 >= total:
                break
            page += 1

        if stats.batch_count:
            stats.avg_batch_size = batch_size_sum / stats.batch_count
        return stats

    def get_low_balance_users(self, threshold: int = 10) -> List[LowBalanceUser]:
        return [
            LowBalanceUser(user_id=user_id, balance=balance, last_used=last_used)
            for user_id, balance, last_used in self.repository.fetch_low_balance_accounts(threshold)
        ]

    # Credit/debit journal

    def get_user_transactions(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        source: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> TransactionHistory:
        """Page through a user's journal entries, newest first.

        Debits carry a negative amount and a "<feature>:<action>" source;
        grants and resets carry their admin source.
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be >= 1")
        transactions, total = self.repository.fetch_transaction_page(
            user_id,
            source=source,
            start=start,
            end=end,
            limit=limit,
            offset=(page - 1) * limit,
        )
        total_pages = math.ceil(total / limit)
        return TransactionHistory(
            transactions=transactions,
            total=total,
            page=page,
            total_pages=total_pages,
            has_more=page < total_pages,
        )

    def get_balance_history(
        self,
        user_id: str,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> List[BalancePoint]:
        """Closing balance and net change for each of the last ``days`` UTC days.

        Days without journal entries carry the previous closing balance.
        """
        if days < 1:
            raise ValidationError("days must be >= 1")
        today = (as_utc(now) if now is not None else utcnow()).date()
        first_day = today - timedelta(days=days - 1)
        start = datetime(first_day.year, first_day.month, first_day.day, tzinfo=timezone.utc)

        entries = self.repository.fetch_transactions(user_id, start=start)
        if entries:
            balance = entries[0].balance_before
        else:
            account = self.repository.get_account(user_id)
            balance = account.balance if account else 0

        by_day: Dict[str, List[TokenTransaction]] = {}
        for entry in entries:
            by_day.setdefault(as_utc(entry.created_at).date().isoformat(), []).append(entry)

        history = []
        for offset in range(days):
            day = (first_day + timedelta(days=offset)).isoformat()
            change = 0
            for entry in by_day.get(day, ()):
                change += entry.amount
                balance = entry.balance_after
            history.append(BalancePoint(date=day, balance=balance, change=change))
        return history

    # System-wide statistics

    def get_system_token_stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        top: int = 10,
    ) -> SystemTokenStats:
        """Consumption totals across all users, with the heaviest features and users."""
        users, consumed, top_features, top_users = self.repository.fetch_usage_totals(start, end, top)
        return SystemTokenStats(
            total_users=users,
            total_consumed=consumed,
            average_per_user=consumed / users if users else 0.0,
            top_features=top_features,
            top_users=top_users,
        )


def _history_feature(feature) -> Feature:
    # History may be filtered on admin rows, which consume() never accepts
    if isinstance(feature, Feature):
        return feature
    if str(feature).strip().upper() == Feature.ADMIN.value:
        return Feature.ADMIN
    return normalize_feature(feature)


def _trim_batch(record: UsageRecord) -> UsageRecord:
    if not record.is_batch:
        return record
    return UsageRecord(
        id=record.id,
        user_id=record.user_id,
        feature=record.feature,
        operation=record.operation,
        tokens_consumed=record.tokens_consumed,
        tokens_remaining=record.tokens_remaining,
        item_count=record.item_count,
        batch_id=record.batch_id,
        is_batch=True,
        metadata={
            "batch_info": record.metadata.get("batch_info"),
            "operation_count": record.item_count,
        },
        created_at=record.created_at,
    )


def format_usage_description(record: UsageRecord) -> str:
    """Human readable one-line description of a usage record."""
    if record.is_batch and record.item_count:
        return (
            f"{record.feature.value} - batch of {record.item_count} items, "
            f"{record.tokens_consumed} tokens"
        )
    description = record.metadata.get("description")
    return description or f"{record.feature.value} {record.operation} - {record.tokens_consumed} tokens"


def build_service(
    db_path: str = DEFAULT_DB_PATH,
    config: Optional[LedgerConfig] = None,
    rule: Optional[PricingRule] = None,
    ledger: Optional[PriorityLedger] = None,
    permissions: Optional[PermissionService] = None,
    notifier: Optional[Notifier] = None,
    event_bus: Optional[EventBus] = None,
) -> TokenService:
    """Wire a TokenService with sqlite storage and config-driven defaults.

    Any collaborator can be replaced; the schema is created if missing.
    """
    config = config or LedgerConfig()
    repository = LedgerRepository(db_path)
    repository.initialize_schema()

    ledger = ledger or SqlitePriorityLedger(repository, config.subscription_period_days)
    pricing = PricingResolver(rule or config.pricing)
    guard = BalanceGuard(repository)
    notifications = NotificationTrigger(repository, notifier, config.notifications)
    dispatcher = BestEffortDispatcher(event_bus if event_bus is not None else LocalEventBus())
    permissions = permissions or StaticPermissionService(config.permissions)

    consumption = ConsumptionOrchestrator(
        repository=repository,
        ledger=ledger,
        pricing=pricing,
        guard=guard,
        recorder=UsageRecorder(repository),
        notifications=notifications,
        dispatcher=dispatcher,
    )
    admin = AdminLedgerOps(
        repository=repository,
        ledger=ledger,
        permissions=permissions,
        notifications=notifications,
        dispatcher=dispatcher,
    )
    return TokenService(
        repository=repository,
        pricing=pricing,
        consumption=consumption,
        admin=admin,
        guard=guard,
    )
