"""
Token consumption orchestration.

Composes pricing, the balance pre-check, the atomic debit, usage recording,
notifications and the balance event into a single consume() call.

Flow:
1. Resolve the total cost
2. Pre-check the balance (advisory)
3. Debit and record usage in one transaction
4. Evaluate notification thresholds (best-effort)
5. Publish the balance-changed event (best-effort)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Sequence

from token_ledger.storage.repository import LedgerRepository

from .errors import (
    AccountNotFoundError,
    ErrorCode,
    InsufficientTokensError,
    ValidationError,
)
from .events import BestEffortDispatcher
from .features import Feature, normalize_feature
from .guard import BalanceGuard
from .interfaces import PriorityLedger
from .notifications import NotificationTrigger
from .pricing import PricingResolver
from .recorder import SubOperation, UsageRecorder, even_sub_operations

logger = logging.getLogger(__name__)


class ConsumptionState(Enum):
    """Stages of a consume() call, in order."""
    INIT = auto()
    PRICING_RESOLVED = auto()
    BALANCE_CHECKED = auto()
    INSUFFICIENT = auto()  # terminal
    DEBITING = auto()
    DEBITED = auto()
    RECORDING = auto()
    RECORDED = auto()
    NOTIFYING = auto()
    EVENT_PUBLISHED = auto()
    DONE = auto()


@dataclass(frozen=True)
class Operation:
    """Caller-priced sub-operation of a batch."""
    amount: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None


@dataclass(frozen=True)
class ConsumeOptions:
    """Options for a consume() call.

    batch_id names the batch record and is rejected on single-operation calls.
    custom_amount and operations are the trusted-override path: they bypass
    the pricing rule and are meant for internal callers only, never for
    values taken from an unauthenticated request.
    """
    batch_size: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    custom_amount: Optional[int] = None
    batch_id: Optional[str] = None
    operations: Optional[Sequence[Operation]] = None


@dataclass(frozen=True)
class ConsumeResult:
    """Discriminated outcome of consume()."""
    success: bool
    state: ConsumptionState
    new_balance: Optional[int] = None
    tokens_consumed: Optional[int] = None
    batch_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    current_balance: Optional[int] = None
    required: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.success:
            data["newBalance"] = self.new_balance
            data["tokensConsumed"] = self.tokens_consumed
            if self.batch_id is not None:
                data["batchId"] = self.batch_id
        else:
            data["error"] = self.error
            data["errorCode"] = self.error_code.value if self.error_code else None
            if self.error_code is ErrorCode.INSUFFICIENT_TOKENS:
                data["currentBalance"] = self.current_balance
                data["required"] = self.required
        return data


def _insufficient(current_balance: int, required: int) -> ConsumeResult:
    return ConsumeResult(
        success=False,
        state=ConsumptionState.INSUFFICIENT,
        error=f"Insufficient token balance. Required: {required}, Available: {current_balance}",
        error_code=ErrorCode.INSUFFICIENT_TOKENS,
        current_balance=current_balance,
        required=required,
    )


class ConsumptionOrchestrator:
    """Runs the consume() contract against injected collaborators."""

    def __init__(
        self,
        repository: LedgerRepository,
        ledger: PriorityLedger,
        pricing: PricingResolver,
        guard: BalanceGuard,
        recorder: UsageRecorder,
        notifications: NotificationTrigger,
        dispatcher: BestEffortDispatcher,
    ):
        self.repository = repository
        self.ledger = ledger
        self.pricing = pricing
        self.guard = guard
        self.recorder = recorder
        self.notifications = notifications
        self.dispatcher = dispatcher

    def consume(
        self,
        user_id: str,
        feature,
        action: str,
        options: Optional[ConsumeOptions] = None,
    ) -> ConsumeResult:
        """Consume tokens for a feature action.

        Args:
            user_id: Account owner
            feature: Feature enum member or name (e.g. "siterank")
            action: Action name priced by the pricing rule
            options: Batch size, metadata and trusted overrides

        Returns:
            ConsumeResult; INSUFFICIENT_TOKENS and USER_NOT_FOUND are normal
            outcomes, TOKEN_CONSUME_FAILED means the transaction was rolled back

        Raises:
            ValidationError: Bad feature, action, batch size or operations, or a
                batch_id on a single-operation call
        """
        opts = options or ConsumeOptions()
        state = ConsumptionState.INIT
        feature_enum = normalize_feature(feature)

        operations = self._validate_operations(opts)
        if operations is not None:
            batch_size = len(operations)
        else:
            batch_size = opts.batch_size if opts.batch_size is not None else 1
            if batch_size == 1 and opts.batch_id is not None:
                raise ValidationError("batch_id applies only to batches; use batch_size > 1 or operations")

        quote = self.pricing.resolve(
            feature_enum,
            action,
            batch_size,
            explicit_amount=opts.custom_amount,
            has_explicit_operations=operations is not None,
        )
        # Debited amount and recorded sum must be the same number
        total = sum(op.amount for op in operations) if operations is not None else quote.total
        state = ConsumptionState.PRICING_RESOLVED

        check = self.guard.sufficient(user_id, total)
        state = ConsumptionState.BALANCE_CHECKED
        if not check.exists:
            return self._user_not_found(user_id, state)
        if not check.sufficient:
            logger.info(
                "Insufficient tokens for %s: required %d, available %d",
                user_id, total, check.current_balance
            )
            self._log_failed_attempt(user_id, feature_enum, action, total, check.current_balance, opts)
            return _insufficient(check.current_balance, total)

        state = ConsumptionState.DEBITING
        batch_id = None
        try:
            with self.repository.transaction() as conn:
                new_balance = self.ledger.debit(
                    conn, user_id, total, feature_enum, action, opts.metadata
                )
                state = ConsumptionState.DEBITED

                state = ConsumptionState.RECORDING
                if batch_size > 1 or operations is not None:
                    batch_id = opts.batch_id or self.recorder.new_batch_id(conn, feature_enum, user_id)
                    if operations is not None:
                        sub_operations = [
                            SubOperation(op.amount, dict(op.metadata), op.description)
                            for op in operations
                        ]
                    else:
                        sub_operations = even_sub_operations(feature_enum, total, batch_size, opts.metadata)
                    self.recorder.record_batch(
                        conn,
                        batch_id=batch_id,
                        user_id=user_id,
                        feature=feature_enum,
                        operation=action,
                        operations=sub_operations,
                        tokens_consumed=total,
                        tokens_remaining=new_balance,
                    )
                else:
                    self.recorder.record_single(
                        conn,
                        user_id=user_id,
                        feature=feature_enum,
                        operation=action,
                        tokens_consumed=total,
                        tokens_remaining=new_balance,
                        metadata=opts.metadata,
                    )
                self.repository.insert_activity(
                    conn,
                    user_id,
                    "token_consumed",
                    self._attempt_metadata(feature_enum, action, total, new_balance, True, opts, batch_size),
                )
            state = ConsumptionState.RECORDED
        except InsufficientTokensError as e:
            # Lost the race against a concurrent debit; same outcome as the pre-check
            logger.info("Debit rejected for %s: %s", user_id, e)
            self._log_failed_attempt(user_id, feature_enum, action, total, e.current_balance, opts)
            return _insufficient(e.current_balance, total)
        except AccountNotFoundError:
            return self._user_not_found(user_id, state)
        except Exception:
            logger.exception(
                "Token consumption failed for %s (%s/%s) in state %s; transaction rolled back",
                user_id, feature_enum.value, action, state.name
            )
            return ConsumeResult(
                success=False,
                state=state,
                error="Failed to consume tokens",
                error_code=ErrorCode.TOKEN_CONSUME_FAILED,
            )

        logger.info(
            "Consumed %d tokens from %s for %s/%s (balance %d)",
            total, user_id, feature_enum.value, action, new_balance
        )

        state = ConsumptionState.NOTIFYING
        self.dispatcher.run("notify_low_balance", self.notifications.evaluate, user_id, new_balance)
        self.dispatcher.publish_balance(user_id, new_balance, consumed=total)
        state = ConsumptionState.EVENT_PUBLISHED

        return ConsumeResult(
            success=True,
            state=ConsumptionState.DONE,
            new_balance=new_balance,
            tokens_consumed=total,
            batch_id=batch_id,
        )

    def _validate_operations(self, opts: ConsumeOptions) -> Optional[List[Operation]]:
        if opts.operations is None:
            return None
        operations = list(opts.operations)
        if not operations:
            raise ValidationError("operations cannot be empty")
        for index, op in enumerate(operations):
            if isinstance(op.amount, bool) or not isinstance(op.amount, int) or op.amount <= 0:
                raise ValidationError(
                    f"operations[{index}].amount must be a positive integer, got {op.amount!r}"
                )
        if opts.batch_size is not None and opts.batch_size != len(operations):
            raise ValidationError(
                f"batch_size {opts.batch_size} does not match {len(operations)} operations"
            )
        if opts.custom_amount is not None:
            raise ValidationError("custom_amount and operations are mutually exclusive")
        return operations

    def _user_not_found(self, user_id: str, state: ConsumptionState) -> ConsumeResult:
        logger.info("Token account not found: %s", user_id)
        return ConsumeResult(
            success=False,
            state=state,
            error=f"User not found: {user_id}",
            error_code=ErrorCode.USER_NOT_FOUND,
        )

    def _log_failed_attempt(
        self,
        user_id: str,
        feature: Feature,
        action: str,
        amount: int,
        balance: int,
        opts: ConsumeOptions,
    ) -> None:
        self.repository.log_activity(
            user_id,
            "token_consumption_failed",
            self._attempt_metadata(feature, action, amount, balance, False, opts, opts.batch_size),
        )

    @staticmethod
    def _attempt_metadata(
        feature: Feature,
        action: str,
        amount: int,
        balance: int,
        success: bool,
        opts: ConsumeOptions,
        batch_size: Optional[int],
    ) -> Dict[str, Any]:
        return {
            "feature": feature.value,
            "token_action": action,
            "amount": amount,
            "balance": balance,
            "success": success,
            "batch_size": batch_size,
            "operation_metadata": opts.metadata or {},
        }
