"""
Administrative ledger operations: grant, reset and batch reset.

Permission checks run before any side effect. A reset overwrites the flat
balance directly and does not redistribute the priority ledger's buckets.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from token_ledger.storage.repository import LedgerRepository

from .errors import AccountNotFoundError, ErrorCode, ValidationError
from .events import BestEffortDispatcher
from .features import Feature, TokenType, parse_token_type
from .interfaces import PermissionService, PriorityLedger
from .notifications import NotificationTrigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResetRequest:
    """Absolute balance overwrite for one user."""
    user_id: str
    new_balance: int
    reason: str
    reset_by: str


@dataclass(frozen=True)
class AdminResult:
    """Outcome of add_tokens / reset_token_balance."""
    success: bool
    new_balance: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.success:
            data["newBalance"] = self.new_balance
        else:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class BatchResetResult:
    """Outcome of batch_reset_tokens; partial failure is not an exception."""
    success: bool
    updated: int
    failed: Tuple[str, ...]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "updated": self.updated,
            "failed": list(self.failed),
        }
        if self.error:
            data["error"] = self.error
        return data


def _denied(message: str) -> AdminResult:
    return AdminResult(success=False, error=message, error_code=ErrorCode.AUTH_DENIED)


def _not_found(user_id: str) -> AdminResult:
    return AdminResult(
        success=False,
        error=f"User not found: {user_id}",
        error_code=ErrorCode.USER_NOT_FOUND
    )


def _require_int(value, name: str, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(f"{name} must be an integer >= {minimum}, got {value!r}")


class AdminLedgerOps:
    """Permission-gated credit and reset operations."""

    def __init__(
        self,
        repository: LedgerRepository,
        ledger: PriorityLedger,
        permissions: PermissionService,
        notifications: NotificationTrigger,
        dispatcher: BestEffortDispatcher,
    ):
        self.repository = repository
        self.ledger = ledger
        self.permissions = permissions
        self.notifications = notifications
        self.dispatcher = dispatcher

    def add_tokens(
        self,
        user_id: str,
        amount: int,
        reason: str,
        actor_id: str,
        token_type=TokenType.BONUS,
    ) -> AdminResult:
        """Credit tokens through the priority ledger.

        Requires users:write. The token type decides expiry.

        Raises:
            ValidationError: If amount is not a positive integer or the type is unknown
        """
        _require_int(amount, "amount", 1)
        token_type = parse_token_type(token_type)

        if not self.permissions.has_permission(actor_id, "users", "write"):
            logger.warning("Actor %s denied adding tokens to %s", actor_id, user_id)
            return _denied("Insufficient permissions to add tokens")

        details = {
            "reason": reason,
            "added_by": actor_id,
            "token_type": token_type.value,
            "source": "admin_add",
        }
        try:
            with self.repository.transaction() as conn:
                new_balance = self.ledger.credit(conn, user_id, amount, token_type, details)
                self.repository.insert_usage_record(
                    conn,
                    user_id=user_id,
                    feature=Feature.ADMIN,
                    operation="admin_add",
                    tokens_consumed=amount,
                    tokens_remaining=new_balance,
                    metadata={"action": "add_tokens", **details},
                )
                self.repository.insert_activity(
                    conn, user_id, "tokens_added", {"amount": amount, "new_balance": new_balance, **details}
                )
        except AccountNotFoundError:
            return _not_found(user_id)

        logger.info("Added %d %s tokens to %s by %s", amount, token_type.value, user_id, actor_id)
        self._after_change(user_id, new_balance)
        return AdminResult(success=True, new_balance=new_balance)

    def reset_token_balance(self, request: ResetRequest) -> AdminResult:
        """Overwrite a user's balance absolutely.

        Requires users:write. Audited as operation=reset_balance with
        tokens_consumed equal to the new balance.

        Raises:
            ValidationError: If new_balance is negative or not an integer
        """
        _require_int(request.new_balance, "new_balance", 0)

        if not self.permissions.has_permission(request.reset_by, "users", "write"):
            logger.warning("Actor %s denied resetting %s", request.reset_by, request.user_id)
            return _denied("Insufficient permissions to reset token balance")

        details = {"reason": request.reason, "reset_by": request.reset_by}
        try:
            with self.repository.transaction() as conn:
                before = self.repository.balance_in(conn, request.user_id)
                if before is None:
                    raise AccountNotFoundError(request.user_id)
                self.repository.set_balance(conn, request.user_id, request.new_balance)
                self.repository.insert_transaction(
                    conn,
                    user_id=request.user_id,
                    token_type=None,
                    amount=request.new_balance - before,
                    balance_before=before,
                    balance_after=request.new_balance,
                    source="reset_balance",
                    metadata=details,
                )
                self.repository.insert_usage_record(
                    conn,
                    user_id=request.user_id,
                    feature=Feature.ADMIN,
                    operation="reset_balance",
                    tokens_consumed=request.new_balance,
                    tokens_remaining=request.new_balance,
                    metadata=details,
                )
                self.repository.insert_activity(
                    conn, request.user_id, "tokens_reset", {"new_balance": request.new_balance, **details}
                )
        except AccountNotFoundError:
            return _not_found(request.user_id)

        logger.info(
            "Reset balance of %s to %d by %s", request.user_id, request.new_balance, request.reset_by
        )
        self._after_change(request.user_id, request.new_balance)
        return AdminResult(success=True, new_balance=request.new_balance)

    def batch_reset_tokens(
        self,
        user_ids: Sequence[str],
        new_balance: int,
        reason: str,
        reset_by: str,
    ) -> BatchResetResult:
        """Reset many balances, continuing past individual failures.

        Requires users:admin, a stronger grant than the single reset's
        users:write; each per-user reset still checks users:write.
        """
        _require_int(new_balance, "new_balance", 0)

        if not self.permissions.has_permission(reset_by, "users", "admin"):
            logger.warning("Actor %s denied batch reset of %d users", reset_by, len(user_ids))
            return BatchResetResult(
                success=False,
                updated=0,
                failed=tuple(user_ids),
                error="Insufficient permissions for batch token reset"
            )

        updated = 0
        failed: List[str] = []
        for user_id in user_ids:
            try:
                result = self.reset_token_balance(
                    ResetRequest(user_id=user_id, new_balance=new_balance, reason=reason, reset_by=reset_by)
                )
            except Exception:
                logger.exception("Failed to reset tokens for user %s", user_id)
                failed.append(user_id)
                continue
            if result.success:
                updated += 1
            else:
                failed.append(user_id)

        return BatchResetResult(success=not failed, updated=updated, failed=tuple(failed))

    def _after_change(self, user_id: str, balance: int) -> None:
        self.dispatcher.run("observe_balance", self.notifications.observe_balance, user_id, balance)
        self.dispatcher.publish_balance(user_id, balance)
