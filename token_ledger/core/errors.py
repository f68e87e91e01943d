"""
Error codes and exceptions for the token ledger.

Validation problems raise; expected business outcomes are reported through
result objects carrying an ErrorCode.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Error codes surfaced in operation results."""
    INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    TOKEN_CONSUME_FAILED = "TOKEN_CONSUME_FAILED"
    AUTH_DENIED = "AUTH_DENIED"


class LedgerError(Exception):
    """Base class for all ledger errors."""


class ValidationError(LedgerError, ValueError):
    """Request rejected before any state change."""


class UnknownFeatureError(ValidationError):
    """Feature name does not map to a known Feature."""

    def __init__(self, feature: str):
        super().__init__(f"Unknown feature: {feature!r}")
        self.feature = feature


class UnknownActionError(ValidationError):
    """No pricing rule exists for the feature/action combination."""

    def __init__(self, feature: str, action: str):
        super().__init__(f"Unknown action {action!r} for feature {feature}")
        self.feature = feature
        self.action = action


class InsufficientTokensError(LedgerError):
    """Raised by the atomic debit when the balance cannot cover the amount."""

    def __init__(self, current_balance: int, required: int):
        super().__init__(
            f"Insufficient token balance. Required: {required}, "
            f"Available: {current_balance}"
        )
        self.current_balance = current_balance
        self.required = required


class AccountNotFoundError(LedgerError):
    """No token account exists for the user."""

    def __init__(self, user_id: str):
        super().__init__(f"Token account not found: {user_id}")
        self.user_id = user_id


class BatchIdCollisionError(LedgerError):
    """A batch id is already present in the usage ledger."""

    def __init__(self, batch_id: str):
        super().__init__(f"Batch id already recorded: {batch_id}")
        self.batch_id = batch_id
