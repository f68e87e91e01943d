"""
Metered feature wrapper.

Charges tokens for a call before running it, without modifying the call's
behavior.
"""

import functools
from typing import Any, Callable, Dict, Optional

from ..core.consumption import ConsumeOptions, ConsumeResult
from ..core.errors import (
    AccountNotFoundError,
    ErrorCode,
    InsufficientTokensError,
    LedgerError,
)
from ..service import TokenService


class MeteredFeature:
    """Wraps callables so each invocation consumes tokens first.

    The wrapped call only runs after the charge succeeded. Charges are not
    refunded when the wrapped call itself raises.
    """

    def __init__(self, service: TokenService, feature: str, action: str):
        """Initialize the metered feature.

        Args:
            service: Token service used for charging
            feature: Feature name (required)
            action: Action name priced by the pricing rule (required)

        Raises:
            ValueError: If feature or action is missing/empty
        """
        if not feature or not feature.strip():
            raise ValueError("feature is required and cannot be empty")
        if not action or not action.strip():
            raise ValueError("action is required and cannot be empty")

        self.service = service
        self.feature = feature
        self.action = action

    def charge(
        self,
        user_id: str,
        batch_size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConsumeResult:
        """Consume tokens for one call.

        Raises:
            InsufficientTokensError: If the balance cannot cover the cost
            AccountNotFoundError: If the user has no token account
            LedgerError: If consumption failed for any other reason
        """
        result = self.service.consume_tokens(
            user_id,
            self.feature,
            self.action,
            ConsumeOptions(batch_size=batch_size, metadata=metadata),
        )
        if result.success:
            return result
        if result.error_code is ErrorCode.INSUFFICIENT_TOKENS:
            raise InsufficientTokensError(result.current_balance, result.required)
        if result.error_code is ErrorCode.USER_NOT_FOUND:
            raise AccountNotFoundError(user_id)
        raise LedgerError(result.error)

    def call(
        self,
        user_id: str,
        func: Callable[..., Any],
        *args: Any,
        batch_size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs: Any
    ) -> Any:
        """Charge user_id, then return func(*args, **kwargs) unchanged."""
        self.charge(user_id, batch_size=batch_size, metadata=metadata)
        return func(*args, **kwargs)

    def __call__(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Decorate func; the decorated function takes user_id first."""

        @functools.wraps(func)
        def wrapper(user_id: str, *args: Any, **kwargs: Any) -> Any:
            self.charge(user_id)
            return func(*args, **kwargs)

        return wrapper
