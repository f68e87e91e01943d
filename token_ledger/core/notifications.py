"""
Low-balance notification decisions.

Detects threshold crossings after a balance change and decides whether a
notification should go out. Delivery is at-least-once: the dedupe checks
are read-then-write without a lock, so a rare duplicate is accepted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from token_ledger.storage.repository import LedgerRepository, as_utc, utcnow

from .interfaces import Notifier

logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    """Notification templates keyed in the notification log."""
    LOW_BALANCE = "LOW_TOKEN_BALANCE"
    DEPLETED = "TOKEN_DEPLETED"


@dataclass(frozen=True)
class NotificationPolicy:
    """Thresholds and dedupe window."""
    low_balance_threshold: int = 5
    dedupe_window: timedelta = timedelta(hours=24)

    def __post_init__(self):
        """Validate thresholds."""
        if self.low_balance_threshold < 1:
            raise ValueError("low_balance_threshold must be >= 1")
        if self.dedupe_window <= timedelta(0):
            raise ValueError("dedupe_window must be positive")


class LoggingNotifier:
    """Notifier that only logs; real delivery is plugged in by the host app."""

    def send(self, user_id: str, kind: str, balance: int) -> None:
        logger.info("Notification %s for user %s (balance=%d)", kind, user_id, balance)


class NotificationTrigger:
    """Decides low-balance and depletion notifications."""

    def __init__(
        self,
        repository: LedgerRepository,
        notifier: Optional[Notifier] = None,
        policy: Optional[NotificationPolicy] = None,
    ):
        self.repository = repository
        self.notifier = notifier or LoggingNotifier()
        self.policy = policy or NotificationPolicy()

    def evaluate(self, user_id: str, balance: int, now: Optional[datetime] = None) -> List[NotificationKind]:
        """Evaluate thresholds for a balance observed after consumption.

        Rules:
        - balance == 0: notify DEPLETED once per transition into zero
        - 0 < balance <= threshold: notify LOW_BALANCE unless one was sent
          within the dedupe window
        - balance > 0 clears the depletion flag

        Args:
            user_id: Account owner
            balance: Balance after the change
            now: Evaluation time (defaults to current UTC time; naive values are UTC)

        Returns:
            Notifications sent by this call
        """
        now = as_utc(now) if now is not None else utcnow()
        sent: List[NotificationKind] = []

        if balance == 0:
            kind = NotificationKind.DEPLETED
            if not self.repository.is_flagged(user_id, kind.value):
                self.repository.set_flag(user_id, kind.value, True)
                self._send(user_id, kind, balance, now)
                sent.append(kind)
            return sent

        self.observe_balance(user_id, balance)

        if balance <= self.policy.low_balance_threshold:
            kind = NotificationKind.LOW_BALANCE
            last = self.repository.last_notification_at(user_id, kind.value)
            if last is None or now - last >= self.policy.dedupe_window:
                self._send(user_id, kind, balance, now)
                sent.append(kind)
        return sent

    def observe_balance(self, user_id: str, balance: int) -> None:
        """Clear the depletion flag once the balance is back above zero."""
        if balance > 0 and self.repository.is_flagged(user_id, NotificationKind.DEPLETED.value):
            self.repository.set_flag(user_id, NotificationKind.DEPLETED.value, False)

    def _send(self, user_id: str, kind: NotificationKind, balance: int, now: datetime) -> None:
        self.notifier.send(user_id, kind.value, balance)
        self.repository.insert_notification(user_id, kind.value, balance, now)
