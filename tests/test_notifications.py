"""
Unit tests for low-balance notifications.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from token_ledger.core.notifications import NotificationKind, NotificationPolicy, NotificationTrigger
from token_ledger.storage.repository import LedgerRepository


class TestNotificationTrigger:
    """Test threshold crossing and dedupe decisions."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.repository = LedgerRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()
        self.notifier = Mock()
        self.trigger = NotificationTrigger(
            self.repository,
            self.notifier,
            NotificationPolicy(low_balance_threshold=5, dedupe_window=timedelta(hours=24)),
        )
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_above_threshold_is_silent(self):
        """Balances above the threshold send nothing."""
        assert self.trigger.evaluate("u1", 6, self.now) == []
        self.notifier.send.assert_not_called()

    def test_low_balance_deduped_within_window(self):
        """A second low-balance notice within 24h is suppressed."""
        assert self.trigger.evaluate("u1", 5, self.now) == [NotificationKind.LOW_BALANCE]
        assert self.trigger.evaluate("u1", 4, self.now + timedelta(hours=1)) == []
        assert self.notifier.send.call_count == 1

    def test_low_balance_repeats_after_window(self):
        """Once the window passed, the notice goes out again."""
        self.trigger.evaluate("u1", 5, self.now)
        sent = self.trigger.evaluate("u1", 3, self.now + timedelta(hours=24))
        assert sent == [NotificationKind.LOW_BALANCE]
        assert self.notifier.send.call_count == 2

    def test_depleted_once_per_transition(self):
        """Repeated zero balances notify depletion only once."""
        assert self.trigger.evaluate("u1", 0, self.now) == [NotificationKind.DEPLETED]
        assert self.trigger.evaluate("u1", 0, self.now + timedelta(minutes=5)) == []
        self.notifier.send.assert_called_once_with("u1", "TOKEN_DEPLETED", 0)

    def test_depleted_again_after_refill(self):
        """Refilling clears the flag so the next depletion notifies again."""
        self.trigger.evaluate("u1", 0, self.now)
        self.trigger.observe_balance("u1", 50)
        assert not self.repository.is_flagged("u1", NotificationKind.DEPLETED.value)
        assert self.trigger.evaluate("u1", 0, self.now + timedelta(days=2)) == [NotificationKind.DEPLETED]

    def test_notifications_are_logged(self):
        """Sent notifications are recorded for dedupe."""
        self.trigger.evaluate("u1", 2, self.now)
        assert self.repository.last_notification_at("u1", "LOW_TOKEN_BALANCE") == self.now

    def test_naive_and_offset_times_are_utc(self):
        """Naive times count as UTC and offset times compare by instant."""
        self.trigger.evaluate("u1", 5, self.now)

        naive_within = (self.now + timedelta(hours=1)).replace(tzinfo=None)
        assert self.trigger.evaluate("u1", 4, naive_within) == []

        # 20:00+08:00 is still 12:00 UTC, inside the window
        shanghai = self.now.astimezone(timezone(timedelta(hours=8)))
        assert self.trigger.evaluate("u1", 4, shanghai) == []

        naive_after = (self.now + timedelta(hours=25)).replace(tzinfo=None)
        assert self.trigger.evaluate("u1", 3, naive_after) == [NotificationKind.LOW_BALANCE]
        assert self.repository.last_notification_at("u1", "LOW_TOKEN_BALANCE") == (
            self.now + timedelta(hours=25)
        )

    def test_policy_validation(self):
        """Threshold and window must be positive."""
        with pytest.raises(ValueError):
            NotificationPolicy(low_balance_threshold=0)
        with pytest.raises(ValueError):
            NotificationPolicy(dedupe_window=timedelta(0))
