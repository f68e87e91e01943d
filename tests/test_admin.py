"""
Unit tests for admin ledger operations.

Tests permission gating, grants, resets and batch resets.
"""

import os
import shutil
import tempfile
from unittest.mock import patch

import pytest

from token_ledger.config.loader import LedgerConfig
from token_ledger.core.admin import ResetRequest
from token_ledger.core.errors import ErrorCode, ValidationError
from token_ledger.core.events import BALANCE_UPDATED_TOPIC, LocalEventBus
from token_ledger.core.features import Feature, TokenType
from token_ledger.service import build_service

GRANTS = {
    "admin-1": frozenset({"users:write", "users:admin"}),
    "support-1": frozenset({"users:write"}),
    "system": frozenset({"users:write"}),
}


class AdminTestCase:
    """Shared temporary ledger with permission grants."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.event_bus = LocalEventBus()
        self.events = []
        self.event_bus.subscribe(BALANCE_UPDATED_TOPIC, self.events.append)
        self.service = build_service(
            os.path.join(self.temp_dir, "test.db"),
            config=LedgerConfig(permissions=GRANTS),
            event_bus=self.event_bus,
        )
        self.service.open_account("u1", 10)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def balance(self, user_id: str) -> int:
        return self.service.get_token_balance(user_id).balance


class TestAddTokens(AdminTestCase):
    """Test permission-gated grants."""

    def test_add_without_permission(self):
        """An actor without users:write is denied and nothing changes."""
        result = self.service.add_tokens("u1", 50, "promo", "random-user")

        assert not result.success
        assert result.error_code is ErrorCode.AUTH_DENIED
        assert self.balance("u1") == 10
        assert self.service.repository.fetch_transactions("u1") == []
        assert self.events == []

    def test_add_tokens(self):
        """Grants credit the balance and leave an audit trail."""
        result = self.service.add_tokens("u1", 50, "promo", "support-1")

        assert result.success
        assert result.new_balance == 60
        assert result.to_dict() == {"success": True, "newBalance": 60}
        assert self.balance("u1") == 60

        journal = self.service.repository.fetch_transactions("u1")
        assert journal[-1].token_type is TokenType.BONUS
        assert journal[-1].source == "admin_add"

        history = self.service.get_user_token_history("u1", feature="ADMIN")
        assert history.records[0].operation == "admin_add"
        assert history.records[0].feature is Feature.ADMIN
        assert history.records[0].metadata["added_by"] == "support-1"
        assert self.events[-1] == {"userId": "u1", "balance": 60}

    def test_add_subscription_tokens_expire(self):
        """Subscription grants carry an expiry in the journal."""
        self.service.add_tokens("u1", 30, "monthly plan", "support-1", "subscription")
        assert self.service.repository.fetch_transactions("u1")[-1].expires_at is not None

    def test_add_to_missing_account(self):
        """Granting to an unknown user reports USER_NOT_FOUND."""
        result = self.service.add_tokens("ghost", 5, "promo", "support-1")
        assert result.error_code is ErrorCode.USER_NOT_FOUND

    @pytest.mark.parametrize("amount", [0, -3, 1.5])
    def test_invalid_amount(self, amount):
        """Amount must be a positive integer."""
        with pytest.raises(ValidationError):
            self.service.add_tokens("u1", amount, "promo", "support-1")

    def test_invalid_token_type(self):
        """Unknown token types are rejected."""
        with pytest.raises(ValidationError):
            self.service.add_tokens("u1", 5, "promo", "support-1", "gift")


class TestResetBalance(AdminTestCase):
    """Test absolute balance overwrites."""

    def test_reset_then_consume(self):
        """After a reset to 0 any consumption is INSUFFICIENT_TOKENS."""
        result = self.service.reset_token_balance(
            ResetRequest(user_id="u1", new_balance=0, reason="abuse", reset_by="support-1")
        )
        assert result.success
        assert self.balance("u1") == 0

        consumed = self.service.consume_tokens("u1", "siterank", "domain_analysis")
        assert consumed.error_code is ErrorCode.INSUFFICIENT_TOKENS

    def test_reset_audit_rows(self):
        """A reset is recorded as reset_balance with tokens_consumed = new balance."""
        self.service.reset_token_balance(
            ResetRequest(user_id="u1", new_balance=25, reason="correction", reset_by="support-1")
        )

        record = self.service.get_user_token_history("u1", feature=Feature.ADMIN).records[0]
        assert record.operation == "reset_balance"
        assert record.tokens_consumed == 25
        assert record.tokens_remaining == 25
        assert record.metadata == {"reason": "correction", "reset_by": "support-1"}

        journal = self.service.repository.fetch_transactions("u1")[-1]
        assert journal.source == "reset_balance"
        assert journal.balance_before == 10
        assert journal.balance_after == 25
        assert journal.amount == 15

        activity = self.service.repository.fetch_activity("u1", "tokens_reset")
        assert activity[0].metadata["new_balance"] == 25

    def test_reset_without_permission(self):
        """Resetting needs users:write."""
        result = self.service.reset_token_balance(
            ResetRequest(user_id="u1", new_balance=0, reason="x", reset_by="random-user")
        )
        assert result.error_code is ErrorCode.AUTH_DENIED
        assert self.balance("u1") == 10

    def test_reset_negative(self):
        """Negative balances are rejected."""
        with pytest.raises(ValidationError):
            self.service.reset_token_balance(
                ResetRequest(user_id="u1", new_balance=-1, reason="x", reset_by="support-1")
            )

    def test_reset_missing_account(self):
        """Resetting an unknown user reports USER_NOT_FOUND."""
        result = self.service.reset_token_balance(
            ResetRequest(user_id="ghost", new_balance=5, reason="x", reset_by="support-1")
        )
        assert result.error_code is ErrorCode.USER_NOT_FOUND


class TestBatchReset(AdminTestCase):
    """Test batch resets and their stronger permission."""

    def test_partial_failure(self):
        """Four valid users and one unknown: four updated, one failed."""
        for user_id in ("u2", "u3", "u4"):
            self.service.open_account(user_id, 3)

        result = self.service.batch_reset_tokens(
            ["u1", "u2", "ghost", "u3", "u4"], 100, "monthly", "admin-1"
        )

        assert not result.success
        assert result.updated == 4
        assert result.failed == ("ghost",)
        assert result.to_dict() == {"success": False, "updated": 4, "failed": ["ghost"]}
        for user_id in ("u1", "u2", "u3", "u4"):
            assert self.balance(user_id) == 100

    def test_all_succeed(self):
        """With every reset applied the batch succeeds."""
        result = self.service.batch_reset_tokens(["u1"], 7, "monthly", "admin-1")
        assert result.success
        assert result.failed == ()

    def test_write_is_not_enough(self):
        """Batch reset requires users:admin even for holders of users:write."""
        result = self.service.batch_reset_tokens(["u1"], 0, "monthly", "support-1")
        assert not result.success
        assert result.updated == 0
        assert result.failed == ("u1",)
        assert self.balance("u1") == 10

    def test_unexpected_error_is_isolated(self):
        """An exception for one user does not stop the others."""
        self.service.open_account("u2", 1)
        original = self.service.admin.reset_token_balance

        def flaky(request):
            if request.user_id == "u1":
                raise RuntimeError("lock timeout")
            return original(request)

        with patch.object(self.service.admin, "reset_token_balance", side_effect=flaky):
            result = self.service.batch_reset_tokens(["u1", "u2"], 9, "monthly", "admin-1")

        assert result.updated == 1
        assert result.failed == ("u1",)
        assert self.balance("u2") == 9


class TestReplenish(AdminTestCase):
    """Test system replenishment."""

    def test_replenish_add(self):
        """Replenishing an amount adds tokens as the system actor."""
        result = self.service.replenish_tokens("u1", amount=5)
        assert result.new_balance == 15

    def test_replenish_reset(self):
        """Replenishing with reset_to overwrites the balance."""
        result = self.service.replenish_tokens("u1", reset_to=100)
        assert result.new_balance == 100

    def test_replenish_requires_argument(self):
        """Either amount or reset_to must be given."""
        with pytest.raises(ValidationError):
            self.service.replenish_tokens("u1")
