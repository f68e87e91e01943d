"""
Unit tests for token consumption.

Tests the consume() contract end to end against a temporary database:
pricing, the atomic debit, usage records, the attempt log and the
best-effort side effects.
"""

import os
import shutil
import tempfile
import threading
from unittest.mock import Mock, patch

import pytest

from token_ledger.core.consumption import ConsumeOptions, ConsumptionState, Operation
from token_ledger.core.errors import ErrorCode, UnknownActionError, UnknownFeatureError, ValidationError
from token_ledger.core.events import BALANCE_UPDATED_TOPIC, LocalEventBus
from token_ledger.core.features import Feature
from token_ledger.service import build_service


class FlatBatchRule:
    """Prices one item at 1 and any batch at a fixed total."""

    def __init__(self, batch_total: int):
        self.batch_total = batch_total

    def cost(self, feature, action, count, is_batch):
        return self.batch_total if is_batch else count


class ConsumptionTestCase:
    """Shared temporary ledger for consumption tests."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.event_bus = LocalEventBus()
        self.events = []
        self.event_bus.subscribe(BALANCE_UPDATED_TOPIC, self.events.append)
        self.notifier = Mock()
        self.service = build_service(self.db_path, notifier=self.notifier, event_bus=self.event_bus)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def balance(self, user_id: str) -> int:
        return self.service.get_token_balance(user_id).balance


class TestSingleConsumption(ConsumptionTestCase):
    """Test single-operation consumption."""

    def test_single_operation(self):
        """Balance 10, one domain analysis: balance 9 and one non-batch record of 1."""
        self.service.open_account("u1", 10)

        result = self.service.consume_tokens("u1", "siterank", "domain_analysis")

        assert result.success
        assert result.state is ConsumptionState.DONE
        assert result.new_balance == 9
        assert result.tokens_consumed == 1
        assert result.batch_id is None
        assert self.balance("u1") == 9

        history = self.service.get_user_token_history("u1")
        assert history.total == 1
        record = history.records[0]
        assert not record.is_batch
        assert record.tokens_consumed == 1
        assert record.tokens_remaining == 9
        assert record.feature is Feature.SITERANK

    def test_feature_alias(self):
        """adscenter is an alias of CHANGELINK."""
        self.service.open_account("u1", 10)
        result = self.service.consume_tokens("u1", "adscenter", "link_replace")
        assert result.success
        assert result.tokens_consumed == 2
        assert self.service.get_user_token_history("u1").records[0].feature is Feature.CHANGELINK

    def test_successful_attempt_logged(self):
        """Each successful consumption writes a token_consumed activity entry."""
        self.service.open_account("u1", 10)
        self.service.consume_tokens("u1", Feature.SITERANK, "domain_analysis",
                                    ConsumeOptions(metadata={"domain": "example.com"}))
        entries = self.service.repository.fetch_activity("u1", "token_consumed")
        assert len(entries) == 1
        assert entries[0].metadata["success"] is True
        assert entries[0].metadata["balance"] == 9
        assert entries[0].metadata["operation_metadata"] == {"domain": "example.com"}

    def test_unknown_feature_raises(self):
        """Unmapped feature names are rejected before any state change."""
        self.service.open_account("u1", 10)
        with pytest.raises(UnknownFeatureError):
            self.service.consume_tokens("u1", "billing", "domain_analysis")
        with pytest.raises(UnknownFeatureError):
            self.service.consume_tokens("u1", "admin", "reset_balance")
        assert self.balance("u1") == 10

    def test_unknown_action_raises(self):
        """Unpriced actions are rejected before any state change."""
        self.service.open_account("u1", 10)
        with pytest.raises(UnknownActionError):
            self.service.consume_tokens("u1", "siterank", "crawl")
        assert self.balance("u1") == 10

    def test_unknown_user(self):
        """A missing account is reported, not raised, and leaves no audit rows."""
        result = self.service.consume_tokens("ghost", "siterank", "domain_analysis")
        assert not result.success
        assert result.error_code is ErrorCode.USER_NOT_FOUND
        assert self.service.repository.fetch_activity("ghost") == []


class TestInsufficientBalance(ConsumptionTestCase):
    """Test rejection when the balance cannot cover the cost."""

    def test_insufficient(self):
        """Balance 2, cost 5: INSUFFICIENT_TOKENS and the balance stays 2."""
        self.service.open_account("u1", 2)

        result = self.service.consume_tokens(
            "u1", "batchopen", "url_access", ConsumeOptions(batch_size=5)
        )

        assert not result.success
        assert result.state is ConsumptionState.INSUFFICIENT
        assert result.error_code is ErrorCode.INSUFFICIENT_TOKENS
        assert result.current_balance == 2
        assert result.required == 5
        assert self.balance("u1") == 2
        assert self.service.get_user_token_history("u1").total == 0

    def test_failed_attempt_logged(self):
        """A rejected attempt leaves a token_consumption_failed entry."""
        self.service.open_account("u1", 2)
        self.service.consume_tokens("u1", "batchopen", "url_access", ConsumeOptions(batch_size=5))

        entries = self.service.repository.fetch_activity("u1", "token_consumption_failed")
        assert len(entries) == 1
        assert entries[0].metadata["success"] is False
        assert entries[0].metadata["amount"] == 5
        assert entries[0].metadata["balance"] == 2

    def test_to_dict(self):
        """Insufficient results serialize with balance and requirement."""
        self.service.open_account("u1", 0)
        result = self.service.consume_tokens("u1", "siterank", "domain_analysis")
        assert result.to_dict() == {
            "success": False,
            "error": "Insufficient token balance. Required: 1, Available: 0",
            "errorCode": "INSUFFICIENT_TOKENS",
            "currentBalance": 0,
            "required": 1,
        }

    def test_concurrent_consumers_never_overdraw(self):
        """Two racing consumers of 6 from a balance of 10: exactly one wins."""
        self.service.open_account("u1", 10)
        barrier = threading.Barrier(2)
        results = []

        def consume():
            barrier.wait()
            results.append(self.service.consume_tokens(
                "u1", "batchopen", "url_access", ConsumeOptions(custom_amount=6)
            ))

        threads = [threading.Thread(target=consume) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.error_code is ErrorCode.INSUFFICIENT_TOKENS
        assert self.balance("u1") == 4
        assert self.service.get_user_token_history("u1").total == 1


class TestBatchConsumption(ConsumptionTestCase):
    """Test batch consumption and its usage record."""

    def test_batch_of_seven(self):
        """Balance 10, batch of 7 url_access: balance 3, one batch record of seven 1s."""
        self.service.open_account("u1", 10)

        result = self.service.consume_tokens(
            "u1", "batchopen", "url_access", ConsumeOptions(batch_size=7)
        )

        assert result.success
        assert result.new_balance == 3
        assert result.batch_id.startswith("batch_BATCHOPEN_u1_")
        details = self.service.get_batch_operation_details(result.batch_id, "u1")
        assert details.operation_count == 7
        assert [op["tokens_consumed"] for op in details.operations] == [1] * 7
        assert details.total_tokens_consumed == 7

    def test_uneven_batch_split(self):
        """A batch total of 10 over 3 items is recorded as [4, 3, 3]."""
        self.service = build_service(self.db_path, rule=FlatBatchRule(10))
        self.service.open_account("u1", 20)

        result = self.service.consume_tokens(
            "u1", "siterank", "domain_analysis", ConsumeOptions(batch_size=3)
        )

        assert result.tokens_consumed == 10
        details = self.service.get_batch_operation_details(result.batch_id, "u1")
        amounts = [op["tokens_consumed"] for op in details.operations]
        assert amounts == [4, 3, 3]
        assert sum(amounts) == 10
        assert self.balance("u1") == 10

    def test_custom_amount(self):
        """A trusted per-item amount is multiplied by the batch size."""
        self.service.open_account("u1", 20)
        result = self.service.consume_tokens(
            "u1", "siterank", "domain_analysis", ConsumeOptions(batch_size=2, custom_amount=3)
        )
        assert result.tokens_consumed == 6
        assert self.balance("u1") == 14

    def test_caller_batch_id(self):
        """A caller-supplied batch id is used as-is."""
        self.service.open_account("u1", 20)
        result = self.service.consume_tokens(
            "u1", "siterank", "domain_analysis",
            ConsumeOptions(batch_size=2, batch_id="batch_external_1")
        )
        assert result.batch_id == "batch_external_1"
        assert self.service.get_batch_operation_details("batch_external_1", "u1") is not None

    def test_batch_id_on_single_operation_rejected(self):
        """A batch id without a batch fails before the debit and leaves no record."""
        self.service.open_account("u1", 20)
        with pytest.raises(ValidationError, match="batch_id"):
            self.service.consume_tokens(
                "u1", "siterank", "domain_analysis", ConsumeOptions(batch_id="batch_external_4")
            )
        assert self.balance("u1") == 20
        assert self.service.get_user_token_history("u1").total == 0

    def test_explicit_operations(self):
        """Explicit operations debit exactly the sum of their amounts."""
        self.service.open_account("u1", 20)
        operations = [
            Operation(amount=2, metadata={"type": "puppeteer"}, description="render"),
            Operation(amount=3, metadata={"type": "puppeteer"}),
        ]

        result = self.service.consume_tokens(
            "u1", "batchopen", "puppeteer", ConsumeOptions(operations=operations)
        )

        assert result.tokens_consumed == 5
        assert self.balance("u1") == 15
        details = self.service.get_batch_operation_details(result.batch_id, "u1")
        assert [op["tokens_consumed"] for op in details.operations] == [2, 3]
        assert details.operations[0]["description"] == "render"
        assert details.summary["operation_types"] == {"puppeteer": 2}

    def test_consume_batch_tokens_prices_each_operation(self):
        """consume_batch_tokens charges the unit cost once per operation."""
        self.service.open_account("u1", 20)
        result = self.service.consume_batch_tokens(
            "u1", "batchopen", "puppeteer",
            [{"metadata": {"url": "https://a.example"}}, {"description": "second"}, {}]
        )
        assert result.tokens_consumed == 6
        details = self.service.get_batch_operation_details(result.batch_id, "u1")
        assert details.operations[0]["metadata"] == {"url": "https://a.example"}
        assert details.operations[1]["description"] == "second"

    @pytest.mark.parametrize("options", [
        ConsumeOptions(operations=[]),
        ConsumeOptions(operations=[Operation(amount=0)]),
        ConsumeOptions(operations=[Operation(amount=1)], batch_size=2),
        ConsumeOptions(operations=[Operation(amount=1)], custom_amount=1),
        ConsumeOptions(batch_size=0),
        ConsumeOptions(batch_id="batch_external_2"),
        ConsumeOptions(batch_size=1, batch_id="batch_external_3"),
    ])
    def test_invalid_options(self, options):
        """Malformed options raise before any state change."""
        self.service.open_account("u1", 20)
        with pytest.raises(ValidationError):
            self.service.consume_tokens("u1", "batchopen", "url_access", options)
        assert self.balance("u1") == 20


class TestAtomicity(ConsumptionTestCase):
    """Test that debit and usage record commit together."""

    def test_record_failure_rolls_back_debit(self):
        """If the usage record cannot be written, the debit is undone."""
        self.service.open_account("u1", 10)
        recorder = self.service.consumption.recorder

        with patch.object(recorder, "record_single", side_effect=RuntimeError("disk full")):
            result = self.service.consume_tokens("u1", "siterank", "domain_analysis")

        assert not result.success
        assert result.error_code is ErrorCode.TOKEN_CONSUME_FAILED
        assert result.state is ConsumptionState.RECORDING
        assert self.balance("u1") == 10
        assert self.service.get_user_token_history("u1").total == 0
        assert self.service.repository.fetch_transactions("u1") == []


class TestSideEffects(ConsumptionTestCase):
    """Test notifications and balance events after consumption."""

    def test_balance_event_published(self):
        """A successful consume publishes the new balance."""
        self.service.open_account("u1", 10)
        self.service.consume_tokens("u1", "siterank", "domain_analysis")
        assert self.events == [{"userId": "u1", "balance": 9, "consumed": 1}]

    def test_bus_keeps_no_payloads(self):
        """Published payloads reach subscribers and are not kept on the bus."""
        bus = LocalEventBus()
        for balance in range(200):
            bus.publish(BALANCE_UPDATED_TOPIC, {"userId": "u1", "balance": balance})
        assert vars(bus) == {"_handlers": {}}

    def test_default_wiring_keeps_no_payloads(self):
        """A service built without a bus still publishes without accumulating state."""
        service = build_service(self.db_path)
        service.open_account("u2", 100)
        for _ in range(50):
            assert service.consume_tokens("u2", "siterank", "domain_analysis").success
        assert vars(service.consumption.dispatcher.event_bus) == {"_handlers": {}}

    def test_low_balance_notification(self):
        """Crossing the low-balance threshold notifies the user."""
        self.service.open_account("u1", 6)
        self.service.consume_tokens("u1", "siterank", "domain_analysis")
        self.notifier.send.assert_called_once_with("u1", "LOW_TOKEN_BALANCE", 5)

    def test_notifier_failure_does_not_fail_consume(self):
        """A broken notifier is logged and the consume still succeeds."""
        self.notifier.send.side_effect = RuntimeError("smtp down")
        self.service.open_account("u1", 1)
        result = self.service.consume_tokens("u1", "siterank", "domain_analysis")
        assert result.success
        assert self.balance("u1") == 0

    def test_event_handler_failure_does_not_fail_consume(self):
        """A raising subscriber does not affect the result."""
        self.event_bus.subscribe(BALANCE_UPDATED_TOPIC, Mock(side_effect=RuntimeError("bus down")))
        self.service.open_account("u1", 10)
        result = self.service.consume_tokens("u1", "siterank", "domain_analysis")
        assert result.success
        assert result.to_dict() == {"success": True, "newBalance": 9, "tokensConsumed": 1}
