#!/usr/bin/env python3
"""
Unit Tests for the credit ledger
Store primitives, deduction, refund, balance reader, reconciliation and pricing.
"""

import asyncio
import json
import unittest
from datetime import datetime, timedelta, timezone

from confluent_kafka import KafkaException

from common.error_handling import (
    BusinessLogicError, ConsistencyViolation, ErrorCodes, InsufficientCreditsError,
    InvalidCombinationError, NotFoundError, StorageError,
)
from common.retry import RetryConfig
from ledger_service.audit_worker import run_audit
from ledger_service.models import CreditTransaction
from ledger_service.outbox_worker import publish_pending
from ledger_service.pricing import quote_generation_cost
from ledger_service.reconciliation import refund_failed_job
from ledger_service.store import DuplicateTransactionError, describe

from ledger_case import LedgerTestCase


def miss_first_lookup(test, store):
    """Make the next up-front job lookup miss, as if a concurrent writer had not committed yet."""
    real = store.find_by_account_kind_and_job
    calls = []

    def lookup(*args):
        calls.append(args)
        return None if len(calls) == 1 else real(*args)

    store.find_by_account_kind_and_job = lookup
    test.addCleanup(delattr, store, "find_by_account_kind_and_job")
    return calls


def record_calls(test, store, *names):
    """Log the order in which the named store methods are called."""
    order = []
    for name in names:
        real = getattr(store, name)

        def spy(*args, _name=name, _real=real):
            order.append(_name)
            return _real(*args)

        setattr(store, name, spy)
        test.addCleanup(delattr, store, name)
    return order


class TestLedgerStore(LedgerTestCase):
    """Storage primitives used by every operation"""

    def setUp(self):
        super().setUp()
        self.store = self.ledger.store
        self.open_account("user-1", 50)

    def test_adjust_balance_applies_signed_delta(self):
        with self.sessions() as db:
            self.assertEqual(self.store.adjust_balance(db, "user-1", -20), 30)
            self.assertEqual(self.store.adjust_balance(db, "user-1", 5), 35)

    def test_adjust_balance_refuses_to_go_negative(self):
        with self.sessions() as db:
            with self.assertRaises(InsufficientCreditsError) as ctx:
                self.store.adjust_balance(db, "user-1", -51)
            self.assertEqual(ctx.exception.available, 50)
            self.assertEqual(ctx.exception.requested, 51)
            self.assertEqual(self.store.read_balance(db, "user-1"), 50)

    def test_adjust_balance_unknown_account(self):
        with self.sessions() as db:
            with self.assertRaises(NotFoundError):
                self.store.adjust_balance(db, "ghost", 10)

    def test_append_rejects_unknown_account(self):
        with self.sessions() as db:
            with self.assertRaises(StorageError):
                self.store.append(db, CreditTransaction(
                    account_id="ghost", kind="purchase", amount=5, description="x",
                    created_at=datetime.now(timezone.utc),
                ))

    def test_append_detects_duplicate_job_row(self):
        def usage():
            return CreditTransaction(
                account_id="user-1", kind="usage", amount=-5, description=describe("gen", "t1"),
                job_id="t1", created_at=datetime.now(timezone.utc),
            )

        with self.sessions() as db:
            self.store.append(db, usage())
            with self.assertRaises(DuplicateTransactionError):
                self.store.append(db, usage())

    def test_list_transactions_newest_first(self):
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        with self.sessions() as db:
            for i in range(3):
                self.store.append(db, CreditTransaction(
                    account_id="user-1", kind="purchase", amount=1, description=f"p{i}",
                    created_at=base + timedelta(days=i),
                ))
            db.commit()

        with self.sessions() as db:
            items, total = self.store.list_transactions(db, "user-1", page=1, page_size=2)
        self.assertEqual(total, 4)  # three purchases plus the welcome bonus
        self.assertEqual([tx.description for tx in items], ["Welcome credits", "p2"])

    def test_find_by_account_kind_and_job(self):
        self.ledger.operations.deduct("user-1", 10, "gen", "t1")
        with self.sessions() as db:
            found = self.store.find_by_account_kind_and_job(db, "user-1", "usage", "t1")
            self.assertIsNotNone(found)
            self.assertIn("Task: t1", found.description)
            self.assertIsNone(self.store.find_by_account_kind_and_job(db, "user-1", "refund", "t1"))
            self.assertIsNone(self.store.find_by_account_kind_and_job(db, "user-2", "usage", "t1"))


class TestOpenAccount(LedgerTestCase):

    def test_initial_credits_recorded_as_bonus(self):
        result = self.open_account("user-1", 100)
        self.assertEqual(result.balance, 100)
        bonus = self.transactions("user-1")
        self.assertEqual(len(bonus), 1)
        self.assertEqual(bonus[0].kind, "bonus")
        self.assertEqual(bonus[0].amount, 100)

    def test_reopen_is_a_no_op(self):
        self.open_account("user-1", 100)
        again = self.open_account("user-1", 500)
        self.assertTrue(again.already_processed)
        self.assertEqual(again.balance, 100)
        self.assertEqual(len(self.transactions("user-1")), 1)

    def test_zero_initial_credits(self):
        result = self.open_account("user-1", 0)
        self.assertEqual(result.balance, 0)
        self.assertEqual(self.transactions("user-1"), [])
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 0)

    def test_negative_initial_credits_rejected(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.open_account("user-1", -5)
        self.assertEqual(ctx.exception.field, "initial_credits")
        with self.assertRaises(NotFoundError):
            self.ledger.balances.get_balance("user-1")


class TestDeduction(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.open_account("user-1", 100)

    def test_deduct_records_usage(self):
        result = self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        self.assertEqual(result.balance, 80)
        self.assertFalse(result.already_processed)

        usage = self.transactions("user-1", "usage")
        self.assertEqual(len(usage), 1)
        self.assertEqual(usage[0].amount, -20)
        self.assertEqual(usage[0].description, "gen - Task: t1")
        self.assertEqual(usage[0].job_id, "t1")
        self.assertEqual(usage[0].id, result.transaction_id)

    def test_insufficient_credits_changes_nothing(self):
        before = self.transactions("user-1")
        with self.assertRaises(InsufficientCreditsError) as ctx:
            self.ledger.operations.deduct("user-1", 101, "gen", "t1")
        self.assertEqual(ctx.exception.code, ErrorCodes.INSUFFICIENT_CREDITS)
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 100)
        self.assertEqual(len(self.transactions("user-1")), len(before))

    def test_exact_balance_can_be_spent(self):
        result = self.ledger.operations.deduct("user-1", 100, "gen", "t1")
        self.assertEqual(result.balance, 0)

    def test_unknown_account(self):
        with self.assertRaises(NotFoundError):
            self.ledger.operations.deduct("ghost", 10, "gen", "t1")

    def test_second_deduction_for_same_job_is_not_charged(self):
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        again = self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        self.assertTrue(again.already_processed)
        self.assertEqual(again.balance, 80)
        self.assertEqual(len(self.transactions("user-1", "usage")), 1)

    def test_rejects_non_positive_amount(self):
        for amount in (0, -5):
            with self.assertRaises(BusinessLogicError) as ctx:
                self.ledger.operations.deduct("user-1", amount, "gen", "t1")
            self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)

    def test_rejects_missing_job_id(self):
        for job_id in (None, "", "   "):
            with self.assertRaises(BusinessLogicError) as ctx:
                self.ledger.operations.deduct("user-1", 20, "gen", job_id)
            self.assertEqual(ctx.exception.field, "job_id")
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 100)
        self.assertEqual(self.transactions("user-1", "usage"), [])

    def test_conflicting_insert_for_same_job_rolls_back(self):
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        events = len(self.outbox_rows())
        lookups = miss_first_lookup(self, self.ledger.store)

        again = self.ledger.operations.deduct("user-1", 20, "gen", "t1")

        self.assertGreaterEqual(len(lookups), 2)
        self.assertTrue(again.already_processed)
        self.assertEqual(again.balance, 80)
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 80)
        self.assertEqual(len(self.transactions("user-1", "usage")), 1)
        self.assertEqual(len(self.outbox_rows()), events)


class TestRefund(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.open_account("user-1", 100)

    def test_scenario_deduct_refund_refund_again(self):
        ops = self.ledger.operations
        self.assertEqual(ops.deduct("user-1", 20, "gen", "t1").balance, 80)

        first = ops.refund("user-1", 20, "failed", "t1")
        self.assertEqual(first.balance, 100)
        self.assertFalse(first.already_processed)
        refunds = self.transactions("user-1", "refund")
        self.assertEqual(len(refunds), 1)
        self.assertEqual(refunds[0].amount, 20)
        self.assertEqual(refunds[0].description, "failed - Task: t1")

        second = ops.refund("user-1", 20, "failed", "t1")
        self.assertTrue(second.already_processed)
        self.assertEqual(second.balance, 100)
        self.assertEqual(second.transaction_id, first.transaction_id)
        self.assertEqual(len(self.transactions("user-1", "refund")), 1)

    def test_refunds_for_different_jobs_are_independent(self):
        ops = self.ledger.operations
        ops.deduct("user-1", 20, "gen", "t1")
        ops.deduct("user-1", 30, "gen", "t2")
        ops.refund("user-1", 20, "failed", "t1")
        result = ops.refund("user-1", 30, "failed", "t2")
        self.assertEqual(result.balance, 100)
        self.assertEqual(len(self.transactions("user-1", "refund")), 2)

    def test_unknown_account(self):
        with self.assertRaises(NotFoundError):
            self.ledger.operations.refund("ghost", 20, "failed", "t1")

    def test_same_job_on_another_account_is_not_a_duplicate(self):
        self.open_account("user-2", 100)
        self.ledger.operations.refund("user-1", 5, "failed", "t1")
        result = self.ledger.operations.refund("user-2", 5, "failed", "t1")
        self.assertFalse(result.already_processed)
        self.assertEqual(result.balance, 105)

    def test_rejects_missing_job_id(self):
        for job_id in (None, ""):
            with self.assertRaises(BusinessLogicError) as ctx:
                self.ledger.operations.refund("user-1", 20, "failed", job_id)
            self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)
            self.assertEqual(ctx.exception.field, "job_id")
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 100)
        self.assertEqual(self.transactions("user-1", "refund"), [])

    def test_conflicting_insert_reports_already_processed(self):
        ops = self.ledger.operations
        ops.deduct("user-1", 20, "gen", "t1")
        first = ops.refund("user-1", 20, "failed", "t1")
        events = len(self.outbox_rows())
        miss_first_lookup(self, self.ledger.store)

        second = ops.refund("user-1", 20, "failed", "t1")

        self.assertTrue(second.already_processed)
        self.assertEqual(second.transaction_id, first.transaction_id)
        self.assertEqual(second.balance, 100)
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 100)
        self.assertEqual(len(self.transactions("user-1", "refund")), 1)
        self.assertEqual(len(self.outbox_rows()), events)
        self.assertEqual(self.ledger.reconciliation.verify_account("user-1"), 100)

    def test_balance_row_is_updated_before_the_refund_row(self):
        order = record_calls(self, self.ledger.store, "adjust_balance", "append")
        self.ledger.operations.refund("user-1", 20, "failed", "t1")
        self.assertEqual(order, ["adjust_balance", "append"])

    def test_deduct_uses_the_same_write_order(self):
        order = record_calls(self, self.ledger.store, "adjust_balance", "append")
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        self.assertEqual(order, ["adjust_balance", "append"])


class TestInvariant(LedgerTestCase):
    """balance == sum(transaction amounts) for every account"""

    def test_holds_across_mixed_operations(self):
        self.open_account("user-1", 100)
        ops = self.ledger.operations
        ops.deduct("user-1", 20, "gen", "t1")
        ops.deduct("user-1", 25, "gen", "t2")
        ops.refund("user-1", 20, "failed", "t1")
        ops.grant_credits("user-1", 250, "purchase", "Credit purchase - standard package")
        ops.grant_credits("user-1", 100, "subscription-grant", "Monthly credits", subscription_ref="sub-1")
        with self.assertRaises(InsufficientCreditsError):
            ops.deduct("user-1", 10_000, "gen", "t3")

        self.assertEqual(self.ledger.balances.get_balance("user-1"), 425)
        self.assertEqual(self.ledger_sum("user-1"), 425)
        self.assertEqual(self.ledger.reconciliation.verify_account("user-1"), 425)

    def test_divergence_is_reported(self):
        self.open_account("user-1", 100)
        self.corrupt_balance("user-1", 90)
        with self.assertRaises(ConsistencyViolation) as ctx:
            self.ledger.reconciliation.verify_account("user-1")
        self.assertEqual(ctx.exception.balance, 90)
        self.assertEqual(ctx.exception.ledger_sum, 100)

    def test_write_on_diverged_account_is_aborted(self):
        self.open_account("user-1", 100)
        self.corrupt_balance("user-1", 90)
        with self.assertRaises(ConsistencyViolation):
            self.ledger.operations.deduct("user-1", 10, "gen", "t1")
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 90)
        self.assertEqual(self.transactions("user-1", "usage"), [])

    def test_audit_counts_diverged_accounts(self):
        self.open_account("user-1", 100)
        self.open_account("user-2", 100)
        self.corrupt_balance("user-2", 7)
        self.assertEqual(run_audit(self.ledger), 1)
        violations = self.ledger.reconciliation.audit_all()
        self.assertEqual([v.account_id for v in violations], ["user-2"])


class TestBalanceReader(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.open_account("user-1", 100)

    def test_get_balance_unknown_account(self):
        with self.assertRaises(NotFoundError):
            self.ledger.balances.get_balance("ghost")

    def test_history_normalizes_amounts(self):
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        history = self.ledger.balances.get_history("user-1", page=1, page_size=10)

        usage = next(item for item in history.transactions if item.type == "usage")
        self.assertEqual(usage.amount, 20)
        self.assertFalse(usage.is_credit)
        self.assertEqual(usage.job_id, "t1")

        bonus = next(item for item in history.transactions if item.type == "bonus")
        self.assertEqual(bonus.amount, 100)
        self.assertTrue(bonus.is_credit)

    def test_history_pagination(self):
        for i in range(4):
            self.ledger.operations.deduct("user-1", 1, "gen", f"t{i}")

        first = self.ledger.balances.get_history("user-1", page=1, page_size=2)
        self.assertEqual(first.pagination.total, 5)
        self.assertEqual(first.pagination.total_pages, 3)
        self.assertTrue(first.pagination.has_more)
        self.assertEqual([item.job_id for item in first.transactions], ["t3", "t2"])

        last = self.ledger.balances.get_history("user-1", page=3, page_size=2)
        self.assertFalse(last.pagination.has_more)
        self.assertEqual([item.type for item in last.transactions], ["bonus"])

    def test_history_rejects_bad_paging(self):
        with self.assertRaises(BusinessLogicError):
            self.ledger.balances.get_history("user-1", page=0, page_size=10)
        with self.assertRaises(BusinessLogicError):
            self.ledger.balances.get_history("user-1", page=1, page_size=10_000)

    def test_history_unknown_account(self):
        with self.assertRaises(NotFoundError):
            self.ledger.balances.get_history("ghost")

    def test_usage_stats(self):
        ops = self.ledger.operations
        ops.deduct("user-1", 20, "gen", "t1")
        ops.deduct("user-1", 25, "gen", "t2")
        ops.refund("user-1", 20, "failed", "t1")
        ops.grant_credits("user-1", 250, "purchase", "Credit purchase")

        stats = self.ledger.balances.get_usage_stats("user-1")
        self.assertEqual(stats.total_spent, 45)
        self.assertEqual(stats.total_purchased, 350)
        self.assertEqual(stats.total_refunded, 20)
        self.assertEqual(stats.current_balance, 325)
        self.assertEqual(stats.video_generation_count, 2)
        self.assertEqual(stats.average_per_video, 22)

    def test_usage_stats_without_usage(self):
        stats = self.ledger.balances.get_usage_stats("user-1")
        self.assertEqual(stats.video_generation_count, 0)
        self.assertEqual(stats.average_per_video, 0)

    def test_check_credits(self):
        check = self.ledger.balances.check_credits("user-1", 8, "720p")
        self.assertTrue(check.sufficient)
        self.assertEqual(check.cost, 30)
        self.ledger.operations.deduct("user-1", 80, "gen", "t1")
        check = self.ledger.balances.check_credits("user-1", 5, "1080p")
        self.assertFalse(check.sufficient)
        self.assertEqual(check.available_credits, 20)


class FlakyOperations:
    """Fails the first refund attempts with a storage error, then delegates."""

    def __init__(self, operations, failures: int):
        self._operations = operations
        self.failures = failures
        self.calls = 0

    def refund(self, *args):
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageError("connection reset")
        return self._operations.refund(*args)


class FlakyLedger:

    def __init__(self, ledger, failures: int):
        self.reconciliation = ledger.reconciliation
        self.operations = FlakyOperations(ledger.operations, failures)


NO_DELAY = RetryConfig(max_attempts=3, base_delay=0, jitter=False, retryable_exceptions=[StorageError])


class TestReconciliation(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.open_account("user-1", 100)

    def test_find_usage_and_refund(self):
        query = self.ledger.reconciliation
        self.assertIsNone(query.find_usage("user-1", "t1"))
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        self.assertEqual(query.find_usage("user-1", "t1").amount, -20)
        self.assertIsNone(query.find_refund("user-1", "t1"))
        self.ledger.operations.refund("user-1", 20, "failed", "t1")
        self.assertEqual(query.find_refund("user-1", "t1").amount, 20)

    def test_reconcile_reports_refundable_jobs(self):
        query = self.ledger.reconciliation
        self.ledger.operations.deduct("user-1", 25, "gen", "t1")

        state = query.reconcile("user-1", "t1")
        self.assertTrue(state.refundable)
        self.assertEqual(state.charged_amount, 25)
        self.assertIsNone(state.refund)

        self.ledger.operations.refund("user-1", 25, "failed", "t1")
        state = query.reconcile("user-1", "t1")
        self.assertFalse(state.refundable)
        self.assertEqual(state.refund.amount, 25)

        unknown = query.reconcile("user-1", "never-charged")
        self.assertFalse(unknown.refundable)
        self.assertEqual(unknown.charged_amount, 0)

    def test_refund_failed_job_mirrors_the_charge(self):
        self.ledger.operations.deduct("user-1", 30, "gen", "t1", video_ref="vid-9")
        result = asyncio.run(refund_failed_job(self.ledger, "user-1", "t1", "provider timeout", NO_DELAY))
        self.assertEqual(result.balance, 100)

        refund = self.ledger.reconciliation.find_refund("user-1", "t1")
        self.assertEqual(refund.amount, 30)
        self.assertEqual(refund.video_ref, "vid-9")
        self.assertEqual(refund.description, "Video generation failed: provider timeout - Task: t1")

        again = asyncio.run(refund_failed_job(self.ledger, "user-1", "t1", None, NO_DELAY))
        self.assertTrue(again.already_processed)

    def test_refund_failed_job_without_charge(self):
        with self.assertRaises(NotFoundError) as ctx:
            asyncio.run(refund_failed_job(self.ledger, "user-1", "t1", None, NO_DELAY))
        self.assertEqual(ctx.exception.code, ErrorCodes.TRANSACTION_NOT_FOUND)

    def test_refund_failed_job_retries_storage_errors(self):
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        flaky = FlakyLedger(self.ledger, failures=2)
        result = asyncio.run(refund_failed_job(flaky, "user-1", "t1", None, NO_DELAY))
        self.assertEqual(flaky.operations.calls, 3)
        self.assertEqual(result.balance, 100)

    def test_refund_failed_job_gives_up_after_max_attempts(self):
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        flaky = FlakyLedger(self.ledger, failures=5)
        with self.assertRaises(StorageError):
            asyncio.run(refund_failed_job(flaky, "user-1", "t1", None, NO_DELAY))
        self.assertEqual(flaky.operations.calls, 3)
        self.assertEqual(self.ledger.balances.get_balance("user-1"), 80)


class FakeProducer:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []

    def produce(self, topic, value):
        if self.fail:
            raise KafkaException("broker down")
        self.messages.append((topic, json.loads(value)))

    def flush(self):
        return 0


class TestOutbox(LedgerTestCase):

    def test_each_movement_enqueues_one_event(self):
        self.open_account("user-1", 100)
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        self.ledger.operations.refund("user-1", 20, "failed", "t1")
        self.ledger.operations.refund("user-1", 20, "failed", "t1")

        events = [json.loads(row.payload) for row in self.outbox_rows()]
        self.assertEqual([e["type"] for e in events], ["CreditsGranted", "CreditsDeducted", "CreditsRefunded"])
        self.assertEqual(events[1]["amount"], -20)
        self.assertEqual(events[1]["job_id"], "t1")
        self.assertEqual(events[2]["balance"], 100)

    def test_rejected_deduction_enqueues_nothing(self):
        self.open_account("user-1", 10)
        with self.assertRaises(InsufficientCreditsError):
            self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        self.assertEqual(len(self.outbox_rows()), 1)

    def test_publish_pending_marks_rows_sent(self):
        self.open_account("user-1", 100)
        self.ledger.operations.deduct("user-1", 20, "gen", "t1")
        producer = FakeProducer()

        self.assertEqual(publish_pending(self.sessions, producer), 2)
        self.assertEqual([topic for topic, _ in producer.messages], ["credit_events", "credit_events"])
        self.assertEqual({row.status for row in self.outbox_rows()}, {"sent"})
        self.assertEqual(publish_pending(self.sessions, producer), 0)

    def test_publish_failure_marks_rows_failed(self):
        self.open_account("user-1", 100)
        self.assertEqual(publish_pending(self.sessions, FakeProducer(fail=True)), 0)
        self.assertEqual({row.status for row in self.outbox_rows()}, {"failed"})


class TestPricing(unittest.TestCase):

    def test_supported_combinations(self):
        self.assertEqual(quote_generation_cost(5, "720p"), 20)
        self.assertEqual(quote_generation_cost(5, "1080p"), 25)
        self.assertEqual(quote_generation_cost(8, "720p"), 30)

    def test_unsupported_combination(self):
        with self.assertRaises(InvalidCombinationError) as ctx:
            quote_generation_cost(8, "1080p")
        self.assertEqual(ctx.exception.code, ErrorCodes.INVALID_COMBINATION)


if __name__ == "__main__":
    unittest.main()
