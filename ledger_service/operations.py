"""Balance-mutating ledger operations: deduction, refund and grants.

Each operation is one database transaction: the conditional balance update,
the transaction row and the outbox event commit together or not at all.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from common.error_handling import BusinessLogicError, ErrorCodes
from common.kafka import TOPIC_CREDIT_EVENTS
from common.schemas import CreditEvent, LedgerResult
from common.settings import settings
from common.tracing import get_current_trace_id, ledger_tracer
from ledger_service.models import (
    GRANT_KINDS, KIND_BONUS, KIND_REFUND, KIND_USAGE, CreditTransaction,
)
from ledger_service.reconciliation import check_invariant
from ledger_service.store import DuplicateTransactionError, LedgerStore, describe, storage_errors

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    KIND_USAGE: "CreditsDeducted",
    KIND_REFUND: "CreditsRefunded",
}

def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise BusinessLogicError(
            ErrorCodes.VALIDATION_ERROR, "amount must be a positive integer", field="amount"
        )

def _require_job_id(job_id: Optional[str]) -> None:
    if not isinstance(job_id, str) or not job_id.strip():
        raise BusinessLogicError(
            ErrorCodes.VALIDATION_ERROR, "job_id must be a non-empty string", field="job_id"
        )

class LedgerOperations:

    def __init__(self, session_factory, store: LedgerStore, verify_invariant: Optional[bool] = None):
        self._sessions = session_factory
        self._store = store
        self._verify_invariant = settings.verify_invariant_on_write if verify_invariant is None else verify_invariant

    def deduct(
        self,
        account_id: str,
        amount: int,
        description: str,
        job_id: str,
        video_ref: Optional[str] = None,
    ) -> LedgerResult:
        """Spend credits for a job about to start.

        Raises InsufficientCreditsError (nothing written) when the balance
        cannot cover the amount. A repeated deduction for the same job is
        rolled back and reported as already processed.
        """
        _require_positive(amount)
        _require_job_id(job_id)
        with ledger_tracer.span("credits.deduct", account_id, job_id), self._sessions() as db:
            existing = self._store.find_by_account_kind_and_job(db, account_id, KIND_USAGE, job_id)
            if existing is not None:
                logger.warning(f"Task {job_id} already charged", extra={"account_id": account_id})
                return LedgerResult(
                    account_id=account_id,
                    balance=self._store.read_balance(db, account_id),
                    transaction_id=existing.id,
                    already_processed=True,
                )
            try:
                balance = self._store.adjust_balance(db, account_id, -amount)
                tx_id = self._store.append(db, CreditTransaction(
                    account_id=account_id,
                    kind=KIND_USAGE,
                    amount=-amount,
                    description=describe(description, job_id),
                    job_id=job_id,
                    video_ref=video_ref,
                    created_at=datetime.now(timezone.utc),
                ))
                self._finish(db, account_id, KIND_USAGE, amount, balance, tx_id, job_id)
            except DuplicateTransactionError:
                db.rollback()
                logger.warning(f"Duplicate deduction ignored for task {job_id}", extra={"account_id": account_id})
                return LedgerResult(
                    account_id=account_id,
                    balance=self._store.read_balance(db, account_id),
                    already_processed=True,
                )

        logger.info(f"Credits deducted: account={account_id} amount={amount} remaining={balance} task={job_id}",
                    extra={"trace_id": get_current_trace_id()})
        return LedgerResult(account_id=account_id, balance=balance, transaction_id=tx_id)

    def refund(
        self,
        account_id: str,
        amount: int,
        description: str,
        job_id: str,
        video_ref: Optional[str] = None,
    ) -> LedgerResult:
        """Return credits for a failed job, at most once per (account, job).

        Safe under at-least-once delivery: an existing refund row, found up
        front or by a concurrent insert tripping the uniqueness constraint,
        yields already_processed=True and no balance change.
        """
        _require_positive(amount)
        _require_job_id(job_id)
        with ledger_tracer.span("credits.refund", account_id, job_id), self._sessions() as db:
            existing = self._store.find_by_account_kind_and_job(db, account_id, KIND_REFUND, job_id)
            if existing is not None:
                logger.info(f"Refund already processed for task {job_id}", extra={"account_id": account_id})
                return LedgerResult(
                    account_id=account_id,
                    balance=self._store.read_balance(db, account_id),
                    transaction_id=existing.id,
                    already_processed=True,
                )
            try:
                # Balance row first, same lock order as deduct
                balance = self._store.adjust_balance(db, account_id, amount)
                tx_id = self._store.append(db, CreditTransaction(
                    account_id=account_id,
                    kind=KIND_REFUND,
                    amount=amount,
                    description=describe(description, job_id),
                    job_id=job_id,
                    video_ref=video_ref,
                    created_at=datetime.now(timezone.utc),
                ))
                self._finish(db, account_id, KIND_REFUND, amount, balance, tx_id, job_id)
            except DuplicateTransactionError:
                db.rollback()
                existing = self._store.find_by_account_kind_and_job(db, account_id, KIND_REFUND, job_id)
                logger.info(f"Concurrent refund for task {job_id} already committed", extra={"account_id": account_id})
                return LedgerResult(
                    account_id=account_id,
                    balance=self._store.read_balance(db, account_id),
                    transaction_id=existing.id if existing else None,
                    already_processed=True,
                )

        logger.info(f"Credits refunded: account={account_id} amount={amount} balance={balance} task={job_id}",
                    extra={"trace_id": get_current_trace_id()})
        return LedgerResult(account_id=account_id, balance=balance, transaction_id=tx_id)

    def grant_credits(
        self,
        account_id: str,
        amount: int,
        kind: str,
        description: str,
        subscription_ref: Optional[str] = None,
    ) -> LedgerResult:
        """Add purchased, subscription or bonus credits."""
        _require_positive(amount)
        if kind not in GRANT_KINDS:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, f"Unsupported grant kind: {kind}", field="kind")
        with ledger_tracer.span("credits.grant", account_id), self._sessions() as db:
            balance, tx_id = self._grant(db, account_id, amount, kind, description, subscription_ref)

        logger.info(f"Credits added: account={account_id} amount={amount} kind={kind} balance={balance}")
        return LedgerResult(account_id=account_id, balance=balance, transaction_id=tx_id)

    def open_account(self, account_id: str, initial_credits: Optional[int] = None) -> LedgerResult:
        """Create an account; starting credits are booked as a bonus so the log explains them."""
        if initial_credits is None:
            initial_credits = settings.default_account_credits
        if not isinstance(initial_credits, int) or isinstance(initial_credits, bool) or initial_credits < 0:
            raise BusinessLogicError(
                ErrorCodes.VALIDATION_ERROR, "initial_credits must be a non-negative integer", field="initial_credits"
            )
        with ledger_tracer.span("accounts.open", account_id), self._sessions() as db:
            if not self._store.create_account(db, account_id):
                return LedgerResult(
                    account_id=account_id,
                    balance=self._store.read_balance(db, account_id),
                    already_processed=True,
                )
            tx_id = None
            balance = 0
            if initial_credits > 0:
                balance, tx_id = self._grant(db, account_id, initial_credits, KIND_BONUS, "Welcome credits")
            else:
                with storage_errors("open_account"):
                    db.commit()

        logger.info(f"Account opened: account={account_id} credits={balance}")
        return LedgerResult(account_id=account_id, balance=balance, transaction_id=tx_id)

    def _grant(self, db, account_id, amount, kind, description, subscription_ref=None):
        balance = self._store.adjust_balance(db, account_id, amount)
        tx_id = self._store.append(db, CreditTransaction(
            account_id=account_id,
            kind=kind,
            amount=amount,
            description=description,
            subscription_ref=subscription_ref,
            created_at=datetime.now(timezone.utc),
        ))
        self._finish(db, account_id, kind, amount, balance, tx_id)
        return balance, tx_id

    def _finish(self, db, account_id, kind, amount, balance, tx_id, job_id=None):
        """Verify the invariant, enqueue the event and commit."""
        if self._verify_invariant:
            check_invariant(self._store, db, account_id)
        event = CreditEvent(
            type=EVENT_TYPES.get(kind, "CreditsGranted"),
            account_id=account_id,
            kind=kind,
            amount=-amount if kind == KIND_USAGE else amount,
            balance=balance,
            transaction_id=tx_id,
            job_id=job_id,
        )
        self._store.enqueue_event(db, TOPIC_CREDIT_EVENTS, event.model_dump_json())
        with storage_errors("commit"):
            db.commit()
