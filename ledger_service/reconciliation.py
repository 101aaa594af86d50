"""Job-level reconciliation: was this job charged, was it refunded, does the balance match the log."""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from common.error_handling import ConsistencyViolation
from common.retry import STORAGE_RETRY_CONFIG, RetryConfig, retry_async
from common.schemas import LedgerResult, ReconciliationResponse, TransactionRecord
from common.tracing import ledger_tracer
from ledger_service.models import KIND_REFUND, KIND_USAGE, CreditTransaction
from ledger_service.store import LedgerStore, not_found_transaction

logger = logging.getLogger(__name__)

def check_invariant(store: LedgerStore, db: Session, account_id: str) -> int:
    """Raise ConsistencyViolation unless the cached balance equals the ledger sum."""
    balance = store.read_balance(db, account_id)
    ledger_sum = store.sum_amounts(db, account_id)
    if balance != ledger_sum:
        logger.critical(
            f"Ledger invariant violated for account {account_id}: balance={balance} ledger_sum={ledger_sum}",
            extra={"account_id": account_id, "balance": balance, "ledger_sum": ledger_sum},
        )
        raise ConsistencyViolation(account_id, balance, ledger_sum)
    return balance

class ReconciliationQuery:
    """Read-only lookups that gate refund decisions; always served from the primary store."""

    def __init__(self, session_factory, store: LedgerStore):
        self._sessions = session_factory
        self._store = store

    def find_usage(self, account_id: str, job_id: str) -> Optional[CreditTransaction]:
        with self._sessions() as db:
            return self._store.find_by_account_kind_and_job(db, account_id, KIND_USAGE, job_id)

    def find_refund(self, account_id: str, job_id: str) -> Optional[CreditTransaction]:
        with self._sessions() as db:
            return self._store.find_by_account_kind_and_job(db, account_id, KIND_REFUND, job_id)

    def reconcile(self, account_id: str, job_id: str) -> ReconciliationResponse:
        with self._sessions() as db:
            self._store.read_balance(db, account_id)
            usage = self._store.find_by_account_kind_and_job(db, account_id, KIND_USAGE, job_id)
            refund = self._store.find_by_account_kind_and_job(db, account_id, KIND_REFUND, job_id)
        return ReconciliationResponse(
            account_id=account_id,
            job_id=job_id,
            usage=_record(usage),
            refund=_record(refund),
            charged_amount=abs(usage.amount) if usage else 0,
            refundable=usage is not None and refund is None,
        )

    def verify_account(self, account_id: str) -> int:
        with self._sessions() as db:
            return check_invariant(self._store, db, account_id)

    def audit_all(self) -> List[ConsistencyViolation]:
        """Check every account; violations are collected, not raised."""
        with self._sessions() as db:
            account_ids = self._store.account_ids(db)
        violations = []
        for account_id in account_ids:
            try:
                self.verify_account(account_id)
            except ConsistencyViolation as violation:
                violations.append(violation)
        logger.info(f"Ledger audit finished: {len(account_ids)} accounts, {len(violations)} violations")
        return violations

def _record(tx: Optional[CreditTransaction]) -> Optional[TransactionRecord]:
    if tx is None:
        return None
    return TransactionRecord.model_validate(tx, from_attributes=True)

async def refund_failed_job(
    ledger,
    account_id: str,
    job_id: str,
    reason: Optional[str] = None,
    retry_config: RetryConfig = STORAGE_RETRY_CONFIG,
) -> LedgerResult:
    """Refund the amount originally charged for a failed job.

    Looks up the job's usage transaction so the refund mirrors the charge,
    then refunds through the idempotent Refund operation. Storage failures
    are retried; a retry after a committed refund reports already_processed.
    """
    with ledger_tracer.span("jobs.refund_failed", account_id, job_id) as span:
        usage = ledger.reconciliation.find_usage(account_id, job_id)
        if usage is None:
            logger.warning(f"No credit transaction found for task {job_id}", extra={"account_id": account_id})
            raise not_found_transaction(account_id, KIND_USAGE, job_id)

        amount = abs(usage.amount)
        description = f"Video generation failed: {reason or 'Unknown error'}"
        result = await retry_async(
            ledger.operations.refund, retry_config, account_id, amount, description, job_id, usage.video_ref
        )
        span.tag(amount=amount, already_processed=result.already_processed)
        if result.already_processed:
            logger.info(f"Refund already processed for task {job_id}", extra={"account_id": account_id})
        return result
