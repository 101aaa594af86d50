"""Durable storage for credit transactions and per-account balances.

Every method runs inside a caller-owned session so that a balance update and
the transaction row it belongs to commit or roll back together.
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from common.error_handling import ErrorCodes, InsufficientCreditsError, NotFoundError, StorageError
from ledger_service.models import Account, CreditTransaction, Outbox

logger = logging.getLogger(__name__)

TASK_MARKER = "Task: "

class DuplicateTransactionError(Exception):
    """A row for the same (account, kind, job) already exists."""

    def __init__(self, account_id: str, kind: str, job_id: str):
        self.account_id = account_id
        self.kind = kind
        self.job_id = job_id
        super().__init__(f"{kind} transaction for job {job_id} already recorded on account {account_id}")

def describe(description: str, job_id: Optional[str]) -> str:
    """Embed the job reference the way history and support tooling expect it."""
    if not job_id:
        return description
    return f"{description} - {TASK_MARKER}{job_id}"

@contextmanager
def storage_errors(operation: str):
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise StorageError(f"{operation} failed", original_error=e) from e

class LedgerStore:

    def create_account(self, db: Session, account_id: str) -> bool:
        """Insert an account at zero credits. Returns False if it already exists."""
        with storage_errors("create_account"):
            if db.get(Account, account_id) is not None:
                return False
            try:
                with db.begin_nested():
                    db.add(Account(id=account_id, credits=0))
            except IntegrityError:
                return False
            return True

    def append(self, db: Session, tx: CreditTransaction) -> int:
        with storage_errors("append"):
            try:
                with db.begin_nested():
                    db.add(tx)
            except IntegrityError as e:
                if tx.job_id and self.find_by_account_kind_and_job(db, tx.account_id, tx.kind, tx.job_id):
                    raise DuplicateTransactionError(tx.account_id, tx.kind, tx.job_id) from e
                raise StorageError(f"append rejected for account {tx.account_id}", original_error=e) from e
            return tx.id

    def adjust_balance(self, db: Session, account_id: str, delta: int) -> int:
        """Apply a signed delta in one conditional statement; the balance never goes negative."""
        with storage_errors("adjust_balance"):
            stmt = (
                update(Account)
                .where(Account.id == account_id, Account.credits + delta >= 0)
                .values(credits=Account.credits + delta, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            result = db.execute(stmt)
            if result.rowcount == 0:
                current = self._credits(db, account_id)
                if current is None:
                    raise NotFoundError(f"Account {account_id} not found", context={"account_id": account_id})
                raise InsufficientCreditsError(account_id, -delta, current)
            return self._credits(db, account_id)

    def read_balance(self, db: Session, account_id: str) -> int:
        with storage_errors("read_balance"):
            credits = self._credits(db, account_id)
        if credits is None:
            raise NotFoundError(f"Account {account_id} not found", context={"account_id": account_id})
        return credits

    def list_transactions(
        self, db: Session, account_id: str, page: int, page_size: int
    ) -> Tuple[List[CreditTransaction], int]:
        with storage_errors("list_transactions"):
            total = db.execute(
                select(func.count()).select_from(CreditTransaction)
                .where(CreditTransaction.account_id == account_id)
            ).scalar_one()
            items = db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.account_id == account_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).scalars().all()
            return list(items), total

    def find_by_account_kind_and_job(
        self, db: Session, account_id: str, kind: str, job_id: str
    ) -> Optional[CreditTransaction]:
        with storage_errors("find_by_account_kind_and_job"):
            return db.execute(
                select(CreditTransaction).where(
                    CreditTransaction.account_id == account_id,
                    CreditTransaction.kind == kind,
                    CreditTransaction.job_id == job_id,
                )
            ).scalar_one_or_none()

    def sum_amounts(self, db: Session, account_id: str) -> int:
        with storage_errors("sum_amounts"):
            return int(db.execute(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0))
                .where(CreditTransaction.account_id == account_id)
            ).scalar_one())

    def usage_totals(self, db: Session, account_id: str) -> Dict[str, Tuple[int, int]]:
        """Signed amount sum and row count per kind."""
        with storage_errors("usage_totals"):
            rows = db.execute(
                select(CreditTransaction.kind, func.sum(CreditTransaction.amount), func.count())
                .where(CreditTransaction.account_id == account_id)
                .group_by(CreditTransaction.kind)
            ).all()
            return {kind: (int(total or 0), int(count)) for kind, total, count in rows}

    def account_ids(self, db: Session) -> List[str]:
        with storage_errors("account_ids"):
            return list(db.execute(select(Account.id).order_by(Account.id)).scalars().all())

    def enqueue_event(self, db: Session, topic: str, payload: str) -> None:
        with storage_errors("enqueue_event"):
            db.add(Outbox(topic=topic, payload=payload, status="new"))
            db.flush()

    def _credits(self, db: Session, account_id: str) -> Optional[int]:
        return db.execute(select(Account.credits).where(Account.id == account_id)).scalar_one_or_none()

def not_found_transaction(account_id: str, kind: str, job_id: str) -> NotFoundError:
    return NotFoundError(
        f"No {kind} transaction found for task {job_id}",
        code=ErrorCodes.TRANSACTION_NOT_FOUND,
        context={"account_id": account_id, "job_id": job_id},
    )
