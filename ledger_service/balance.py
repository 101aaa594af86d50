"""Read side of the ledger: balance, normalized history and usage statistics."""
import math

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import CreditCheck, HistoryItem, HistoryResponse, Pagination, UsageStats
from common.settings import settings
from ledger_service.models import GRANT_KINDS, KIND_REFUND, KIND_USAGE, CreditTransaction
from ledger_service.pricing import quote_generation_cost
from ledger_service.store import LedgerStore

def to_history_item(tx: CreditTransaction) -> HistoryItem:
    """Unsigned amount plus an explicit credit/debit flag."""
    return HistoryItem(
        id=tx.id,
        type=tx.kind,
        amount=abs(tx.amount),
        is_credit=tx.amount > 0,
        description=tx.description,
        created_at=tx.created_at,
        job_id=tx.job_id,
        video_ref=tx.video_ref,
        subscription_ref=tx.subscription_ref,
    )

class BalanceReader:

    def __init__(self, session_factory, store: LedgerStore):
        self._sessions = session_factory
        self._store = store

    def get_balance(self, account_id: str) -> int:
        with self._sessions() as db:
            return self._store.read_balance(db, account_id)

    def get_history(self, account_id: str, page: int = 1, page_size: int = None) -> HistoryResponse:
        page_size = page_size or settings.history_default_page_size
        if page < 1:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "page must be >= 1", field="page")
        if not 1 <= page_size <= settings.history_max_page_size:
            raise BusinessLogicError(
                ErrorCodes.VALIDATION_ERROR,
                f"limit must be between 1 and {settings.history_max_page_size}",
                field="limit",
            )

        with self._sessions() as db:
            self._store.read_balance(db, account_id)
            items, total = self._store.list_transactions(db, account_id, page, page_size)

        total_pages = math.ceil(total / page_size)
        return HistoryResponse(
            transactions=[to_history_item(tx) for tx in items],
            pagination=Pagination(
                page=page,
                limit=page_size,
                total=total,
                total_pages=total_pages,
                has_more=page < total_pages,
            ),
        )

    def get_usage_stats(self, account_id: str) -> UsageStats:
        with self._sessions() as db:
            balance = self._store.read_balance(db, account_id)
            totals = self._store.usage_totals(db, account_id)

        spent, generations = totals.get(KIND_USAGE, (0, 0))
        spent = abs(spent)
        return UsageStats(
            total_spent=spent,
            total_purchased=sum(totals.get(kind, (0, 0))[0] for kind in GRANT_KINDS),
            total_refunded=totals.get(KIND_REFUND, (0, 0))[0],
            current_balance=balance,
            video_generation_count=generations,
            average_per_video=round(spent / generations) if generations else 0,
        )

    def check_credits(self, account_id: str, duration: int, quality: str) -> CreditCheck:
        """Pre-flight check before a generation request is sent to the provider."""
        cost = quote_generation_cost(duration, quality)
        available = self.get_balance(account_id)
        return CreditCheck(sufficient=available >= cost, cost=cost, available_credits=available)
