from ledger_service.balance import BalanceReader
from ledger_service.operations import LedgerOperations
from ledger_service.reconciliation import ReconciliationQuery
from ledger_service.store import LedgerStore

class CreditLedger:
    """Wires the ledger components to one session factory and store."""

    def __init__(self, session_factory, store: LedgerStore = None, verify_invariant: bool = None):
        self.store = store or LedgerStore()
        self.operations = LedgerOperations(session_factory, self.store, verify_invariant)
        self.balances = BalanceReader(session_factory, self.store)
        self.reconciliation = ReconciliationQuery(session_factory, self.store)
