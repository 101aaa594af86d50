#!/usr/bin/env python3
"""
Scheduled ledger audit: checks every account's cached balance against its transaction log
"""
import logging
import time
import schedule
from common.settings import settings
from ledger_service.db import SessionLocal
from ledger_service.ledger import CreditLedger

logger = logging.getLogger(__name__)

def run_audit(ledger: CreditLedger) -> int:
    """Returns the number of accounts needing manual reconciliation"""
    violations = ledger.reconciliation.audit_all()
    for violation in violations:
        logger.error(
            f"Manual reconciliation required for account {violation.account_id}: "
            f"balance={violation.balance} ledger_sum={violation.ledger_sum}"
        )
    return len(violations)

def schedule_audits(ledger: CreditLedger, interval_minutes: int = None):
    interval = interval_minutes or settings.audit_interval_minutes
    schedule.every(interval).minutes.do(run_audit, ledger)
    logger.info(f"Ledger audit scheduled every {interval} minutes")

if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    ledger = CreditLedger(SessionLocal)
    schedule_audits(ledger)

    import sys
    if len(sys.argv) > 1 and sys.argv[1] == "--audit-now":
        sys.exit(1 if run_audit(ledger) else 0)

    logger.info("Audit scheduler started. Press Ctrl+C to stop.")
    try:
        while True:
            schedule.run_pending()
            time.sleep(30)
    except KeyboardInterrupt:
        logger.info("Audit scheduler stopped.")
