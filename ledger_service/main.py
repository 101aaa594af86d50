import logging
from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Query, Request
from common.error_handling import add_error_handlers
from common.schemas import (
    BalanceResponse, CostQuote, CreditCheck, DeductRequest, FailedJobRefundRequest, GrantRequest,
    HistoryResponse, LedgerResult, OpenAccountRequest, ReconciliationResponse, RefundRequest, UsageStats,
)
from common.security import internal_auth, user_auth
from common.settings import settings
from common.tracing import ledger_tracer, tracing_middleware
from ledger_service.db import SessionLocal, engine
from ledger_service.ledger import CreditLedger
from ledger_service.models import Base
from ledger_service.pricing import quote_generation_cost
from ledger_service.reconciliation import refund_failed_job

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info("Credit ledger service started")
    yield

app = FastAPI(title="Credit Ledger Service", version="1.0.0", lifespan=lifespan)
add_error_handlers(app)

@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, ledger_tracer)

ledger = CreditLedger(SessionLocal)

def get_ledger() -> CreditLedger:
    return ledger

@app.post("/accounts/{account_id}", response_model=LedgerResult, dependencies=[Depends(internal_auth)])
async def open_account(account_id: str, req: Optional[OpenAccountRequest] = None, ledger: CreditLedger = Depends(get_ledger)):
    initial = req.initial_credits if req else None
    return ledger.operations.open_account(account_id, initial)

@app.post("/credits/deduct", response_model=LedgerResult, dependencies=[Depends(internal_auth)])
async def deduct(req: DeductRequest, ledger: CreditLedger = Depends(get_ledger)):
    """Charge credits before a generation job starts. 402 means the job must not run."""
    return ledger.operations.deduct(req.account_id, req.amount, req.description, req.job_id, req.video_ref)

@app.post("/credits/refund", response_model=LedgerResult, dependencies=[Depends(internal_auth)])
async def refund(req: RefundRequest, ledger: CreditLedger = Depends(get_ledger)):
    """Idempotent per (account, job); retries return already_processed."""
    return ledger.operations.refund(req.account_id, req.amount, req.description, req.job_id, req.video_ref)

@app.post("/credits/grant", response_model=LedgerResult, dependencies=[Depends(internal_auth)])
async def grant(req: GrantRequest, ledger: CreditLedger = Depends(get_ledger)):
    return ledger.operations.grant_credits(req.account_id, req.amount, req.kind, req.description, req.subscription_ref)

@app.get("/credits/reconcile/{account_id}/{job_id}", response_model=ReconciliationResponse,
         dependencies=[Depends(internal_auth)])
async def reconcile(account_id: str, job_id: str, ledger: CreditLedger = Depends(get_ledger)):
    return ledger.reconciliation.reconcile(account_id, job_id)

@app.post("/credits/jobs/{job_id}/refund-failed", response_model=LedgerResult, dependencies=[Depends(internal_auth)])
async def refund_failed(job_id: str, req: FailedJobRefundRequest, ledger: CreditLedger = Depends(get_ledger)):
    return await refund_failed_job(ledger, req.account_id, job_id, req.reason)

@app.get("/accounts/{account_id}/audit", dependencies=[Depends(internal_auth)])
async def audit(account_id: str, ledger: CreditLedger = Depends(get_ledger)):
    balance = ledger.reconciliation.verify_account(account_id)
    return {"account_id": account_id, "balance": balance, "consistent": True}

@app.get("/credits/balance", response_model=BalanceResponse)
async def balance(account_id: str = Depends(user_auth), ledger: CreditLedger = Depends(get_ledger)):
    return BalanceResponse(credits=ledger.balances.get_balance(account_id))

@app.get("/credits/history", response_model=HistoryResponse)
async def history(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.history_default_page_size, ge=1, le=settings.history_max_page_size),
    account_id: str = Depends(user_auth),
    ledger: CreditLedger = Depends(get_ledger),
):
    return ledger.balances.get_history(account_id, page, limit)

@app.get("/credits/usage", response_model=UsageStats)
async def usage(account_id: str = Depends(user_auth), ledger: CreditLedger = Depends(get_ledger)):
    return ledger.balances.get_usage_stats(account_id)

@app.get("/credits/quote", response_model=CostQuote)
async def quote(duration: int, quality: str):
    return CostQuote(duration=duration, quality=quality, cost=quote_generation_cost(duration, quality))

@app.get("/credits/check", response_model=CreditCheck)
async def check(duration: int, quality: str, account_id: str = Depends(user_auth),
                ledger: CreditLedger = Depends(get_ledger)):
    return ledger.balances.check_credits(account_id, duration, quality)

@app.get("/health")
async def health():
    return {"ok": True, "service": "credit-ledger"}
