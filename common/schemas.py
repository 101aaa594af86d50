from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Literal, Optional

GrantKind = Literal["purchase", "subscription-grant", "bonus"]

class DeductRequest(BaseModel):
    account_id: str
    amount: int = Field(gt=0)
    description: str = "Video generation"
    job_id: str = Field(min_length=1)
    video_ref: Optional[str] = None

class RefundRequest(BaseModel):
    account_id: str
    amount: int = Field(gt=0)
    description: str = "Video generation failed - automatic refund"
    job_id: str = Field(min_length=1)
    video_ref: Optional[str] = None

class GrantRequest(BaseModel):
    account_id: str
    amount: int = Field(gt=0)
    kind: GrantKind = "purchase"
    description: str
    subscription_ref: Optional[str] = None

class OpenAccountRequest(BaseModel):
    initial_credits: Optional[int] = Field(default=None, ge=0)

class FailedJobRefundRequest(BaseModel):
    account_id: str
    reason: Optional[str] = None

class LedgerResult(BaseModel):
    account_id: str
    balance: int
    transaction_id: Optional[int] = None
    already_processed: bool = False

class BalanceResponse(BaseModel):
    credits: int

class TransactionRecord(BaseModel):
    """Raw persisted shape: signed amount, kind as stored."""
    id: int
    account_id: str
    kind: str
    amount: int
    description: str
    job_id: Optional[str] = None
    video_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    created_at: datetime

class HistoryItem(BaseModel):
    id: int
    type: str
    amount: int
    is_credit: bool
    description: str
    created_at: datetime
    job_id: Optional[str] = None
    video_ref: Optional[str] = None
    subscription_ref: Optional[str] = None

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool

class HistoryResponse(BaseModel):
    transactions: List[HistoryItem]
    pagination: Pagination

class UsageStats(BaseModel):
    total_spent: int
    total_purchased: int
    total_refunded: int
    current_balance: int
    video_generation_count: int
    average_per_video: int

class ReconciliationResponse(BaseModel):
    account_id: str
    job_id: str
    usage: Optional[TransactionRecord] = None
    refund: Optional[TransactionRecord] = None
    charged_amount: int = 0
    refundable: bool = False

class CostQuote(BaseModel):
    duration: int
    quality: str
    cost: int

class CreditCheck(BaseModel):
    sufficient: bool
    cost: int
    available_credits: int

class CreditEvent(BaseModel):
    type: Literal["CreditsDeducted", "CreditsRefunded", "CreditsGranted"]
    account_id: str
    kind: str
    amount: int
    balance: int
    transaction_id: int
    job_id: Optional[str] = None
