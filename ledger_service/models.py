from sqlalchemy import (
    Column, Integer, String, BigInteger, DateTime, ForeignKey, Index, UniqueConstraint, func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

KIND_PURCHASE = "purchase"
KIND_USAGE = "usage"
KIND_REFUND = "refund"
KIND_SUBSCRIPTION_GRANT = "subscription-grant"
KIND_BONUS = "bonus"

CREDIT_KINDS = (KIND_PURCHASE, KIND_REFUND, KIND_SUBSCRIPTION_GRANT, KIND_BONUS)
GRANT_KINDS = (KIND_PURCHASE, KIND_SUBSCRIPTION_GRANT, KIND_BONUS)

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntId = BigInteger().with_variant(Integer(), "sqlite")

class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    credits = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

class CreditTransaction(Base):
    """Append-only; rows are never updated or deleted."""
    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "kind", "job_id", name="uq_credit_tx_account_kind_job"),
        Index("ix_credit_tx_account_created", "account_id", "created_at"),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False)
    kind = Column(String(32), nullable=False)
    amount = Column(BigInteger, nullable=False)  # signed: negative only for usage
    description = Column(String(500), nullable=False, default="")
    job_id = Column(String(128), nullable=True, index=True)
    video_ref = Column(String(64), nullable=True)
    subscription_ref = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigIntId, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    status = Column(String(16), default="new")  # new|sent|failed
