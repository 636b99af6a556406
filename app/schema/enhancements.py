"""ORM models for enhancement jobs, the dispatch outbox, and credits."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class EnhancementJob(Base):
  __tablename__ = "ai_enhancement_jobs"
  __table_args__ = (
    Index("ux_ai_enhancement_jobs_user_idempotency", "user_id", "idempotency_key", unique=True, postgresql_where=text("idempotency_key IS NOT NULL")),
    Index("ix_ai_enhancement_jobs_user_created", "user_id", "created_at"),
    Index("ix_ai_enhancement_jobs_user_photo", "user_id", "photo_id"),
    CheckConstraint("status IN ('queued', 'rendering', 'completed', 'failed', 'canceled')", name="ck_ai_enhancement_jobs_status"),
    CheckConstraint("progress_percent BETWEEN 0 AND 100", name="ck_ai_enhancement_jobs_progress"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  photo_id: Mapped[str | None] = mapped_column(String, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  progress_stage: Mapped[str | None] = mapped_column(String, nullable=True)
  progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  reserved_credits: Mapped[int] = mapped_column(Integer, nullable=False)
  cost_micros: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
  enhancement_type: Mapped[str] = mapped_column(String, nullable=False)
  mode: Mapped[str] = mapped_column(String, nullable=False)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  model: Mapped[str] = mapped_column(String, nullable=False)
  request_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  error_code: Mapped[str | None] = mapped_column(String, nullable=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EnhancementVariant(Base):
  __tablename__ = "ai_enhancement_variants"
  __table_args__ = (UniqueConstraint("job_id", "rank", name="ux_ai_enhancement_variants_job_rank"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("ai_enhancement_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  output_url: Mapped[str] = mapped_column(Text, nullable=False)
  rank: Mapped[int] = mapped_column(Integer, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OutboxEvent(Base):
  __tablename__ = "outbox"
  __table_args__ = (
    # Partial index keeps the claim query cheap once most rows are closed.
    Index("ix_outbox_claimable", "status", "next_retry_at", postgresql_where=text("status IN ('pending', 'processing')")),
    CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed')", name="ck_outbox_status"),
  )

  id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("ai_enhancement_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'pending'"))
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CreditAccount(Base):
  __tablename__ = "credit_accounts"
  __table_args__ = (CheckConstraint("credits_balance >= 0", name="ck_credit_accounts_non_negative"),)

  account_id: Mapped[str] = mapped_column(String, primary_key=True)
  tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  credits_balance: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CreditTransaction(Base):
  __tablename__ = "credit_transactions"
  __table_args__ = (
    Index("ix_credit_transactions_account_created", "account_id", "created_at"),
    CheckConstraint("source_type IN ('reservation', 'refund', 'subscription', 'topup', 'adjustment')", name="ck_credit_transactions_source_type"),
  )

  id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
  account_id: Mapped[str] = mapped_column(ForeignKey("credit_accounts.account_id", ondelete="CASCADE"), nullable=False)
  delta: Mapped[int] = mapped_column(Integer, nullable=False)
  balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
  source_type: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebhookNonce(Base):
  __tablename__ = "webhook_nonces"

  nonce: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
