"""create enhancement jobs, outbox, and credit tables

Revision ID: 5f2c9e1a7b30
Revises:
Create Date: 2026-10-18 09:12:44.215301

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5f2c9e1a7b30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "ai_enhancement_jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("photo_id", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("progress_stage", sa.String(), nullable=True),
    sa.Column("progress_percent", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("reserved_credits", sa.Integer(), nullable=False),
    sa.Column("cost_micros", sa.BigInteger(), nullable=True),
    sa.Column("enhancement_type", sa.String(), nullable=False),
    sa.Column("mode", sa.String(), nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("model", sa.String(), nullable=False),
    sa.Column("request_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("error_code", sa.String(), nullable=True),
    sa.Column("idempotency_key", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("status IN ('queued', 'rendering', 'completed', 'failed', 'canceled')", name="ck_ai_enhancement_jobs_status"),
    sa.CheckConstraint("progress_percent BETWEEN 0 AND 100", name="ck_ai_enhancement_jobs_progress"),
    sa.PrimaryKeyConstraint("job_id"),
  )
  op.create_index("ix_ai_enhancement_jobs_tenant_id", "ai_enhancement_jobs", ["tenant_id"])
  op.create_index("ix_ai_enhancement_jobs_user_id", "ai_enhancement_jobs", ["user_id"])
  op.create_index("ix_ai_enhancement_jobs_status", "ai_enhancement_jobs", ["status"])
  op.create_index("ix_ai_enhancement_jobs_user_created", "ai_enhancement_jobs", ["user_id", "created_at"])
  op.create_index("ix_ai_enhancement_jobs_user_photo", "ai_enhancement_jobs", ["user_id", "photo_id"])
  op.create_index(
    "ux_ai_enhancement_jobs_user_idempotency", "ai_enhancement_jobs", ["user_id", "idempotency_key"], unique=True, postgresql_where=sa.text("idempotency_key IS NOT NULL")
  )

  op.create_table(
    "ai_enhancement_variants",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("output_url", sa.Text(), nullable=False),
    sa.Column("rank", sa.Integer(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["job_id"], ["ai_enhancement_jobs.job_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("job_id", "rank", name="ux_ai_enhancement_variants_job_rank"),
  )
  op.create_index("ix_ai_enhancement_variants_job_id", "ai_enhancement_variants", ["job_id"])

  op.create_table(
    "outbox",
    sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("status", sa.String(), server_default=sa.text("'pending'"), nullable=False),
    sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("next_retry_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed')", name="ck_outbox_status"),
    sa.ForeignKeyConstraint(["job_id"], ["ai_enhancement_jobs.job_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_outbox_job_id", "outbox", ["job_id"])
  op.create_index("ix_outbox_claimable", "outbox", ["status", "next_retry_at"], postgresql_where=sa.text("status IN ('pending', 'processing')"))

  op.create_table(
    "credit_accounts",
    sa.Column("account_id", sa.String(), nullable=False),
    sa.Column("tenant_id", sa.String(), nullable=True),
    sa.Column("credits_balance", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("credits_balance >= 0", name="ck_credit_accounts_non_negative"),
    sa.PrimaryKeyConstraint("account_id"),
  )
  op.create_index("ix_credit_accounts_tenant_id", "credit_accounts", ["tenant_id"])

  op.create_table(
    "credit_transactions",
    sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
    sa.Column("account_id", sa.String(), nullable=False),
    sa.Column("delta", sa.Integer(), nullable=False),
    sa.Column("balance_after", sa.Integer(), nullable=False),
    sa.Column("source_type", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("job_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("source_type IN ('reservation', 'refund', 'subscription', 'topup', 'adjustment')", name="ck_credit_transactions_source_type"),
    sa.ForeignKeyConstraint(["account_id"], ["credit_accounts.account_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_credit_transactions_account_created", "credit_transactions", ["account_id", "created_at"])
  op.create_index("ix_credit_transactions_job_id", "credit_transactions", ["job_id"])

  op.create_table(
    "webhook_nonces",
    sa.Column("nonce", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("nonce"),
  )
  op.create_index("ix_webhook_nonces_job_id", "webhook_nonces", ["job_id"])


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index("ix_webhook_nonces_job_id", table_name="webhook_nonces")
  op.drop_table("webhook_nonces")
  op.drop_index("ix_credit_transactions_job_id", table_name="credit_transactions")
  op.drop_index("ix_credit_transactions_account_created", table_name="credit_transactions")
  op.drop_table("credit_transactions")
  op.drop_index("ix_credit_accounts_tenant_id", table_name="credit_accounts")
  op.drop_table("credit_accounts")
  op.drop_index("ix_outbox_claimable", table_name="outbox")
  op.drop_index("ix_outbox_job_id", table_name="outbox")
  op.drop_table("outbox")
  op.drop_index("ix_ai_enhancement_variants_job_id", table_name="ai_enhancement_variants")
  op.drop_table("ai_enhancement_variants")
  op.drop_index("ux_ai_enhancement_jobs_user_idempotency", table_name="ai_enhancement_jobs")
  op.drop_index("ix_ai_enhancement_jobs_user_photo", table_name="ai_enhancement_jobs")
  op.drop_index("ix_ai_enhancement_jobs_user_created", table_name="ai_enhancement_jobs")
  op.drop_index("ix_ai_enhancement_jobs_status", table_name="ai_enhancement_jobs")
  op.drop_index("ix_ai_enhancement_jobs_user_id", table_name="ai_enhancement_jobs")
  op.drop_index("ix_ai_enhancement_jobs_tenant_id", table_name="ai_enhancement_jobs")
  op.drop_table("ai_enhancement_jobs")
