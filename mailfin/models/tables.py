"""
SQLAlchemy ORM models.
Ids are uuid4 strings; JSON columns become JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mailfin.models.database import Base
from mailfin.models.enums import (
    EmailStatus,
    JobStatus,
    QaResultStatus,
    QaRunStatus,
    RunStatus,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _id_column() -> Mapped[str]:
    return mapped_column(String(36), primary_key=True, default=new_id)


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ────────────────────────────────────────────────────────────
# EMAIL SETS & EMAILS
# ────────────────────────────────────────────────────────────
class EmailSet(Base):
    __tablename__ = "email_sets"

    id: Mapped[str] = _id_column()
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Maintained on insert/delete, never recomputed per read
    email_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = _created_at()


class Email(Base):
    __tablename__ = "emails"

    id: Mapped[str] = _id_column()
    set_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("email_sets.id"), nullable=False
    )
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sender: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    body_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body_html: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=EmailStatus.PENDING.value
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    winner_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    # Reviewer edits applied on top of the winner during comparison synthesis
    field_overrides: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_emails_set", "set_id"),
        Index("idx_emails_status", "status"),
    )


# ────────────────────────────────────────────────────────────
# ACCOUNTS & PROMPTS
# ────────────────────────────────────────────────────────────
class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = _id_column()
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    institution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Null when only a masked number is known
    account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    masked_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_external: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_accounts_number", "account_number"),
    )


class Prompt(Base):
    __tablename__ = "prompts"

    id: Mapped[str] = _id_column()
    name: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    json_schema: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    prompt_type: Mapped[str] = mapped_column(String(32), nullable=False, default="extraction")
    created_at: Mapped[datetime] = _created_at()


# ────────────────────────────────────────────────────────────
# EXTRACTION RUNS & JOBS
# ────────────────────────────────────────────────────────────
class ExtractionRun(Base):
    __tablename__ = "extraction_runs"

    id: Mapped[str] = _id_column()
    set_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("email_sets.id"), nullable=False
    )
    model_id: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    software_version: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=RunStatus.PENDING.value
    )
    emails_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transactions_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    informational_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    is_synthesized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synthesis_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    source_run_ids: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    config: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("set_id", "version", name="uq_runs_set_version"),
        Index("idx_runs_set_model_sw", "set_id", "model_id", "software_version"),
        Index("idx_runs_status", "status"),
    )


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = _id_column()
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_runs.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=JobStatus.RUNNING.value
    )
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    informational_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Email ids to process, prompt override and concurrency for this execution
    plan: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = _created_at()
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_jobs_run", "run_id"),
    )


class EmailExtraction(Base):
    """One row per (email, run): the resume ledger."""

    __tablename__ = "email_extractions"

    id: Mapped[str] = _id_column()
    email_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("emails.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_runs.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_extraction: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4), nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    transaction_ids: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("email_id", "run_id", name="uq_extraction_email_run"),
        Index("idx_extractions_run", "run_id"),
    )


class DiscussionSummary(Base):
    __tablename__ = "discussion_summaries"

    id: Mapped[str] = _id_column()
    email_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("emails.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_runs.id", ondelete="CASCADE"), nullable=False
    )
    email_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    related_reference_numbers: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("email_id", "run_id", name="uq_summary_email_run"),
    )


class ExtractionLog(Base):
    __tablename__ = "extraction_logs"

    id: Mapped[str] = _id_column()
    run_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("extraction_runs.id", ondelete="CASCADE"), nullable=True
    )
    email_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("emails.id", ondelete="CASCADE"), nullable=True
    )
    level: Mapped[str] = mapped_column(String(16), nullable=False)
    error_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    raw_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_logs_run", "run_id"),
    )


# ────────────────────────────────────────────────────────────
# TRANSACTIONS
# ────────────────────────────────────────────────────────────
class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = _id_column()
    extraction_run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_runs.id", ondelete="CASCADE"), nullable=False
    )
    source_email_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("emails.id", ondelete="SET NULL"), nullable=True
    )
    # Synthesized runs only: the transaction this row was cloned from
    source_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
    )
    account_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("accounts.id"), nullable=True
    )
    to_account_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("accounts.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    symbol: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    fees: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    security_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4), nullable=True)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    run_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_tx_run", "extraction_run_id"),
        Index("idx_tx_email", "source_email_id"),
        Index("idx_tx_source", "source_transaction_id"),
        Index("idx_tx_type", "type"),
    )


# ────────────────────────────────────────────────────────────
# QA REVIEW
# ────────────────────────────────────────────────────────────
class QaRun(Base):
    __tablename__ = "qa_runs"

    id: Mapped[str] = _id_column()
    source_run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_runs.id", ondelete="CASCADE"), nullable=False
    )
    set_id: Mapped[str] = mapped_column(String(36), ForeignKey("email_sets.id"), nullable=False)
    model_id: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=QaRunStatus.PENDING.value
    )
    transactions_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transactions_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    issues_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    config: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    # Set exactly once, by the first successful synthesis
    synthesized_run_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("extraction_runs.id", ondelete="SET NULL"), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_qa_runs_source", "source_run_id"),
    )


class QaResult(Base):
    __tablename__ = "qa_results"

    id: Mapped[str] = _id_column()
    qa_run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("qa_runs.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    source_email_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    has_issues: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_multi_transaction: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    field_issues: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    duplicate_fields: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    overall_assessment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Written only through derive_status()
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=QaResultStatus.PENDING_REVIEW.value
    )
    accepted_fields: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    accepted_merges: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("qa_run_id", "transaction_id", name="uq_qa_result_run_tx"),
        Index("idx_qa_results_status", "qa_run_id", "status"),
    )
