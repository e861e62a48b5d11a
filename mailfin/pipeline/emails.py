"""
Email store operations: intake dedup, resets, winner designation, field
overrides and cascading set deletion. Bulk operations report affected vs
skipped rows.
"""

import hashlib
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.errors import InvalidRequest, NotFound
from mailfin.models.enums import EmailStatus
from mailfin.models.tables import (
    DiscussionSummary,
    Email,
    EmailExtraction,
    EmailSet,
    ExtractionLog,
    ExtractionRun,
    Job,
    QaResult,
    QaRun,
    Transaction,
)
from mailfin.pipeline.data_fields import FieldPath
from mailfin.schemas.emails import DeleteSetResponse, ResetEmailsResponse
from mailfin.schemas.extraction import EmailPayload

logger = structlog.get_logger(__name__)

WINNER_TIE = "tie"

# Statuses a set-wide reset puts back to pending
RESETTABLE_STATUSES = (
    EmailStatus.COMPLETED.value,
    EmailStatus.FAILED.value,
    EmailStatus.INFORMATIONAL.value,
)


def content_hash(
    subject: Optional[str],
    sender: Optional[str],
    email_date: Optional[datetime],
    body: Optional[str],
) -> str:
    """SHA-256 dedup key over the identifying parts of an email."""
    parts = [subject or "", sender or "", email_date.isoformat() if email_date else "", body or ""]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def email_payload(email: Email) -> EmailPayload:
    """What the invoker and QA checker see of an email."""
    return EmailPayload(
        email_id=email.id,
        subject=email.subject,
        sender=email.sender,
        email_date=email.email_date.isoformat() if email.email_date else None,
        body=email.body_text or email.body_html or "",
    )


async def create_email_set(session: AsyncSession, name: str, description: Optional[str] = None) -> EmailSet:
    email_set = EmailSet(name=name, description=description, email_count=0)
    session.add(email_set)
    await session.flush()
    return email_set


async def store_email(
    session: AsyncSession,
    set_id: str,
    subject: Optional[str] = None,
    sender: Optional[str] = None,
    email_date: Optional[datetime] = None,
    body_text: Optional[str] = None,
    body_html: Optional[str] = None,
) -> tuple[Email, bool]:
    """Insert an email unless its content hash is known. Returns (email, created)."""
    digest = content_hash(subject, sender, email_date, body_text or body_html)
    existing = await session.execute(select(Email).where(Email.content_hash == digest))
    found = existing.scalar_one_or_none()
    if found is not None:
        return found, False

    email = Email(
        set_id=set_id,
        content_hash=digest,
        subject=subject,
        sender=sender,
        email_date=email_date,
        body_text=body_text,
        body_html=body_html,
        status=EmailStatus.PENDING.value,
    )
    session.add(email)
    await session.flush()
    await session.execute(
        update(EmailSet)
        .where(EmailSet.id == set_id)
        .values(email_count=EmailSet.email_count + 1)
    )
    return email, True


async def delete_run_transactions(
    session: AsyncSession,
    run_id: str,
    email_ids: Optional[Iterable[str]] = None,
) -> int:
    """Delete a run's transactions (optionally only for some emails); clears winners pointing at them."""
    conditions = [Transaction.extraction_run_id == run_id]
    if email_ids is not None:
        conditions.append(Transaction.source_email_id.in_(list(email_ids)))

    doomed = select(Transaction.id).where(*conditions)
    await session.execute(
        update(Email)
        .where(Email.winner_transaction_id.in_(doomed))
        .values(winner_transaction_id=None)
    )
    result = await session.execute(delete(Transaction).where(*conditions))
    return result.rowcount or 0


async def reset_emails(
    session: AsyncSession,
    email_ids: Optional[list[str]] = None,
    set_id: Optional[str] = None,
    run_id: Optional[str] = None,
    delete_transactions: bool = True,
) -> ResetEmailsResponse:
    """
    Put emails back to pending.

    Selection is by explicit ids, by set (finished emails only) or by run
    (emails that run touched). With a run, that run's transactions and
    extraction rows for the emails are removed so a resume redoes them.
    """
    if not email_ids and not set_id and not run_id:
        raise InvalidRequest("Provide email_ids, set_id or run_id")

    skipped = 0
    if email_ids:
        result = await session.execute(select(Email).where(Email.id.in_(email_ids)))
        emails = list(result.scalars().all())
        skipped += len(set(email_ids)) - len(emails)
    elif set_id:
        result = await session.execute(
            select(Email).where(Email.set_id == set_id, Email.status.in_(RESETTABLE_STATUSES))
        )
        emails = list(result.scalars().all())
    else:
        if await session.get(ExtractionRun, run_id) is None:
            raise NotFound("Run", run_id)
        touched = select(EmailExtraction.email_id).where(EmailExtraction.run_id == run_id)
        result = await session.execute(select(Email).where(Email.id.in_(touched)))
        emails = list(result.scalars().all())

    ids = [e.id for e in emails]
    deleted = 0
    ledger_cleared = set()
    if run_id and ids:
        if delete_transactions:
            deleted = await delete_run_transactions(session, run_id, ids)
        ledger = await session.execute(
            select(EmailExtraction.email_id)
            .where(EmailExtraction.run_id == run_id, EmailExtraction.email_id.in_(ids))
        )
        ledger_cleared = set(ledger.scalars().all())
        await session.execute(
            delete(EmailExtraction)
            .where(EmailExtraction.run_id == run_id, EmailExtraction.email_id.in_(ids))
        )
        await session.execute(
            delete(DiscussionSummary)
            .where(DiscussionSummary.run_id == run_id, DiscussionSummary.email_id.in_(ids))
        )

    reset = 0
    for email in emails:
        if email.status == EmailStatus.PENDING.value and email.id not in ledger_cleared:
            skipped += 1
            continue
        email.status = EmailStatus.PENDING.value
        email.processed_at = None
        email.error = None
        email.notes = None
        reset += 1
    await session.flush()

    logger.info(
        "emails_reset",
        reset=reset,
        skipped=skipped,
        run_id=run_id,
        set_id=set_id,
        transactions_deleted=deleted,
    )
    return ResetEmailsResponse(reset=reset, skipped=skipped, transactions_deleted=deleted)


async def reprocess_email(
    session: AsyncSession,
    email_id: str,
    run_id: Optional[str] = None,
) -> ResetEmailsResponse:
    """Single-email reset; scoped to one run when given."""
    if await session.get(Email, email_id) is None:
        raise NotFound("Email", email_id)
    return await reset_emails(session, email_ids=[email_id], run_id=run_id)


async def set_winner(
    session: AsyncSession,
    email_id: str,
    transaction_id: Optional[str],
) -> Email:
    """Designate the preferred transaction for an email. "tie" marks a tie; None clears."""
    email = await session.get(Email, email_id)
    if email is None:
        raise NotFound("Email", email_id)

    if transaction_id is not None and transaction_id != WINNER_TIE:
        tx = await session.get(Transaction, transaction_id)
        if tx is None:
            raise NotFound("Transaction", transaction_id)
        if tx.source_email_id != email_id:
            raise InvalidRequest(f"Transaction {transaction_id} does not belong to email {email_id}")

    email.winner_transaction_id = transaction_id
    await session.flush()
    logger.info("winner_set", email_id=email_id, transaction_id=transaction_id)
    return email


async def set_field_overrides(
    session: AsyncSession,
    email_id: str,
    overrides: Optional[dict[str, Any]],
) -> Email:
    """
    Store reviewer edits for an email. Keys are field paths ("amount",
    "data.venue"); they win over both runs in comparison synthesis.
    An empty mapping or None clears them.
    """
    email = await session.get(Email, email_id)
    if email is None:
        raise NotFound("Email", email_id)

    cleaned = {str(FieldPath.parse(key)): value for key, value in (overrides or {}).items()}
    email.field_overrides = cleaned or None
    await session.flush()
    logger.info("field_overrides_set", email_id=email_id, fields=sorted(cleaned))
    return email


async def delete_email_set(session: AsyncSession, set_id: str) -> DeleteSetResponse:
    """Delete a set and everything hanging off it, children first."""
    email_set = await session.get(EmailSet, set_id)
    if email_set is None:
        raise NotFound("Email set", set_id)

    run_ids = select(ExtractionRun.id).where(ExtractionRun.set_id == set_id)
    email_ids = select(Email.id).where(Email.set_id == set_id)
    qa_run_ids = select(QaRun.id).where(QaRun.set_id == set_id)

    await session.execute(delete(QaResult).where(QaResult.qa_run_id.in_(qa_run_ids)))
    await session.execute(delete(QaRun).where(QaRun.set_id == set_id))
    await session.execute(
        update(Email).where(Email.set_id == set_id).values(winner_transaction_id=None)
    )
    tx_result = await session.execute(
        delete(Transaction).where(
            (Transaction.extraction_run_id.in_(run_ids)) | (Transaction.source_email_id.in_(email_ids))
        )
    )
    await session.execute(
        delete(EmailExtraction).where(
            (EmailExtraction.run_id.in_(run_ids)) | (EmailExtraction.email_id.in_(email_ids))
        )
    )
    await session.execute(
        delete(DiscussionSummary).where(
            (DiscussionSummary.run_id.in_(run_ids)) | (DiscussionSummary.email_id.in_(email_ids))
        )
    )
    await session.execute(
        delete(ExtractionLog).where(
            (ExtractionLog.run_id.in_(run_ids)) | (ExtractionLog.email_id.in_(email_ids))
        )
    )
    await session.execute(delete(Job).where(Job.run_id.in_(run_ids)))
    run_result = await session.execute(delete(ExtractionRun).where(ExtractionRun.set_id == set_id))
    email_result = await session.execute(delete(Email).where(Email.set_id == set_id))
    await session.execute(delete(EmailSet).where(EmailSet.id == set_id))

    response = DeleteSetResponse(
        set_id=set_id,
        emails_deleted=email_result.rowcount or 0,
        runs_deleted=run_result.rowcount or 0,
        transactions_deleted=tx_result.rowcount or 0,
    )
    logger.info("email_set_deleted", **response.model_dump())
    return response
