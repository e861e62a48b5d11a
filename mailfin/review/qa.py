"""
QA engine: second-pass review of a run's transactions.

A QaRun checks every transaction of a completed extraction run (optionally
filtered) and records one QaResult each. Reviewers then accept flagged fields
and duplicate-field merges; a result's status is only ever computed by
derive_status().
"""

import asyncio
from collections import defaultdict
from typing import Any, Iterable, Mapping, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailfin.config import settings
from mailfin.errors import InvalidRequest, InvalidTransition, NotFound
from mailfin.models.database import async_session_factory
from mailfin.models.enums import QaResultStatus, QaRunStatus, RunStatus
from mailfin.models.tables import Email, Prompt, QaResult, QaRun, Transaction, utcnow
from mailfin.observability.metrics import qa_results_total
from mailfin.pipeline.data_fields import FieldPath
from mailfin.pipeline.emails import email_payload
from mailfin.pipeline.invoker import QaChecker
from mailfin.pipeline.registry import get_run
from mailfin.pipeline.values import to_jsonable
from mailfin.schemas.extraction import QaFinding
from mailfin.schemas.review import (
    BulkResult,
    FieldGroup,
    QaFilters,
    QaRunResponse,
    QaSummaryResponse,
    ReviewResultRequest,
    StartQaRequest,
)

logger = structlog.get_logger(__name__)

DEFAULT_QA_PROMPT = (
    "Compare the extracted transaction against the source email. Flag every field "
    "whose value disagrees with the email and suggest the correct value. List groups "
    "of fields that hold the same information under different names."
)

REVIEWABLE_STATUSES = (QaResultStatus.PENDING_REVIEW.value, QaResultStatus.PARTIAL.value)
SUMMARY_EXAMPLES = 3


# ─── Status derivation ────────────────────────────────────────


def flagged_fields(field_issues: Iterable[Mapping[str, Any]]) -> list[str]:
    """Field names named by the issues, first occurrence order, no repeats."""
    seen: list[str] = []
    for issue in field_issues or ():
        name = issue.get("field")
        if name and name not in seen:
            seen.append(name)
    return seen


def derive_status(
    field_issues: Iterable[Mapping[str, Any]],
    accepted_fields: Optional[Mapping[str, bool]],
    accepted_merges: Iterable[Any] = (),
    rejected: bool = False,
) -> str:
    if rejected:
        return QaResultStatus.REJECTED.value

    accepted_fields = accepted_fields or {}
    flagged = flagged_fields(field_issues)
    if not flagged:
        return QaResultStatus.ACCEPTED.value if list(accepted_merges) else QaResultStatus.PENDING_REVIEW.value

    accepted = sum(1 for name in flagged if accepted_fields.get(name) is True)
    if accepted == len(flagged):
        return QaResultStatus.ACCEPTED.value
    if accepted:
        return QaResultStatus.PARTIAL.value
    return QaResultStatus.PENDING_REVIEW.value


# ─── QA runs ──────────────────────────────────────────────────


def _filtered(stmt, filters: QaFilters):
    if filters.transaction_types:
        stmt = stmt.where(Transaction.type.in_([t.lower() for t in filters.transaction_types]))
    if filters.min_confidence is not None:
        stmt = stmt.where(Transaction.confidence >= filters.min_confidence)
    if filters.max_confidence is not None:
        stmt = stmt.where(Transaction.confidence <= filters.max_confidence)
    return stmt


async def start_qa_run(session: AsyncSession, request: StartQaRequest) -> QaRun:
    """Create a pending QaRun over a completed extraction run."""
    source = await get_run(session, request.source_run_id)
    if source.status != RunStatus.COMPLETED.value:
        raise InvalidTransition(f"Cannot QA a {source.status} run")

    if request.prompt_id and await session.get(Prompt, request.prompt_id) is None:
        raise NotFound("Prompt", request.prompt_id)

    total = (
        await session.execute(
            _filtered(
                select(func.count(Transaction.id)).where(Transaction.extraction_run_id == source.id),
                request.filters,
            )
        )
    ).scalar() or 0

    qa_run = QaRun(
        source_run_id=source.id,
        set_id=source.set_id,
        model_id=request.model_id,
        prompt_id=request.prompt_id,
        status=QaRunStatus.PENDING.value,
        transactions_total=total,
        config={"filters": request.filters.model_dump(exclude_none=True)},
    )
    session.add(qa_run)
    await session.flush()

    logger.info(
        "qa_run_created",
        qa_run_id=qa_run.id,
        source_run_id=source.id,
        transactions_total=total,
    )
    return qa_run


async def get_qa_run(session: AsyncSession, qa_run_id: str) -> QaRun:
    qa_run = await session.get(QaRun, qa_run_id)
    if qa_run is None:
        raise NotFound("QaRun", qa_run_id)
    return qa_run


async def list_results(
    session: AsyncSession,
    qa_run_id: str,
    status: Optional[str] = None,
    has_issues: Optional[bool] = None,
) -> list[QaResult]:
    await get_qa_run(session, qa_run_id)
    stmt = select(QaResult).where(QaResult.qa_run_id == qa_run_id)
    if status:
        stmt = stmt.where(QaResult.status == status)
    if has_issues is not None:
        stmt = stmt.where(QaResult.has_issues == has_issues)
    result = await session.execute(stmt.order_by(QaResult.created_at, QaResult.id))
    return list(result.scalars().all())


def transaction_snapshot(tx: Transaction) -> dict[str, Any]:
    """Column values plus data bag, JSON-safe, as the QA checker sees them."""
    return {
        "id": tx.id,
        "type": tx.type,
        "date": to_jsonable(tx.date),
        "amount": to_jsonable(tx.amount),
        "currency": tx.currency,
        "symbol": tx.symbol,
        "quantity": to_jsonable(tx.quantity),
        "price": to_jsonable(tx.price),
        "fees": to_jsonable(tx.fees),
        "description": tx.description,
        "security_name": tx.security_name,
        "reference_number": tx.reference_number,
        "order_type": tx.order_type,
        "account_id": tx.account_id,
        "to_account_id": tx.to_account_id,
        "confidence": to_jsonable(tx.confidence),
        "data": dict(tx.data or {}),
    }


async def execute_qa_run(
    qa_run_id: str,
    checker: QaChecker,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    concurrency: Optional[int] = None,
) -> QaRun:
    """
    Check the QaRun's transactions with bounded concurrency.
    Transactions that already have a result are skipped, so a failed run can
    be executed again. Checker failures are stored as "Error: ..." assessments.
    """
    session_factory = session_factory or async_session_factory
    concurrency = max(1, concurrency or settings.QA_CONCURRENCY)

    async with session_factory() as session:
        qa_run = await get_qa_run(session, qa_run_id)
        result = await session.execute(
            update(QaRun)
            .where(
                QaRun.id == qa_run_id,
                QaRun.status.in_([QaRunStatus.PENDING.value, QaRunStatus.FAILED.value]),
            )
            .values(status=QaRunStatus.RUNNING.value, started_at=utcnow(), error_message=None)
        )
        if result.rowcount != 1:
            raise InvalidTransition(f"Cannot start a {qa_run.status} QA run")

        prompt_text = DEFAULT_QA_PROMPT
        if qa_run.prompt_id:
            prompt = await session.get(Prompt, qa_run.prompt_id)
            if prompt is not None:
                prompt_text = prompt.content

        filters = QaFilters(**(qa_run.config or {}).get("filters", {}))
        done = select(QaResult.transaction_id).where(QaResult.qa_run_id == qa_run_id)
        rows = await session.execute(
            _filtered(
                select(Transaction.id).where(
                    Transaction.extraction_run_id == qa_run.source_run_id,
                    Transaction.id.not_in(done),
                ),
                filters,
            ).order_by(Transaction.created_at, Transaction.id)
        )
        todo = list(rows.scalars().all())
        model_id = qa_run.model_id
        await session.commit()

    logger.info("qa_run_started", qa_run_id=qa_run_id, transactions=len(todo), concurrency=concurrency)

    semaphore = asyncio.Semaphore(concurrency)
    write_lock = asyncio.Lock()

    async def check_one(transaction_id: str) -> None:
        async with semaphore:
            async with session_factory() as session:
                status = (
                    await session.execute(select(QaRun.status).where(QaRun.id == qa_run_id))
                ).scalar_one()
                if status != QaRunStatus.RUNNING.value:
                    return
                tx = await session.get(Transaction, transaction_id)
                if tx is None:
                    logger.warning("qa_transaction_missing", transaction_id=transaction_id)
                    return
                email = await session.get(Email, tx.source_email_id) if tx.source_email_id else None
                snapshot = transaction_snapshot(tx)
                payload = email_payload(email) if email is not None else None

            try:
                if payload is None:
                    raise ValueError("source email is missing")
                finding = await checker.check(snapshot, payload, model_id, prompt_text)
            except Exception as e:
                logger.warning("qa_check_failed", transaction_id=transaction_id, error=str(e)[:300])
                finding = QaFinding(has_issues=False, overall_assessment=f"Error: {e}")

            async with write_lock:
                await _record_finding(session_factory, qa_run_id, tx, finding)

    try:
        await asyncio.gather(*(check_one(transaction_id) for transaction_id in todo))
    except Exception as e:
        logger.exception("qa_run_failed", qa_run_id=qa_run_id, error=str(e))
        async with session_factory() as session:
            await session.execute(
                update(QaRun)
                .where(QaRun.id == qa_run_id, QaRun.status == QaRunStatus.RUNNING.value)
                .values(status=QaRunStatus.FAILED.value, error_message=str(e)[:500], completed_at=utcnow())
            )
            await session.commit()
        raise

    async with session_factory() as session:
        qa_run = await get_qa_run(session, qa_run_id)
        if qa_run.status == QaRunStatus.RUNNING.value:
            complete = qa_run.transactions_checked >= qa_run.transactions_total
            qa_run.status = QaRunStatus.COMPLETED.value if complete else QaRunStatus.FAILED.value
            qa_run.completed_at = utcnow()
            if not complete:
                qa_run.error_message = (
                    f"Checked {qa_run.transactions_checked} of {qa_run.transactions_total} transactions"
                )
            await session.commit()
        logger.info(
            "qa_run_finished",
            qa_run_id=qa_run_id,
            status=qa_run.status,
            checked=qa_run.transactions_checked,
            issues_found=qa_run.issues_found,
        )
        return qa_run


async def _record_finding(
    session_factory: async_sessionmaker[AsyncSession],
    qa_run_id: str,
    tx: Transaction,
    finding: QaFinding,
) -> None:
    field_issues = [issue.model_dump(mode="json") for issue in finding.field_issues]
    duplicate_fields = [dup.model_dump(mode="json") for dup in finding.duplicate_fields]
    has_issues = bool(finding.has_issues or field_issues or duplicate_fields)

    async with session_factory() as session:
        session.add(
            QaResult(
                qa_run_id=qa_run_id,
                transaction_id=tx.id,
                source_email_id=tx.source_email_id,
                has_issues=has_issues,
                is_multi_transaction=finding.is_multi_transaction,
                field_issues=field_issues,
                duplicate_fields=duplicate_fields,
                overall_assessment=finding.overall_assessment,
                status=derive_status(field_issues, {}),
                accepted_fields={},
                accepted_merges=[],
            )
        )
        await session.execute(
            update(QaRun)
            .where(QaRun.id == qa_run_id)
            .values(
                transactions_checked=QaRun.transactions_checked + 1,
                issues_found=QaRun.issues_found + (1 if has_issues else 0),
            )
        )
        await session.commit()
    qa_results_total.labels(has_issues=str(has_issues).lower()).inc()


async def cancel_qa_run(session: AsyncSession, qa_run_id: str) -> QaRun:
    qa_run = await get_qa_run(session, qa_run_id)
    result = await session.execute(
        update(QaRun)
        .where(
            QaRun.id == qa_run_id,
            QaRun.status.in_([QaRunStatus.PENDING.value, QaRunStatus.RUNNING.value]),
        )
        .values(status=QaRunStatus.CANCELLED.value, completed_at=utcnow())
    )
    if result.rowcount != 1:
        raise InvalidTransition(f"Cannot cancel a {qa_run.status} QA run")
    await session.refresh(qa_run)
    logger.info("qa_run_cancelled", qa_run_id=qa_run_id)
    return qa_run


# ─── Review ───────────────────────────────────────────────────


async def _get_result(session: AsyncSession, qa_run_id: str, result_id: str) -> QaResult:
    result = await session.get(QaResult, result_id)
    if result is None or result.qa_run_id != qa_run_id:
        raise NotFound("QaResult", result_id)
    return result


async def review_result(
    session: AsyncSession,
    qa_run_id: str,
    result_id: str,
    request: ReviewResultRequest,
) -> QaResult:
    """Apply one reviewer decision. Parts of the request left as None are kept."""
    qa_result = await _get_result(session, qa_run_id, result_id)

    accepted_fields = dict(qa_result.accepted_fields or {})
    if request.accepted_fields is not None:
        flagged = set(flagged_fields(qa_result.field_issues))
        unknown = sorted(set(request.accepted_fields) - flagged)
        if unknown:
            raise InvalidRequest(f"Fields not flagged on this result: {', '.join(unknown)}")
        accepted_fields.update({name: bool(value) for name, value in request.accepted_fields.items()})

    accepted_merges = list(qa_result.accepted_merges or [])
    if request.accepted_merges is not None:
        accepted_merges = []
        for merge in request.accepted_merges:
            canonical = FieldPath.parse(merge.canonical)
            merged = [FieldPath.parse(name) for name in merge.merged]
            accepted_merges.append({"canonical": str(canonical), "merged": [str(p) for p in merged]})

    qa_result.accepted_fields = accepted_fields
    qa_result.accepted_merges = accepted_merges
    qa_result.status = derive_status(
        qa_result.field_issues, accepted_fields, accepted_merges, rejected=request.reject
    )
    qa_result.reviewed_at = utcnow()
    await session.flush()

    logger.info("qa_result_reviewed", qa_run_id=qa_run_id, result_id=result_id, status=qa_result.status)
    return qa_result


async def accept_field_group(session: AsyncSession, qa_run_id: str, field: str) -> BulkResult:
    """
    Accept `field` on every reviewable result that flags it.
    Results where it is already accepted count as skipped.
    """
    if not field or not field.strip():
        raise InvalidRequest("field is required")
    field = field.strip()
    await get_qa_run(session, qa_run_id)

    result = await session.execute(
        select(QaResult).where(
            QaResult.qa_run_id == qa_run_id,
            QaResult.status.in_(REVIEWABLE_STATUSES),
        )
    )
    updated = skipped = 0
    now = utcnow()
    for qa_result in result.scalars().all():
        if field not in flagged_fields(qa_result.field_issues):
            continue
        accepted_fields = dict(qa_result.accepted_fields or {})
        if accepted_fields.get(field) is True:
            skipped += 1
            continue
        accepted_fields[field] = True
        qa_result.accepted_fields = accepted_fields
        qa_result.status = derive_status(qa_result.field_issues, accepted_fields, qa_result.accepted_merges)
        qa_result.reviewed_at = now
        updated += 1

    await session.flush()
    logger.info("qa_field_group_accepted", qa_run_id=qa_run_id, field=field, updated=updated, skipped=skipped)
    return BulkResult(updated=updated, skipped=skipped)


async def qa_summary(session: AsyncSession, qa_run_id: str) -> QaSummaryResponse:
    """Status counts plus still-open field issues grouped by field, largest group first."""
    qa_run = await get_qa_run(session, qa_run_id)

    rows = await session.execute(
        select(QaResult.status, func.count(QaResult.id))
        .where(QaResult.qa_run_id == qa_run_id)
        .group_by(QaResult.status)
    )
    stats = {status.value: 0 for status in QaResultStatus}
    stats.update({row[0]: row[1] for row in rows.all()})

    pending = await session.execute(
        select(QaResult)
        .where(QaResult.qa_run_id == qa_run_id, QaResult.status.in_(REVIEWABLE_STATUSES))
        .order_by(QaResult.created_at, QaResult.id)
    )
    counts: dict[str, int] = defaultdict(int)
    examples: dict[str, list[dict]] = defaultdict(list)
    for qa_result in pending.scalars().all():
        accepted = qa_result.accepted_fields or {}
        for issue in qa_result.field_issues or []:
            name = issue.get("field")
            if not name or accepted.get(name) is True:
                continue
            counts[name] += 1
            if len(examples[name]) < SUMMARY_EXAMPLES:
                examples[name].append({
                    "result_id": qa_result.id,
                    "transaction_id": qa_result.transaction_id,
                    "current_value": issue.get("current_value"),
                    "suggested_value": issue.get("suggested_value"),
                    "reason": issue.get("reason"),
                })

    fields = [
        FieldGroup(field=name, count=count, examples=examples[name])
        for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ]
    return QaSummaryResponse(
        qa_run=QaRunResponse.model_validate(qa_run),
        stats=stats,
        fields=fields,
    )
