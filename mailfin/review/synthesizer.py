"""
Synthesizer: derived extraction runs.

QA corrections clone every transaction of the source run, applying the
accepted field values and merges of a reviewed QaRun. Comparison synthesis
builds one run from two runs of a set using per-email winners. Source runs
are only ever read.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.errors import AlreadySynthesized, InvalidRequest, InvalidTransition, NotFound
from mailfin.models.enums import QaResultStatus, QaRunStatus, RunStatus, SynthesisType
from mailfin.models.tables import Email, ExtractionRun, QaResult, QaRun, Transaction, new_id, utcnow
from mailfin.observability.metrics import synthesized_runs_total
from mailfin.pipeline.data_fields import TYPED_COLUMNS, DataBag, FieldPath, TransactionDraft
from mailfin.pipeline.emails import WINNER_TIE
from mailfin.pipeline.registry import get_run, next_version
from mailfin.review.qa import flagged_fields, get_qa_run
from mailfin.schemas.review import SynthesisResponse
from mailfin.schemas.runs import ComparisonSynthesisRequest, ComparisonSynthesisResponse

logger = structlog.get_logger(__name__)

SYNTHESIZABLE_STATUSES = (QaResultStatus.ACCEPTED.value, QaResultStatus.PARTIAL.value)


@dataclass
class ChangeSet:
    """Accepted corrections for one transaction."""

    overwrites: list[tuple[str, Any]] = field(default_factory=list)
    merges: list[tuple[str, list[str]]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.overwrites or self.merges)


def change_set_for(qa_result: QaResult) -> ChangeSet:
    changes = ChangeSet()
    accepted = qa_result.accepted_fields or {}
    for name in flagged_fields(qa_result.field_issues):
        if accepted.get(name) is not True:
            continue
        # First issue naming the field carries the suggested value
        issue = next(i for i in qa_result.field_issues if i.get("field") == name)
        changes.overwrites.append((name, issue.get("suggested_value")))
    for merge in qa_result.accepted_merges or []:
        changes.merges.append((merge["canonical"], list(merge.get("merged", []))))
    return changes


async def build_change_sets(session: AsyncSession, qa_run_id: str) -> dict[str, ChangeSet]:
    result = await session.execute(
        select(QaResult).where(
            QaResult.qa_run_id == qa_run_id,
            QaResult.status.in_(SYNTHESIZABLE_STATUSES),
        )
    )
    change_sets = {}
    for qa_result in result.scalars().all():
        changes = change_set_for(qa_result)
        if changes:
            change_sets[qa_result.transaction_id] = changes
    return change_sets


def draft_from(tx: Transaction) -> TransactionDraft:
    return TransactionDraft(
        columns={name: getattr(tx, name) for name in TYPED_COLUMNS},
        data=DataBag(tx.data),
    )


def apply_changes(draft: TransactionDraft, changes: ChangeSet, transaction_id: str) -> int:
    """Overwrites first, then merges. Returns how many corrections took effect."""
    applied = 0
    for name, value in changes.overwrites:
        path = FieldPath.try_parse(name)
        if path is None:
            logger.warning("synthesis_field_skipped", transaction_id=transaction_id, field=name)
            continue
        try:
            draft.overwrite(path, value)
        except (InvalidRequest, ValueError) as e:
            logger.warning(
                "synthesis_value_rejected",
                transaction_id=transaction_id,
                field=name,
                error=str(e),
            )
            continue
        applied += 1

    for canonical, merged in changes.merges:
        canonical_path = FieldPath.try_parse(canonical)
        merged_paths = [p for p in (FieldPath.try_parse(name) for name in merged) if p is not None]
        if canonical_path is None or not merged_paths:
            logger.warning("synthesis_merge_skipped", transaction_id=transaction_id, canonical=canonical)
            continue
        try:
            draft.merge(canonical_path, merged_paths)
        except (InvalidRequest, ValueError) as e:
            logger.warning(
                "synthesis_merge_rejected",
                transaction_id=transaction_id,
                canonical=canonical,
                error=str(e),
            )
            continue
        applied += 1
    return applied


async def synthesize(session: AsyncSession, qa_run_id: str, name: Optional[str] = None) -> SynthesisResponse:
    """
    Create the derived run for a completed QaRun. At most one per QaRun:
    the link is claimed with a guarded update in the same transaction.
    """
    qa_run = await get_qa_run(session, qa_run_id)
    if qa_run.synthesized_run_id:
        raise AlreadySynthesized(qa_run_id, qa_run.synthesized_run_id)
    if qa_run.status != QaRunStatus.COMPLETED.value:
        raise InvalidTransition(f"Cannot synthesize a {qa_run.status} QA run")

    source = await session.get(ExtractionRun, qa_run.source_run_id)
    if source is None:
        raise NotFound("ExtractionRun", qa_run.source_run_id)

    change_sets = await build_change_sets(session, qa_run_id)
    version = await next_version(session, source.set_id)
    now = utcnow()
    run = ExtractionRun(
        id=new_id(),
        set_id=source.set_id,
        model_id=source.model_id,
        prompt_id=source.prompt_id,
        software_version=source.software_version,
        version=version,
        name=name or f"QA Corrected v{version} (from v{source.version})",
        status=RunStatus.COMPLETED.value,
        emails_processed=source.emails_processed,
        informational_count=source.informational_count,
        is_synthesized=True,
        synthesis_type=SynthesisType.QA_CORRECTIONS.value,
        source_run_ids=[source.id],
        started_at=now,
        completed_at=now,
    )

    try:
        async with session.begin_nested():
            session.add(run)
            await session.flush()
            claim = await session.execute(
                update(QaRun)
                .where(QaRun.id == qa_run_id, QaRun.synthesized_run_id.is_(None))
                .values(synthesized_run_id=run.id)
            )
            if claim.rowcount != 1:
                raise AlreadySynthesized(qa_run_id)
    except IntegrityError as e:
        raise AlreadySynthesized(qa_run_id) from e

    originals = await session.execute(
        select(Transaction)
        .where(Transaction.extraction_run_id == source.id)
        .order_by(Transaction.created_at, Transaction.id)
    )
    created = corrections = 0
    for tx in originals.scalars().all():
        draft = draft_from(tx)
        changes = change_sets.get(tx.id)
        if changes:
            corrections += apply_changes(draft, changes, tx.id)
        session.add(
            Transaction(
                extraction_run_id=run.id,
                source_email_id=tx.source_email_id,
                source_transaction_id=tx.id,
                data=draft.data.to_dict(),
                run_completed=True,
                **draft.columns,
            )
        )
        created += 1

    run.transactions_created = created
    run.config = {
        "qa_run_id": qa_run_id,
        "source_run_id": source.id,
        "corrections_applied": corrections,
    }
    await session.flush()

    synthesized_runs_total.labels(synthesis_type=SynthesisType.QA_CORRECTIONS.value).inc()
    logger.info(
        "run_synthesized",
        run_id=run.id,
        qa_run_id=qa_run_id,
        source_run_id=source.id,
        version=version,
        transactions_created=created,
        corrections_applied=corrections,
    )
    return SynthesisResponse(
        run_id=run.id,
        version=version,
        transactions_created=created,
        corrections_applied=corrections,
    )


# Columns that always come from the winning transaction
COMPARISON_KEPT_COLUMNS = ("type", "date", "confidence")


async def _transactions_by_email(session: AsyncSession, run_id: str) -> dict[str, list[Transaction]]:
    result = await session.execute(
        select(Transaction)
        .where(Transaction.extraction_run_id == run_id)
        .order_by(Transaction.created_at, Transaction.id)
    )
    by_email: dict[str, list[Transaction]] = {}
    for tx in result.scalars().all():
        if tx.source_email_id:
            by_email.setdefault(tx.source_email_id, []).append(tx)
    return by_email


async def synthesize_comparison(
    session: AsyncSession,
    request: ComparisonSynthesisRequest,
) -> ComparisonSynthesisResponse:
    """
    Combine two runs of one set into a new run.

    Per email, the run owning the reviewer's winner supplies the
    transactions; ties and emails without a winner use the primary run.
    The other run fills empty fields position by position, then the
    email's field overrides are applied to the designated transaction
    (or the first one). Both source runs are only read.
    """
    if request.run_a_id == request.run_b_id:
        raise InvalidRequest("Comparison synthesis needs two different runs")
    if request.primary_run_id not in (request.run_a_id, request.run_b_id):
        raise InvalidRequest("primary_run_id must be one of run_a_id and run_b_id")

    run_a = await get_run(session, request.run_a_id)
    run_b = await get_run(session, request.run_b_id)
    if run_a.set_id != run_b.set_id:
        raise InvalidRequest("Both runs must belong to the same email set")
    for source in (run_a, run_b):
        if source.status != RunStatus.COMPLETED.value:
            raise InvalidTransition(f"Cannot synthesize from a {source.status} run")
    primary_is_a = request.primary_run_id == run_a.id
    primary = run_a if primary_is_a else run_b

    by_email_a = await _transactions_by_email(session, run_a.id)
    by_email_b = await _transactions_by_email(session, run_b.id)
    result = await session.execute(
        select(Email)
        .where(Email.id.in_(set(by_email_a) | set(by_email_b)))
        .order_by(Email.created_at, Email.id)
    )
    emails = list(result.scalars().all())

    version = await next_version(session, run_a.set_id)
    now = utcnow()
    run = ExtractionRun(
        id=new_id(),
        set_id=run_a.set_id,
        model_id=primary.model_id,
        prompt_id=primary.prompt_id,
        software_version=primary.software_version,
        version=version,
        name=request.name or f"Synthesized v{version} ({run_a.version} vs {run_b.version} winners)",
        status=RunStatus.COMPLETED.value,
        emails_processed=len(emails),
        is_synthesized=True,
        synthesis_type=SynthesisType.COMPARISON_WINNERS.value,
        source_run_ids=[run_a.id, run_b.id],
        started_at=now,
        completed_at=now,
    )
    session.add(run)
    await session.flush()

    stats = {"from_a": 0, "from_b": 0, "ties": 0, "no_winner": 0}
    created = overrides_applied = 0
    for email in emails:
        txs_a = by_email_a.get(email.id, [])
        txs_b = by_email_b.get(email.id, [])
        winner = email.winner_transaction_id
        if winner == WINNER_TIE:
            stats["ties"] += 1
            use_a = primary_is_a
        elif winner and any(tx.id == winner for tx in txs_a):
            stats["from_a"] += 1
            use_a = True
        elif winner and any(tx.id == winner for tx in txs_b):
            stats["from_b"] += 1
            use_a = False
        else:
            stats["no_winner"] += 1
            use_a = primary_is_a
        winners, losers = (txs_a, txs_b) if use_a else (txs_b, txs_a)
        if not winners:
            continue

        target = winner if any(tx.id == winner for tx in winners) else winners[0].id
        for index, tx in enumerate(winners):
            draft = draft_from(tx)
            if index < len(losers):
                draft.fill_gaps(draft_from(losers[index]), keep=COMPARISON_KEPT_COLUMNS)
            if email.field_overrides and tx.id == target:
                overrides = ChangeSet(overwrites=list(email.field_overrides.items()))
                overrides_applied += apply_changes(draft, overrides, tx.id)
            session.add(
                Transaction(
                    extraction_run_id=run.id,
                    source_email_id=email.id,
                    source_transaction_id=tx.id,
                    data=draft.data.to_dict(),
                    run_completed=True,
                    **draft.columns,
                )
            )
            created += 1

    run.transactions_created = created
    run.config = {
        "source_run_a": run_a.id,
        "source_run_b": run_b.id,
        "primary_run_id": primary.id,
        "synthesis_stats": stats,
        "overrides_applied": overrides_applied,
    }
    await session.flush()

    synthesized_runs_total.labels(synthesis_type=SynthesisType.COMPARISON_WINNERS.value).inc()
    logger.info(
        "run_synthesized",
        run_id=run.id,
        source_run_ids=run.source_run_ids,
        version=version,
        transactions_created=created,
        **stats,
    )
    return ComparisonSynthesisResponse(
        run_id=run.id,
        version=version,
        transactions_created=created,
        overrides_applied=overrides_applied,
        **stats,
    )
