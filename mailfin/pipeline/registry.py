"""
Run registry: versioned ExtractionRun records over (set, model, prompt, software version).
"""

from typing import Iterable, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.config import settings
from mailfin.errors import DuplicateRun, NotFound
from mailfin.models.enums import EmailStatus, JobStatus, RunStatus
from mailfin.models.tables import Email, EmailSet, ExtractionRun, Job, utcnow
from mailfin.observability.metrics import duplicate_runs_rejected_total
from mailfin.schemas.runs import EligibilityResponse

logger = structlog.get_logger(__name__)

STALE_RUN_MESSAGE = "Job interrupted by server restart"


async def next_version(session: AsyncSession, set_id: str) -> int:
    """max(version) + 1 within the set; versions are never reused."""
    result = await session.execute(
        select(func.max(ExtractionRun.version)).where(ExtractionRun.set_id == set_id)
    )
    return (result.scalar() or 0) + 1


async def find_run(
    session: AsyncSession,
    set_id: str,
    model_id: str,
    software_version: str,
    *statuses: str,
) -> Optional[ExtractionRun]:
    result = await session.execute(
        select(ExtractionRun)
        .where(
            ExtractionRun.set_id == set_id,
            ExtractionRun.model_id == model_id,
            ExtractionRun.software_version == software_version,
            ExtractionRun.status.in_(statuses),
            ExtractionRun.is_synthesized.is_(False),
        )
        .order_by(ExtractionRun.version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_run(
    session: AsyncSession,
    set_id: str,
    model_id: str,
    prompt_id: Optional[str],
    software_version: Optional[str] = None,
    force: bool = False,
    name: Optional[str] = None,
    config: Optional[dict] = None,
) -> ExtractionRun:
    """
    Create a pending run with the next version for the set.

    Raises DuplicateRun when a completed run already exists for
    (set, model, software version) unless `force`, when one is still running,
    or when a concurrent creator took the same version.
    """
    software_version = software_version or settings.SOFTWARE_VERSION

    email_set = await session.get(EmailSet, set_id)
    if email_set is None:
        raise NotFound("Email set", set_id)

    running = await find_run(
        session, set_id, model_id, software_version,
        RunStatus.PENDING.value, RunStatus.RUNNING.value,
    )
    if running is not None:
        duplicate_runs_rejected_total.inc()
        raise DuplicateRun(
            f"Run v{running.version} is already queued or extracting this set with {model_id}",
            existing_run_id=running.id,
        )

    if not force:
        completed = await find_run(session, set_id, model_id, software_version, RunStatus.COMPLETED.value)
        if completed is not None:
            duplicate_runs_rejected_total.inc()
            raise DuplicateRun(
                f"Set already extracted with {model_id} on software {software_version} (v{completed.version})",
                existing_run_id=completed.id,
            )

    version = await next_version(session, set_id)
    run = ExtractionRun(
        set_id=set_id,
        model_id=model_id,
        prompt_id=prompt_id,
        software_version=software_version,
        version=version,
        name=name or f"v{version}",
        status=RunStatus.PENDING.value,
        config=config,
    )
    try:
        async with session.begin_nested():
            session.add(run)
            await session.flush()
    except IntegrityError as e:
        duplicate_runs_rejected_total.inc()
        raise DuplicateRun(f"Version {version} of set {set_id} was created concurrently") from e

    logger.info(
        "run_created",
        run_id=run.id,
        set_id=set_id,
        model_id=model_id,
        version=version,
        software_version=software_version,
    )
    return run


async def check_eligibility(
    session: AsyncSession,
    set_id: str,
    model_id: str,
    software_version: Optional[str] = None,
) -> EligibilityResponse:
    software_version = software_version or settings.SOFTWARE_VERSION

    email_set = await session.get(EmailSet, set_id)
    if email_set is None:
        raise NotFound("Email set", set_id)

    completed = await find_run(session, set_id, model_id, software_version, RunStatus.COMPLETED.value)
    if completed is not None:
        return EligibilityResponse(
            eligible=False,
            reason="already_extracted",
            email_count=email_set.email_count,
            existing_run_id=completed.id,
        )

    if email_set.email_count == 0:
        return EligibilityResponse(eligible=False, reason="no_emails")

    pending = await session.execute(
        select(func.count(Email.id)).where(
            Email.set_id == set_id,
            Email.status == EmailStatus.PENDING.value,
        )
    )
    return EligibilityResponse(
        eligible=True,
        pending_count=pending.scalar() or 0,
        email_count=email_set.email_count,
    )


async def get_run(session: AsyncSession, run_id: str) -> ExtractionRun:
    run = await session.get(ExtractionRun, run_id)
    if run is None:
        raise NotFound("Run", run_id)
    return run


async def list_runs(
    session: AsyncSession,
    set_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ExtractionRun]:
    query = select(ExtractionRun).order_by(ExtractionRun.created_at.desc())
    if set_id:
        query = query.where(ExtractionRun.set_id == set_id)
    result = await session.execute(query.offset(offset).limit(limit))
    return list(result.scalars().all())


async def cleanup_stale_runs(
    session: AsyncSession,
    exclude_run_ids: Iterable[str] = (),
) -> int:
    """
    Mark runs (and their jobs) left RUNNING by a dead process as failed.
    Failed runs stay resumable. Returns the number of runs touched.
    """
    exclude = list(exclude_run_ids)
    query = select(ExtractionRun.id).where(ExtractionRun.status == RunStatus.RUNNING.value)
    if exclude:
        query = query.where(ExtractionRun.id.not_in(exclude))
    stale_ids = list((await session.execute(query)).scalars().all())
    if not stale_ids:
        return 0

    now = utcnow()
    await session.execute(
        update(ExtractionRun)
        .where(ExtractionRun.id.in_(stale_ids), ExtractionRun.status == RunStatus.RUNNING.value)
        .values(status=RunStatus.FAILED.value, error_message=STALE_RUN_MESSAGE, completed_at=now)
    )
    await session.execute(
        update(Job)
        .where(
            Job.run_id.in_(stale_ids),
            Job.status.in_([JobStatus.RUNNING.value, JobStatus.PAUSED.value]),
        )
        .values(status=JobStatus.FAILED.value, error_message=STALE_RUN_MESSAGE, completed_at=now)
    )
    await session.commit()

    logger.warning("stale_runs_failed", count=len(stale_ids), run_ids=stale_ids)
    return len(stale_ids)
