"""
/api/v1/qa endpoints.
Start QA runs, review results, bulk-accept fields and synthesize corrected runs.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailfin.dependencies import get_checker, get_db, get_session_factory, verify_api_key
from mailfin.pipeline.invoker import QaChecker
from mailfin.review.qa import (
    accept_field_group,
    cancel_qa_run,
    execute_qa_run,
    list_results,
    qa_summary,
    review_result,
    start_qa_run,
)
from mailfin.review.synthesizer import synthesize
from mailfin.schemas.review import (
    AcceptFieldRequest,
    BulkResult,
    QaResultResponse,
    QaRunResponse,
    QaSummaryResponse,
    ReviewResultRequest,
    StartQaRequest,
    SynthesisResponse,
    SynthesizeRequest,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/qa", tags=["qa"], dependencies=[Depends(verify_api_key)])


async def _run_in_background(
    qa_run_id: str,
    checker: QaChecker,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    try:
        await execute_qa_run(qa_run_id, checker, session_factory=session_factory)
    except Exception as e:
        # Already recorded on the QaRun row
        logger.error("qa_background_failed", qa_run_id=qa_run_id, error=str(e))


@router.post("", response_model=QaRunResponse, status_code=status.HTTP_201_CREATED)
async def create_qa_run(
    request: StartQaRequest,
    background_tasks: BackgroundTasks,
    queue: bool = Query(False, description="Run on the worker queue instead of in this process"),
    session: AsyncSession = Depends(get_db),
    checker: QaChecker = Depends(get_checker),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    qa_run = await start_qa_run(session, request)
    await session.commit()

    if queue:
        from mailfin.worker.jobs import enqueue_qa_run

        enqueue_qa_run(qa_run.id)
    else:
        background_tasks.add_task(_run_in_background, qa_run.id, checker, session_factory)
    return qa_run


@router.get("/{qa_run_id}", response_model=QaSummaryResponse)
async def get_qa_run_summary(qa_run_id: str, session: AsyncSession = Depends(get_db)):
    """QA run with status counts and open field issues grouped by field."""
    return await qa_summary(session, qa_run_id)


@router.get("/{qa_run_id}/results", response_model=list[QaResultResponse])
async def get_results(
    qa_run_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    has_issues: Optional[bool] = Query(None),
    session: AsyncSession = Depends(get_db),
):
    return await list_results(session, qa_run_id, status=status_filter, has_issues=has_issues)


@router.patch("/{qa_run_id}/results/{result_id}", response_model=QaResultResponse)
async def patch_result(
    qa_run_id: str,
    result_id: str,
    request: ReviewResultRequest,
    session: AsyncSession = Depends(get_db),
):
    qa_result = await review_result(session, qa_run_id, result_id, request)
    await session.commit()
    return qa_result


@router.post("/{qa_run_id}/accept-field", response_model=BulkResult)
async def accept_field(
    qa_run_id: str,
    request: AcceptFieldRequest,
    session: AsyncSession = Depends(get_db),
):
    """Accept one flagged field across every reviewable result of the QA run."""
    result = await accept_field_group(session, qa_run_id, request.field)
    await session.commit()
    return result


@router.post("/{qa_run_id}/cancel", response_model=QaRunResponse)
async def cancel(qa_run_id: str, session: AsyncSession = Depends(get_db)):
    qa_run = await cancel_qa_run(session, qa_run_id)
    await session.commit()
    return qa_run


@router.post("/{qa_run_id}/synthesize", response_model=SynthesisResponse, status_code=status.HTTP_201_CREATED)
async def synthesize_run(
    qa_run_id: str,
    request: Optional[SynthesizeRequest] = None,
    session: AsyncSession = Depends(get_db),
):
    """Create a corrected run from the accepted QA findings. Once per QA run."""
    response = await synthesize(session, qa_run_id, name=request.name if request else None)
    await session.commit()
    return response
