"""
/api/v1/runs endpoints.
Eligibility, start (streamed or queued), progress, cancel, resume and
comparison synthesis.
"""

from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.dependencies import get_db, get_orchestrator, verify_api_key
from mailfin.errors import NotFound
from mailfin.pipeline.orchestrator import ExtractionOrchestrator
from mailfin.pipeline.registry import check_eligibility, get_run, list_runs
from mailfin.review.synthesizer import synthesize_comparison
from mailfin.schemas.runs import (
    CancelRunRequest,
    CancelRunResponse,
    ComparisonSynthesisRequest,
    ComparisonSynthesisResponse,
    EligibilityResponse,
    EnqueueResponse,
    ExtractionRequest,
    ProgressEvent,
    ProgressSnapshotResponse,
    ResumeRunRequest,
    RunDetailResponse,
    RunResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/runs", tags=["runs"], dependencies=[Depends(verify_api_key)])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def event_stream(events: AsyncIterator[ProgressEvent]) -> StreamingResponse:
    """Server-sent events, one `data:` frame per progress event."""

    async def body():
        async for event in events:
            yield f"data: {event.model_dump_json()}\n\n"

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/eligibility", response_model=EligibilityResponse)
async def run_eligibility(
    set_id: str = Query(...),
    model_id: str = Query(...),
    session: AsyncSession = Depends(get_db),
):
    """Whether a new run of `model_id` over the set would be accepted."""
    return await check_eligibility(session, set_id, model_id)


@router.post("/stream")
async def start_run_streaming(
    request: ExtractionRequest,
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
):
    """
    Create the run and execute it in this process, streaming progress.
    Duplicate and validation errors are returned before the stream opens.
    The run continues if the client disconnects.
    """
    plan = await orchestrator.prepare(request)
    return event_stream(orchestrator.stream(plan))


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_run(
    request: ExtractionRequest,
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db),
):
    """Create the run and hand it to the worker queue."""
    from mailfin.worker.jobs import enqueue_extraction

    plan = await orchestrator.prepare(request)
    run = await get_run(session, plan.run_id)

    queued = True
    try:
        enqueue_extraction(plan.run_id)
    except Exception as e:
        # The run stays pending and can be started through /resume
        queued = False
        logger.warning("enqueue_failed", run_id=plan.run_id, error=str(e))

    return EnqueueResponse(run_id=plan.run_id, job_id=plan.job_id, version=run.version, queued=queued)


@router.post("/synthesize", response_model=ComparisonSynthesisResponse, status_code=status.HTTP_201_CREATED)
async def synthesize_from_comparison(
    request: ComparisonSynthesisRequest,
    session: AsyncSession = Depends(get_db),
):
    """Build a run from two runs of a set using the per-email winners."""
    response = await synthesize_comparison(session, request)
    await session.commit()
    return response


@router.get("", response_model=list[RunResponse])
async def runs_list(
    set_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    return await list_runs(session, set_id=set_id, limit=limit, offset=offset)


@router.get("/{run_id}", response_model=RunDetailResponse)
async def run_detail(
    run_id: str,
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db),
):
    run = await get_run(session, run_id)
    snapshot = await orchestrator.registry.load(session, run_id)
    return RunDetailResponse(
        run=RunResponse.model_validate(run),
        progress=ProgressSnapshotResponse(**snapshot.to_dict()) if snapshot else None,
    )


@router.get("/{run_id}/progress")
async def run_progress(
    run_id: str,
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db),
):
    """
    Follow a run. Live events when this process executes it, otherwise one
    event rebuilt from the persisted counters.
    """
    registry = orchestrator.registry
    if registry.is_active(run_id):
        return event_stream(registry.subscribe(run_id))

    snapshot = await registry.load(session, run_id)
    if snapshot is None:
        raise NotFound("Run", run_id)

    async def single():
        yield snapshot.to_event(f"Run is {snapshot.status}")

    return event_stream(single())


@router.post("/{run_id}/cancel", response_model=CancelRunResponse)
async def cancel_run(
    run_id: str,
    request: Optional[CancelRunRequest] = None,
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
):
    """Cancel a run and delete its transactions. Cancelling twice is a no-op."""
    return await orchestrator.cancel_run(run_id, request.notes if request else None)


@router.post("/{run_id}/resume")
async def resume_run(
    run_id: str,
    request: Optional[ResumeRunRequest] = None,
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db),
):
    """Continue a failed (or never started) run over the emails it has not extracted yet."""
    request = request or ResumeRunRequest()
    run = await get_run(session, run_id)
    plan = await orchestrator.prepare(
        ExtractionRequest(
            set_id=run.set_id,
            model_id=run.model_id,
            prompt_id=run.prompt_id,
            prompt_text=request.prompt_text,
            concurrency=request.concurrency,
            resume_run_id=run_id,
        )
    )
    return event_stream(orchestrator.stream(plan))
