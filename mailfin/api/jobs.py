"""
/api/v1/jobs endpoints.
Pause/resume of a run's job and worker queue statistics.
"""

from fastapi import APIRouter, Depends, HTTPException
from redis import Redis

from mailfin.config import settings
from mailfin.dependencies import get_orchestrator, verify_api_key
from mailfin.pipeline.orchestrator import ExtractionOrchestrator
from mailfin.schemas.runs import JobActionResponse, QueueStats

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"], dependencies=[Depends(verify_api_key)])


def _get_redis() -> Redis:
    """Get a Redis connection."""
    return Redis.from_url(settings.REDIS_URL)


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats():
    """Get current queue statistics."""
    try:
        from rq import Queue
        from rq.worker import Worker

        from mailfin.observability.metrics import worker_queue_depth

        conn = _get_redis()
        q = Queue(settings.QUEUE_NAME, connection=conn)
        workers = Worker.all(connection=conn)
        worker_queue_depth.set(len(q))

        return QueueStats(
            queue_name=settings.QUEUE_NAME,
            queued=len(q),
            started=q.started_job_registry.count,
            finished=q.finished_job_registry.count,
            failed=q.failed_job_registry.count,
            deferred=q.deferred_job_registry.count,
            workers=len(workers),
        )
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {str(e)}")


@router.post("/{job_id}/pause", response_model=JobActionResponse)
async def pause_job(job_id: str, orchestrator: ExtractionOrchestrator = Depends(get_orchestrator)):
    """Hold a running job at its next email boundary."""
    job = await orchestrator.pause_job(job_id)
    return JobActionResponse(job_id=job.id, run_id=job.run_id, status=job.status)


@router.post("/{job_id}/resume", response_model=JobActionResponse)
async def resume_job(job_id: str, orchestrator: ExtractionOrchestrator = Depends(get_orchestrator)):
    job = await orchestrator.resume_job(job_id)
    return JobActionResponse(job_id=job.id, run_id=job.run_id, status=job.status)
