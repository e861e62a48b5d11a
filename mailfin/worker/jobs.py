"""
RQ job functions for extraction runs and QA runs.
These are the entry points that the worker calls.
"""

import structlog
from redis import Redis
from rq import Queue

from mailfin.config import settings

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the extraction job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_extraction(run_id: str) -> str:
    """
    Enqueue a prepared run (its Job row and plan already exist).
    Returns the rq job ID.
    """
    q = get_queue()
    job = q.enqueue(
        run_extraction_job,
        run_id,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
    )
    logger.info("job_enqueued", run_id=run_id, rq_job_id=job.id)
    return job.id


def enqueue_qa_run(qa_run_id: str) -> str:
    q = get_queue()
    job = q.enqueue(
        run_qa_job,
        qa_run_id,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=604800,
    )
    logger.info("qa_job_enqueued", qa_run_id=qa_run_id, rq_job_id=job.id)
    return job.id


def run_extraction_job(run_id: str) -> dict:
    """
    Main job function: execute one extraction run end-to-end.
    This runs inside the RQ worker process.
    """
    import asyncio

    logger.info("job_started", run_id=run_id)

    try:
        result = asyncio.run(_run_extraction_async(run_id))
        logger.info("job_completed", run_id=run_id, status=result.get("status"))
        return result
    except Exception as e:
        logger.error("job_failed", run_id=run_id, error=str(e))
        raise


async def _run_extraction_async(run_id: str) -> dict:
    from mailfin.models.database import engine
    from mailfin.pipeline.invoker import get_invoker
    from mailfin.pipeline.orchestrator import ExtractionOrchestrator

    try:
        orchestrator = ExtractionOrchestrator(get_invoker())
        snapshot = await orchestrator.execute_run(run_id)
        return snapshot.to_dict()
    finally:
        # asyncio.run closes the loop; pooled connections must not outlive it
        await engine.dispose()


def run_qa_job(qa_run_id: str) -> dict:
    import asyncio

    logger.info("qa_job_started", qa_run_id=qa_run_id)

    try:
        result = asyncio.run(_run_qa_async(qa_run_id))
        logger.info("qa_job_completed", qa_run_id=qa_run_id, status=result.get("status"))
        return result
    except Exception as e:
        logger.error("qa_job_failed", qa_run_id=qa_run_id, error=str(e))
        raise


async def _run_qa_async(qa_run_id: str) -> dict:
    from mailfin.models.database import engine
    from mailfin.pipeline.invoker import get_qa_checker
    from mailfin.review.qa import execute_qa_run

    try:
        qa_run = await execute_qa_run(qa_run_id, get_qa_checker())
        return {
            "qa_run_id": qa_run.id,
            "status": qa_run.status,
            "transactions_checked": qa_run.transactions_checked,
            "issues_found": qa_run.issues_found,
        }
    finally:
        await engine.dispose()
