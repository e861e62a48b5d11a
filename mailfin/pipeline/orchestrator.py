"""
Extraction run orchestrator.

Lifecycle per run: pending → running → {completed, failed, cancelled}.
failed → running only through resume. One execution fans the planned emails
out to a bounded pool of workers; each worker calls the invoker, then persists
that email's outcome in one DB transaction.

Stages on the progress stream: extracting → parsing → saving → complete,
with error terminal from anywhere.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailfin.config import settings
from mailfin.errors import (
    InvalidRequest,
    InvalidTransition,
    InvokerFailure,
    NotFound,
    classify_error,
)
from mailfin.models.database import async_session_factory
from mailfin.models.enums import (
    EmailStatus,
    ExtractionOutcome,
    JobStatus,
    LogLevel,
    ProgressStage,
    RunStatus,
)
from mailfin.models.tables import (
    DiscussionSummary,
    Email,
    EmailExtraction,
    ExtractionLog,
    ExtractionRun,
    Job,
    Prompt,
    Transaction,
    utcnow,
)
from mailfin.observability.logging import bind_run_context, clear_run_context
from mailfin.observability.metrics import (
    active_jobs,
    emails_extracted_total,
    invoker_failures_total,
    invoker_latency_seconds,
    run_duration_seconds,
    runs_finished_total,
    runs_started_total,
)
from mailfin.pipeline.emails import delete_run_transactions, email_payload
from mailfin.pipeline.invoker import ExtractionInvoker
from mailfin.pipeline.job_registry import JobRegistry, ProgressSnapshot, job_registry
from mailfin.pipeline.materializer import TransactionMaterializer
from mailfin.pipeline.registry import create_run, get_run
from mailfin.schemas.extraction import ExtractionDocument
from mailfin.schemas.runs import CancelRunResponse, ExtractionRequest, ProgressEvent

logger = structlog.get_logger(__name__)

EVIDENCE_EMAIL_TYPE = "evidence"
CANCELLABLE_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value, RunStatus.FAILED.value)


@dataclass
class RunPlan:
    """Everything one execution needs; persisted on Job.plan."""

    run_id: str
    job_id: str
    set_id: str
    model_id: str
    prompt_text: str
    json_schema: Optional[dict]
    email_ids: list[str]
    concurrency: int
    is_resume: bool = False
    already_processed: int = 0
    already_failed: int = 0
    already_informational: int = 0
    listener: Optional[Callable[[ProgressEvent], None]] = field(default=None, repr=False)

    @property
    def total(self) -> int:
        return self.already_processed + len(self.email_ids)

    def to_json(self) -> dict:
        return {
            "email_ids": self.email_ids,
            "prompt_text": self.prompt_text,
            "json_schema": self.json_schema,
            "concurrency": self.concurrency,
            "is_resume": self.is_resume,
            "already_processed": self.already_processed,
            "already_failed": self.already_failed,
            "already_informational": self.already_informational,
        }


@dataclass
class EmailOutcome:
    outcome: str
    transactions: int = 0
    item_failures: int = 0


class ExtractionOrchestrator:
    """
    Drives extraction runs. Share one instance per process so in-flight
    runs can be cancelled through the JobRegistry.
    """

    def __init__(
        self,
        invoker: ExtractionInvoker,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Optional[JobRegistry] = None,
        materializer: Optional[TransactionMaterializer] = None,
        pause_poll_seconds: Optional[float] = None,
    ):
        self.invoker = invoker
        self.session_factory = session_factory or async_session_factory
        self.registry = registry or job_registry
        self.materializer = materializer or TransactionMaterializer()
        self.pause_poll_seconds = (
            settings.PAUSE_POLL_SECONDS if pause_poll_seconds is None else pause_poll_seconds
        )
        self._background: set[asyncio.Task] = set()

    # ─── Entry points ─────────────────────────────────────────

    async def run(self, request: ExtractionRequest) -> ProgressSnapshot:
        """Prepare and execute to completion (worker path)."""
        plan = await self.prepare(request)
        return await self.execute(plan)

    async def stream(self, plan: RunPlan) -> AsyncIterator[ProgressEvent]:
        """
        Execute in a background task and yield its progress events.
        A disconnecting consumer does not stop the run.
        """
        queue: asyncio.Queue = asyncio.Queue()
        plan.listener = queue.put_nowait
        task = asyncio.create_task(self.execute(plan))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(lambda _t: queue.put_nowait(None))
        task.add_done_callback(_consume_task_error)

        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    async def execute_run(self, run_id: str) -> ProgressSnapshot:
        """Execute a run prepared earlier (e.g. enqueued by the API)."""
        plan = await self.load_plan(run_id)
        return await self.execute(plan)

    # ─── Preparation ──────────────────────────────────────────

    async def prepare(self, request: ExtractionRequest) -> RunPlan:
        """Create (or reopen for resume) the run and its Job. Nothing is extracted yet."""
        concurrency = max(1, min(request.concurrency, settings.MAX_CONCURRENCY))
        async with self.session_factory() as session:
            if request.resume_run_id:
                plan = await self._prepare_resume(session, request, concurrency)
            else:
                plan = await self._prepare_new(session, request, concurrency)
            await session.commit()

        logger.info(
            "run_prepared",
            run_id=plan.run_id,
            job_id=plan.job_id,
            emails=len(plan.email_ids),
            is_resume=plan.is_resume,
            already_processed=plan.already_processed,
        )
        return plan

    async def _prepare_new(self, session: AsyncSession, request: ExtractionRequest, concurrency: int) -> RunPlan:
        prompt_text, json_schema = await self._resolve_prompt(session, request.prompt_id, request.prompt_text)

        result = await session.execute(
            select(Email.id).where(Email.set_id == request.set_id).order_by(Email.created_at, Email.id)
        )
        email_ids = list(result.scalars().all())
        if request.sample_size and request.sample_size < len(email_ids):
            email_ids = random.sample(email_ids, request.sample_size)

        run = await create_run(
            session,
            request.set_id,
            request.model_id,
            request.prompt_id,
            force=request.force,
            name=request.name,
            config={"concurrency": concurrency, "sample_size": request.sample_size},
        )
        if not email_ids:
            raise InvalidRequest(f"Email set {request.set_id} has no emails")

        plan = RunPlan(
            run_id=run.id,
            job_id="",
            set_id=run.set_id,
            model_id=run.model_id,
            prompt_text=prompt_text,
            json_schema=json_schema,
            email_ids=email_ids,
            concurrency=concurrency,
        )
        job = self._new_job(plan)
        session.add(job)
        await session.flush()
        plan.job_id = job.id
        run.job_id = job.id
        return plan

    async def _prepare_resume(self, session: AsyncSession, request: ExtractionRequest, concurrency: int) -> RunPlan:
        run = await get_run(session, request.resume_run_id)
        if run.status == RunStatus.COMPLETED.value:
            raise InvalidTransition("Cannot resume a completed run")
        if run.status == RunStatus.RUNNING.value:
            raise InvalidTransition("Run is already in progress")
        if run.status == RunStatus.CANCELLED.value:
            raise InvalidTransition("Cannot resume a cancelled run")

        previous = await session.get(Job, run.job_id) if run.job_id else None
        previous_plan = (previous.plan or {}) if previous else {}
        if previous is not None and previous.status in (JobStatus.RUNNING.value, JobStatus.PAUSED.value):
            previous.status = JobStatus.FAILED.value
            previous.error_message = "Superseded by resume"
            previous.completed_at = utcnow()

        if request.prompt_text:
            prompt_text, json_schema = request.prompt_text, previous_plan.get("json_schema")
        elif previous_plan.get("prompt_text"):
            prompt_text, json_schema = previous_plan["prompt_text"], previous_plan.get("json_schema")
        else:
            prompt_text, json_schema = await self._resolve_prompt(session, run.prompt_id, None)

        ledger = await session.execute(
            select(EmailExtraction.status, func.count(EmailExtraction.id))
            .where(EmailExtraction.run_id == run.id)
            .group_by(EmailExtraction.status)
        )
        done_counts = {row[0]: row[1] for row in ledger.all()}
        done = await session.execute(select(EmailExtraction.email_id).where(EmailExtraction.run_id == run.id))
        done_ids = set(done.scalars().all())

        # A sampled run stays on its sample; otherwise the whole set is in scope
        if (run.config or {}).get("sample_size") and previous_plan.get("email_ids"):
            scope = list(previous_plan["email_ids"])
        else:
            result = await session.execute(
                select(Email.id).where(Email.set_id == run.set_id).order_by(Email.created_at, Email.id)
            )
            scope = list(result.scalars().all())
        remaining = [email_id for email_id in scope if email_id not in done_ids]

        plan = RunPlan(
            run_id=run.id,
            job_id="",
            set_id=run.set_id,
            model_id=run.model_id,
            prompt_text=prompt_text,
            json_schema=json_schema,
            email_ids=remaining,
            concurrency=concurrency,
            is_resume=True,
            already_processed=len(done_ids),
            already_failed=done_counts.get(ExtractionOutcome.FAILED.value, 0),
            already_informational=done_counts.get(ExtractionOutcome.INFORMATIONAL.value, 0),
        )
        job = self._new_job(plan)
        session.add(job)
        await session.flush()
        plan.job_id = job.id
        run.job_id = job.id
        return plan

    @staticmethod
    def _new_job(plan: RunPlan) -> Job:
        return Job(
            run_id=plan.run_id,
            status=JobStatus.RUNNING.value,
            total_items=plan.total,
            processed_items=plan.already_processed,
            failed_items=plan.already_failed,
            informational_items=plan.already_informational,
            plan=plan.to_json(),
        )

    @staticmethod
    async def _resolve_prompt(
        session: AsyncSession,
        prompt_id: Optional[str],
        prompt_text: Optional[str],
    ) -> tuple[str, Optional[dict]]:
        prompt = None
        if prompt_id:
            prompt = await session.get(Prompt, prompt_id)
            if prompt is None:
                raise NotFound("Prompt", prompt_id)
        if prompt_text:
            return prompt_text, prompt.json_schema if prompt else None
        if prompt is not None:
            return prompt.content, prompt.json_schema
        raise InvalidRequest("Either prompt_id or prompt_text is required")

    async def load_plan(self, run_id: str) -> RunPlan:
        async with self.session_factory() as session:
            run = await get_run(session, run_id)
            job = await session.get(Job, run.job_id) if run.job_id else None
            if job is None or not job.plan:
                raise InvalidTransition(f"Run {run_id} has no prepared job")
            stored = job.plan
            return RunPlan(
                run_id=run.id,
                job_id=job.id,
                set_id=run.set_id,
                model_id=run.model_id,
                prompt_text=stored["prompt_text"],
                json_schema=stored.get("json_schema"),
                email_ids=list(stored.get("email_ids", [])),
                concurrency=stored.get("concurrency", settings.DEFAULT_CONCURRENCY),
                is_resume=stored.get("is_resume", False),
                already_processed=stored.get("already_processed", 0),
                already_failed=stored.get("already_failed", 0),
                already_informational=stored.get("already_informational", 0),
            )

    # ─── Execution ────────────────────────────────────────────

    async def execute(self, plan: RunPlan) -> ProgressSnapshot:
        """
        Run the plan to a terminal state. Catastrophic faults mark the run
        failed (resumable), emit an error event and re-raise.
        """
        token = self.registry.register(
            ProgressSnapshot(
                run_id=plan.run_id,
                job_id=plan.job_id,
                status=RunStatus.RUNNING.value,
                stage=ProgressStage.EXTRACTING.value,
                total=plan.total,
                processed=plan.already_processed,
                failed=plan.already_failed,
                informational=plan.already_informational,
            )
        )
        bind_run_context(plan.run_id, plan.job_id)
        active_jobs.inc()
        started = time.monotonic()

        try:
            if not await self._start(plan):
                return self._finish_not_started(plan)

            runs_started_total.labels(mode="resume" if plan.is_resume else "new").inc()
            logger.info(
                "run_started",
                model_id=plan.model_id,
                emails=len(plan.email_ids),
                concurrency=plan.concurrency,
                is_resume=plan.is_resume,
            )
            self._emit(
                plan,
                ProgressStage.EXTRACTING,
                f"Extracting {len(plan.email_ids)} emails with {plan.model_id}",
                model_id=plan.model_id,
                is_resume=plan.is_resume,
                already_processed=plan.already_processed,
            )

            await self._drain(plan, token)
            return await self._finalize(plan, token, started)

        except InvalidTransition as e:
            # Another execution owns the run; leave its state alone
            logger.warning("run_not_started", error=e.message)
            self._emit(plan, ProgressStage.ERROR, e.message, error=e.message)
            raise
        except Exception as e:
            logger.exception("run_failed", error=str(e))
            await self._fail_run(plan, str(e))
            self.registry.update(plan.run_id, status=RunStatus.FAILED.value, error_message=str(e)[:500])
            self._emit(plan, ProgressStage.ERROR, f"Run failed: {e}", error=str(e)[:500])
            runs_finished_total.labels(status=RunStatus.FAILED.value).inc()
            raise
        finally:
            run_duration_seconds.observe(time.monotonic() - started)
            active_jobs.dec()
            self.registry.finish(plan.run_id)
            clear_run_context()

    async def _start(self, plan: RunPlan) -> bool:
        """Single guarded transition into RUNNING. False when the run was cancelled first."""
        allowed = [RunStatus.FAILED.value, RunStatus.PENDING.value] if plan.is_resume else [RunStatus.PENDING.value]
        values = {
            "status": RunStatus.RUNNING.value,
            "job_id": plan.job_id,
            "error_message": None,
            "completed_at": None,
            "started_at": func.coalesce(ExtractionRun.started_at, utcnow()),
        }

        async with self.session_factory() as session:
            result = await session.execute(
                update(ExtractionRun)
                .where(ExtractionRun.id == plan.run_id, ExtractionRun.status.in_(allowed))
                .values(**values)
            )
            if result.rowcount == 1:
                await session.commit()
                return True

            status = (
                await session.execute(select(ExtractionRun.status).where(ExtractionRun.id == plan.run_id))
            ).scalar_one_or_none()
            if status == RunStatus.CANCELLED.value:
                return False
        raise InvalidTransition(f"Run {plan.run_id} cannot start from status {status}")

    def _finish_not_started(self, plan: RunPlan) -> ProgressSnapshot:
        snapshot = self.registry.update(plan.run_id, status=RunStatus.CANCELLED.value)
        self._emit(plan, ProgressStage.COMPLETE, "Run was cancelled before it started", status=RunStatus.CANCELLED.value)
        return snapshot

    async def _drain(self, plan: RunPlan, token) -> None:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for email_id in plan.email_ids:
            queue.put_nowait(email_id)

        write_lock = asyncio.Lock()
        workers = [
            asyncio.create_task(self._worker(plan, token, queue, write_lock))
            for _ in range(min(plan.concurrency, len(plan.email_ids)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def _worker(self, plan: RunPlan, token, queue: asyncio.Queue, write_lock: asyncio.Lock) -> None:
        while True:
            if not await self._checkpoint(plan, token):
                return
            try:
                email_id = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._process_email(plan, token, email_id, write_lock)

    async def _checkpoint(self, plan: RunPlan, token) -> bool:
        """
        Unit-of-work boundary. Observes cancellation (in-process token or a
        cancel written by another process) and holds while the job is paused.
        """
        while True:
            if token.cancelled:
                return False
            async with self.session_factory() as session:
                run_status = (
                    await session.execute(select(ExtractionRun.status).where(ExtractionRun.id == plan.run_id))
                ).scalar_one_or_none()
                job_status = (
                    await session.execute(select(Job.status).where(Job.id == plan.job_id))
                ).scalar_one_or_none()

            if run_status == RunStatus.CANCELLED.value or job_status == JobStatus.CANCELLED.value:
                token.cancel("cancelled")
                return False
            if job_status != JobStatus.PAUSED.value:
                self.registry.update(plan.run_id, status=RunStatus.RUNNING.value)
                return True

            self.registry.update(plan.run_id, status=JobStatus.PAUSED.value)
            await asyncio.sleep(self.pause_poll_seconds)

    async def _process_email(self, plan: RunPlan, token, email_id: str, write_lock: asyncio.Lock) -> None:
        async with self.session_factory() as session:
            email = await session.get(Email, email_id)
            payload = email_payload(email) if email is not None else None

        if payload is None:
            logger.warning("email_missing", email_id=email_id)
            await self._record_skip(plan, email_id)
            return

        t0 = time.monotonic()
        document: Optional[ExtractionDocument] = None
        failure: Optional[InvokerFailure] = None
        try:
            document = await self.invoker.extract(payload, plan.model_id, plan.prompt_text, plan.json_schema)
        except InvokerFailure as e:
            failure = e
        except Exception as e:
            failure = InvokerFailure(str(e) or type(e).__name__, classify_error(e))
        invoker_latency_seconds.labels(model_id=plan.model_id).observe(time.monotonic() - t0)
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        async with write_lock:
            if token.cancelled:
                logger.info("result_dropped_after_cancel", email_id=email_id)
                return
            async with self.session_factory() as session:
                already = (
                    await session.execute(
                        select(EmailExtraction.id).where(
                            EmailExtraction.email_id == email_id,
                            EmailExtraction.run_id == plan.run_id,
                        )
                    )
                ).scalar_one_or_none()
                if already is None:
                    email = await session.get(Email, email_id)
                    if failure is not None:
                        outcome = await self._record_failure(session, plan, email, failure, elapsed_ms)
                    else:
                        outcome = await self._record_success(session, plan, email, document, elapsed_ms)
                    await session.commit()

            if already is not None:
                logger.info("email_already_extracted", email_id=email_id)
                await self._record_skip(plan, email_id)
                return

        snapshot = self.registry.increment(
            plan.run_id,
            processed=1,
            failed=1 if outcome.outcome == ExtractionOutcome.FAILED.value else 0,
            informational=1 if outcome.outcome == ExtractionOutcome.INFORMATIONAL.value else 0,
            transactions_created=outcome.transactions,
        )
        emails_extracted_total.labels(outcome=outcome.outcome).inc()
        current = snapshot.processed if snapshot else 0
        self._emit(
            plan,
            ProgressStage.EXTRACTING,
            f"Processed {current}/{plan.total}: {payload.subject or email_id}",
            email_id=email_id,
            outcome=outcome.outcome,
            item_failures=outcome.item_failures,
        )

    async def _record_success(
        self,
        session: AsyncSession,
        plan: RunPlan,
        email: Email,
        document: ExtractionDocument,
        elapsed_ms: int,
    ) -> EmailOutcome:
        raw = document.model_dump(mode="json")
        is_evidence = document.email_type == EVIDENCE_EMAIL_TYPE

        summary_text = document.discussion_summary or (document.extraction_notes if is_evidence else None)
        if summary_text:
            session.add(
                DiscussionSummary(
                    email_id=email.id,
                    run_id=plan.run_id,
                    email_type=document.email_type,
                    summary=summary_text,
                    related_reference_numbers=list(document.related_reference_numbers),
                )
            )

        if is_evidence or not document.is_transactional or not document.transactions:
            if document.extraction_notes:
                notes = document.extraction_notes
            elif document.is_transactional and not is_evidence:
                notes = "No transactions found"
            else:
                notes = f"Non-transactional email (type: {document.email_type})"
            session.add(
                EmailExtraction(
                    email_id=email.id,
                    run_id=plan.run_id,
                    status=ExtractionOutcome.INFORMATIONAL.value,
                    raw_extraction=raw,
                    processing_time_ms=elapsed_ms,
                    transaction_ids=[],
                    notes=notes,
                )
            )
            _mark_email(email, EmailStatus.INFORMATIONAL, notes=notes)
            await self._increment(session, plan, informational=1)
            return EmailOutcome(ExtractionOutcome.INFORMATIONAL.value)

        result = await self.materializer.materialize(session, document, email, plan.run_id)
        for failure in result.failures:
            session.add(
                ExtractionLog(
                    run_id=plan.run_id,
                    email_id=email.id,
                    level=LogLevel.WARNING.value,
                    error_type=classify_error(failure),
                    message=failure.message,
                )
            )

        all_items_failed = not result.transaction_ids
        outcome = ExtractionOutcome.FAILED if all_items_failed else ExtractionOutcome.COMPLETED
        error = "; ".join(f.message for f in result.failures)[:2000] or None
        session.add(
            EmailExtraction(
                email_id=email.id,
                run_id=plan.run_id,
                status=outcome.value,
                raw_extraction=raw,
                confidence=result.average_confidence,
                processing_time_ms=elapsed_ms,
                transaction_ids=result.transaction_ids,
                notes=document.extraction_notes,
                error=error,
            )
        )
        if all_items_failed:
            _mark_email(email, EmailStatus.FAILED, error=error)
        else:
            _mark_email(email, EmailStatus.COMPLETED, notes=document.extraction_notes)

        await self._increment(
            session,
            plan,
            transactions=len(result.transaction_ids),
            errors=len(result.failures),
            failed=1 if all_items_failed else 0,
        )
        logger.debug(
            "email_materialized",
            email_id=email.id,
            transactions=len(result.transaction_ids),
            item_failures=len(result.failures),
        )
        return EmailOutcome(outcome.value, len(result.transaction_ids), len(result.failures))

    async def _record_failure(
        self,
        session: AsyncSession,
        plan: RunPlan,
        email: Email,
        failure: InvokerFailure,
        elapsed_ms: int,
    ) -> EmailOutcome:
        invoker_failures_total.labels(error_type=failure.error_type).inc()
        logger.warning(
            "email_extraction_failed",
            email_id=email.id,
            error_type=failure.error_type,
            error=failure.message[:300],
        )
        session.add(
            ExtractionLog(
                run_id=plan.run_id,
                email_id=email.id,
                level=LogLevel.ERROR.value,
                error_type=failure.error_type,
                message=failure.message[:2000],
                raw_output=failure.raw_output,
            )
        )
        session.add(
            EmailExtraction(
                email_id=email.id,
                run_id=plan.run_id,
                status=ExtractionOutcome.FAILED.value,
                processing_time_ms=elapsed_ms,
                transaction_ids=[],
                error=failure.message[:2000],
            )
        )
        _mark_email(email, EmailStatus.FAILED, error=failure.message[:2000])
        await self._increment(session, plan, errors=1, failed=1)
        return EmailOutcome(ExtractionOutcome.FAILED.value)

    async def _record_skip(self, plan: RunPlan, email_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.id == plan.job_id)
                .values(processed_items=Job.processed_items + 1, skipped_items=Job.skipped_items + 1)
            )
            await session.commit()
        self.registry.increment(plan.run_id, processed=1, skipped=1)

    @staticmethod
    async def _increment(
        session: AsyncSession,
        plan: RunPlan,
        transactions: int = 0,
        informational: int = 0,
        errors: int = 0,
        failed: int = 0,
    ) -> None:
        """Atomic counter accumulation on the run and its job."""
        await session.execute(
            update(ExtractionRun)
            .where(ExtractionRun.id == plan.run_id)
            .values(
                emails_processed=ExtractionRun.emails_processed + 1,
                transactions_created=ExtractionRun.transactions_created + transactions,
                informational_count=ExtractionRun.informational_count + informational,
                error_count=ExtractionRun.error_count + errors,
            )
        )
        await session.execute(
            update(Job)
            .where(Job.id == plan.job_id)
            .values(
                processed_items=Job.processed_items + 1,
                failed_items=Job.failed_items + failed,
                informational_items=Job.informational_items + informational,
            )
        )

    # ─── Finalization ─────────────────────────────────────────

    async def _finalize(self, plan: RunPlan, token, started: float) -> ProgressSnapshot:
        if token.cancelled:
            return await self._finish_cancelled(plan)

        self._emit(plan, ProgressStage.PARSING, "Reconciling run counters")
        async with self.session_factory() as session:
            run = await get_run(session, plan.run_id)
            ledger = (
                await session.execute(
                    select(func.count(EmailExtraction.id)).where(EmailExtraction.run_id == plan.run_id)
                )
            ).scalar() or 0
            stored = (
                await session.execute(
                    select(func.count(Transaction.id)).where(Transaction.extraction_run_id == plan.run_id)
                )
            ).scalar() or 0
            if ledger != run.emails_processed or stored != run.transactions_created:
                logger.warning(
                    "run_counter_mismatch",
                    emails_processed=run.emails_processed,
                    extraction_rows=ledger,
                    transactions_created=run.transactions_created,
                    transaction_rows=stored,
                )

        self._emit(plan, ProgressStage.SAVING, "Saving run results")
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(ExtractionRun)
                .where(ExtractionRun.id == plan.run_id, ExtractionRun.status == RunStatus.RUNNING.value)
                .values(status=RunStatus.COMPLETED.value, completed_at=now)
            )
            if result.rowcount != 1:
                # Lost the race to a cancel: that transition is authoritative
                await session.rollback()
                return await self._finish_cancelled(plan)

            await session.execute(
                update(Transaction)
                .where(Transaction.extraction_run_id == plan.run_id)
                .values(run_completed=True)
            )
            await session.execute(
                update(Job)
                .where(Job.id == plan.job_id)
                .values(status=JobStatus.COMPLETED.value, completed_at=now)
            )
            await session.commit()
            run = await get_run(session, plan.run_id)
            emails_processed, transactions_created = run.emails_processed, run.transactions_created

        snapshot = self.registry.update(plan.run_id, status=RunStatus.COMPLETED.value)
        runs_finished_total.labels(status=RunStatus.COMPLETED.value).inc()
        processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "run_completed",
            emails_processed=emails_processed,
            transactions_created=transactions_created,
            processing_time_ms=processing_time_ms,
        )
        self._emit(
            plan,
            ProgressStage.COMPLETE,
            f"Run complete: {transactions_created} transactions from {emails_processed} emails",
            status=RunStatus.COMPLETED.value,
            emails_processed=emails_processed,
            transactions_created=transactions_created,
            processing_time_ms=processing_time_ms,
        )
        return snapshot

    async def _finish_cancelled(self, plan: RunPlan) -> ProgressSnapshot:
        """Cleanup pass: remove anything written by workers that finished after the cancel."""
        async with self.session_factory() as session:
            deleted = await delete_run_transactions(session, plan.run_id)
            await session.execute(
                update(Job)
                .where(Job.id == plan.job_id, Job.status.in_([JobStatus.RUNNING.value, JobStatus.PAUSED.value]))
                .values(status=JobStatus.CANCELLED.value, cancelled_at=utcnow(), completed_at=utcnow())
            )
            await session.commit()

        snapshot = self.registry.update(plan.run_id, status=RunStatus.CANCELLED.value, transactions_created=0)
        logger.info("run_cancelled", late_transactions_deleted=deleted)
        self._emit(
            plan,
            ProgressStage.COMPLETE,
            "Run cancelled",
            status=RunStatus.CANCELLED.value,
            transactions_deleted=deleted,
        )
        return snapshot

    async def _fail_run(self, plan: RunPlan, message: str) -> None:
        """Mark run and job failed; counters keep whatever was processed."""
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(ExtractionRun)
                    .where(
                        ExtractionRun.id == plan.run_id,
                        ExtractionRun.status.in_([RunStatus.RUNNING.value, RunStatus.PENDING.value]),
                    )
                    .values(status=RunStatus.FAILED.value, error_message=message[:500], completed_at=utcnow())
                )
                await session.execute(
                    update(Job)
                    .where(Job.id == plan.job_id)
                    .values(status=JobStatus.FAILED.value, error_message=message[:500], completed_at=utcnow())
                )
                await session.commit()
        except Exception:
            logger.error("failed_to_mark_failure", run_id=plan.run_id)

    def _emit(self, plan: RunPlan, stage: ProgressStage, message: str, **details) -> None:
        snapshot = self.registry.get(plan.run_id)
        counts = snapshot.counts() if snapshot else {}
        event = ProgressEvent(
            stage=stage.value,
            message=message,
            current=snapshot.processed if snapshot else 0,
            total=plan.total,
            details={"run_id": plan.run_id, "job_id": plan.job_id, **counts, **details},
        )
        self.registry.publish(plan.run_id, event)
        if plan.listener is not None:
            plan.listener(event)

    # ─── Control ──────────────────────────────────────────────

    async def cancel_run(self, run_id: str, notes: Optional[str] = None) -> CancelRunResponse:
        """
        Stop a run and delete its transactions. One guarded status update
        decides the race with finalization; repeating a cancel is a no-op.
        """
        async with self.session_factory() as session:
            run = await get_run(session, run_id)
            if run.status == RunStatus.CANCELLED.value:
                return CancelRunResponse(run_id=run_id, status=run.status, already_cancelled=True)

            result = await session.execute(
                update(ExtractionRun)
                .where(ExtractionRun.id == run_id, ExtractionRun.status.in_(CANCELLABLE_STATUSES))
                .values(status=RunStatus.CANCELLED.value, completed_at=utcnow())
            )
            if result.rowcount != 1:
                await session.rollback()
                current = (
                    await session.execute(select(ExtractionRun.status).where(ExtractionRun.id == run_id))
                ).scalar_one()
                if current == RunStatus.CANCELLED.value:
                    return CancelRunResponse(run_id=run_id, status=current, already_cancelled=True)
                raise InvalidTransition(f"Cannot cancel a {current} run")

            deleted = await delete_run_transactions(session, run_id)
            await session.execute(
                update(Job)
                .where(Job.run_id == run_id, Job.status.in_([JobStatus.RUNNING.value, JobStatus.PAUSED.value]))
                .values(
                    status=JobStatus.CANCELLED.value,
                    cancel_notes=notes,
                    cancelled_at=utcnow(),
                    completed_at=utcnow(),
                )
            )
            await session.commit()

        self.registry.cancel(run_id, notes)
        runs_finished_total.labels(status=RunStatus.CANCELLED.value).inc()
        logger.info("run_cancel_requested", run_id=run_id, transactions_deleted=deleted, notes=notes)
        return CancelRunResponse(run_id=run_id, status=RunStatus.CANCELLED.value, transactions_deleted=deleted)

    async def pause_job(self, job_id: str) -> Job:
        return await self._transition_job(job_id, JobStatus.RUNNING, JobStatus.PAUSED)

    async def resume_job(self, job_id: str) -> Job:
        return await self._transition_job(job_id, JobStatus.PAUSED, JobStatus.RUNNING)

    async def _transition_job(self, job_id: str, source: JobStatus, target: JobStatus) -> Job:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == source.value)
                .values(status=target.value)
            )
            job = await session.get(Job, job_id)
            if job is None:
                raise NotFound("Job", job_id)
            if result.rowcount != 1:
                await session.rollback()
                raise InvalidTransition(f"Cannot {'pause' if target == JobStatus.PAUSED else 'resume'} a {job.status} job")
            await session.commit()
            await session.refresh(job)

        self.registry.update(job.run_id, status=target.value if target == JobStatus.PAUSED else RunStatus.RUNNING.value)
        logger.info("job_status_changed", job_id=job_id, run_id=job.run_id, status=target.value)
        return job


def _mark_email(email: Email, status: EmailStatus, notes: Optional[str] = None, error: Optional[str] = None) -> None:
    email.status = status.value
    email.processed_at = utcnow()
    email.notes = notes
    email.error = error


def _consume_task_error(task: asyncio.Task) -> None:
    # Already logged and emitted as an error event by execute()
    if not task.cancelled():
        task.exception()
