"""
In-process registry of live run executions.

Maps run id to a ProgressSnapshot, a CancellationToken and the queues of
progress-stream subscribers. The in-memory copy is authoritative while this
process runs the job; any other reader falls back to the persisted Job and
ExtractionRun counters.
"""

import asyncio
import threading
from dataclasses import asdict, dataclass, field, replace
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.models.enums import JobStatus, ProgressStage, RunStatus
from mailfin.models.tables import ExtractionRun, Job
from mailfin.schemas.runs import ProgressEvent

TERMINAL_STAGES = {ProgressStage.COMPLETE.value, ProgressStage.ERROR.value}


@dataclass
class ProgressSnapshot:
    run_id: str
    job_id: Optional[str]
    status: str
    stage: Optional[str] = None
    total: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    informational: int = 0
    transactions_created: int = 0
    error_message: Optional[str] = None
    source: str = "memory"

    def counts(self) -> dict:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "informational": self.informational,
            "transactions_created": self.transactions_created,
        }

    def to_dict(self) -> dict:
        return asdict(self)

    def to_event(self, message: str) -> ProgressEvent:
        return ProgressEvent(
            stage=self.stage or ProgressStage.EXTRACTING.value,
            message=message,
            current=self.processed,
            total=self.total,
            details={"run_id": self.run_id, "job_id": self.job_id, "status": self.status, **self.counts()},
        )


class CancellationToken:
    """Cooperative stop signal, checked between emails, never mid-call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class _Entry:
    snapshot: ProgressSnapshot
    token: CancellationToken
    subscribers: list[asyncio.Queue] = field(default_factory=list)
    last_event: Optional[ProgressEvent] = None
    finished: bool = False


class JobRegistry:
    """Concurrency-safe run id -> live progress map."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    # ─── Lifecycle ────────────────────────────────────────────

    def register(self, snapshot: ProgressSnapshot) -> CancellationToken:
        """Start tracking a run execution. Replaces any finished entry."""
        with self._lock:
            existing = self._entries.get(snapshot.run_id)
            if existing is not None and not existing.finished:
                raise RuntimeError(f"run {snapshot.run_id} is already executing in this process")
            token = CancellationToken()
            subscribers = existing.subscribers if existing else []
            self._entries[snapshot.run_id] = _Entry(snapshot=replace(snapshot), token=token, subscribers=subscribers)
            return token

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(run_id)
            return entry is not None and not entry.finished

    def finish(self, run_id: str) -> None:
        """Mark execution over and release subscribers. The last snapshot is kept."""
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return
            entry.finished = True
            subscribers, entry.subscribers = entry.subscribers, []
        for queue in subscribers:
            queue.put_nowait(None)

    def discard(self, run_id: str) -> None:
        self.finish(run_id)
        with self._lock:
            self._entries.pop(run_id, None)

    # ─── Cancellation ─────────────────────────────────────────

    def token(self, run_id: str) -> Optional[CancellationToken]:
        with self._lock:
            entry = self._entries.get(run_id)
            return entry.token if entry else None

    def cancel(self, run_id: str, reason: Optional[str] = None) -> bool:
        """Signal a live execution to stop scheduling. False if none is live here."""
        token = self.token(run_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    # ─── Progress ─────────────────────────────────────────────

    def get(self, run_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            entry = self._entries.get(run_id)
            return replace(entry.snapshot) if entry else None

    def update(self, run_id: str, **changes) -> Optional[ProgressSnapshot]:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return None
            entry.snapshot = replace(entry.snapshot, **changes)
            return replace(entry.snapshot)

    def increment(self, run_id: str, **deltas: int) -> Optional[ProgressSnapshot]:
        """Accumulate counters; never overwrite them."""
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return None
            snap = entry.snapshot
            for name, delta in deltas.items():
                setattr(snap, name, getattr(snap, name) + delta)
            return replace(snap)

    def publish(self, run_id: str, event: ProgressEvent) -> None:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return
            entry.last_event = event
            entry.snapshot.stage = event.stage
            subscribers = list(entry.subscribers)
        for queue in subscribers:
            queue.put_nowait(event)

    async def subscribe(self, run_id: str) -> AsyncIterator[ProgressEvent]:
        """
        Yield progress events for a run until a terminal stage.
        Starts with the current snapshot so late subscribers see where the run is.
        """
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return
            first = entry.last_event or entry.snapshot.to_event("Subscribed")
            if not entry.finished:
                entry.subscribers.append(queue)
            finished = entry.finished
        yield first
        if finished or first.stage in TERMINAL_STAGES:
            self._unsubscribe(run_id, queue)
            return
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
                if event.stage in TERMINAL_STAGES:
                    return
        finally:
            self._unsubscribe(run_id, queue)

    def _unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is not None and queue in entry.subscribers:
                entry.subscribers.remove(queue)

    # ─── Durable fallback ─────────────────────────────────────

    async def load(self, session: AsyncSession, run_id: str) -> Optional[ProgressSnapshot]:
        """Live snapshot if this process runs the job, else rebuilt from the DB."""
        live = self.get(run_id)
        if live is not None and self.is_active(run_id):
            return live
        return await snapshot_from_db(session, run_id)


_STAGE_FOR_STATUS = {
    RunStatus.PENDING.value: None,
    RunStatus.RUNNING.value: ProgressStage.EXTRACTING.value,
    RunStatus.COMPLETED.value: ProgressStage.COMPLETE.value,
    RunStatus.CANCELLED.value: ProgressStage.COMPLETE.value,
    RunStatus.FAILED.value: ProgressStage.ERROR.value,
}


async def snapshot_from_db(session: AsyncSession, run_id: str) -> Optional[ProgressSnapshot]:
    """Reconstruct progress from persisted counters alone."""
    run = await session.get(ExtractionRun, run_id)
    if run is None:
        return None
    job = await session.get(Job, run.job_id) if run.job_id else None
    if job is None:
        result = await session.execute(
            select(Job).where(Job.run_id == run_id).order_by(Job.started_at.desc()).limit(1)
        )
        job = result.scalar_one_or_none()

    status = run.status
    if job is not None and job.status == JobStatus.PAUSED.value and status == RunStatus.RUNNING.value:
        status = JobStatus.PAUSED.value

    return ProgressSnapshot(
        run_id=run.id,
        job_id=job.id if job else None,
        status=status,
        stage=_STAGE_FOR_STATUS.get(run.status),
        total=job.total_items if job else run.emails_processed,
        processed=job.processed_items if job else run.emails_processed,
        failed=job.failed_items if job else run.error_count,
        skipped=job.skipped_items if job else 0,
        informational=job.informational_items if job else run.informational_count,
        transactions_created=run.transactions_created,
        error_message=(job.error_message if job else None) or run.error_message,
        source="database",
    )


# Process-wide registry
job_registry = JobRegistry()
