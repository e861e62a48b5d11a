"""
Pydantic request/response schemas for runs, jobs and progress.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from mailfin.config import settings


class ExtractionRequest(BaseModel):
    """Start (or resume) extraction over one email set."""
    set_id: str
    model_id: str
    prompt_id: Optional[str] = None
    prompt_text: Optional[str] = None  # literal override of the prompt content
    concurrency: int = Field(default_factory=lambda: settings.DEFAULT_CONCURRENCY, ge=1)
    sample_size: Optional[int] = Field(default=None, ge=1)
    resume_run_id: Optional[str] = None
    force: bool = False  # explicit re-run of an already extracted set
    name: Optional[str] = None


class EligibilityResponse(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    pending_count: int = 0
    email_count: int = 0
    existing_run_id: Optional[str] = None


class ProgressEvent(BaseModel):
    """One entry on the progress stream."""
    stage: str
    message: str
    current: int = 0
    total: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class ProgressSnapshotResponse(BaseModel):
    run_id: str
    job_id: Optional[str] = None
    status: str
    stage: Optional[str] = None
    total: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    informational: int = 0
    transactions_created: int = 0
    error_message: Optional[str] = None
    source: str = "memory"  # memory | database


class RunResponse(BaseModel):
    id: str
    set_id: str
    model_id: str
    prompt_id: Optional[str] = None
    software_version: str
    version: int
    name: Optional[str] = None
    status: str
    emails_processed: int = 0
    transactions_created: int = 0
    informational_count: int = 0
    error_count: int = 0
    job_id: Optional[str] = None
    is_synthesized: bool = False
    synthesis_type: Optional[str] = None
    source_run_ids: Optional[list[str]] = None
    config: Optional[dict] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class RunDetailResponse(BaseModel):
    run: RunResponse
    progress: Optional[ProgressSnapshotResponse] = None


class CancelRunRequest(BaseModel):
    notes: Optional[str] = None


class CancelRunResponse(BaseModel):
    run_id: str
    status: str
    already_cancelled: bool = False
    transactions_deleted: int = 0


class JobActionResponse(BaseModel):
    job_id: str
    run_id: str
    status: str


class EnqueueResponse(BaseModel):
    run_id: str
    job_id: str
    version: int
    queued: bool


class ResumeRunRequest(BaseModel):
    concurrency: int = Field(default_factory=lambda: settings.DEFAULT_CONCURRENCY, ge=1)
    prompt_text: Optional[str] = None


class QueueStats(BaseModel):
    queue_name: str
    queued: int
    started: int
    finished: int
    failed: int
    deferred: int
    workers: int


class ComparisonSynthesisRequest(BaseModel):
    """Build one run from two runs of a set using the reviewer's winners."""
    run_a_id: str
    run_b_id: str
    primary_run_id: str  # used for ties and emails without a winner
    name: Optional[str] = None


class ComparisonSynthesisResponse(BaseModel):
    run_id: str
    version: int
    transactions_created: int
    from_a: int
    from_b: int
    ties: int
    no_winner: int
    overrides_applied: int
