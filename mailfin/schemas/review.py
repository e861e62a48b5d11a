"""
Pydantic schemas for QA review and synthesis.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class MergeDecision(BaseModel):
    """Collapse `merged` fields into `canonical`."""
    canonical: str
    merged: list[str] = Field(min_length=1)


class QaFilters(BaseModel):
    transaction_types: Optional[list[str]] = None
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class StartQaRequest(BaseModel):
    source_run_id: str
    model_id: str
    prompt_id: Optional[str] = None
    filters: QaFilters = Field(default_factory=QaFilters)


class QaRunResponse(BaseModel):
    id: str
    source_run_id: str
    set_id: str
    model_id: str
    prompt_id: Optional[str] = None
    status: str
    transactions_total: int = 0
    transactions_checked: int = 0
    issues_found: int = 0
    config: Optional[dict] = None
    synthesized_run_id: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class QaResultResponse(BaseModel):
    id: str
    qa_run_id: str
    transaction_id: str
    source_email_id: Optional[str] = None
    has_issues: bool
    is_multi_transaction: bool
    field_issues: list[dict[str, Any]]
    duplicate_fields: list[dict[str, Any]]
    overall_assessment: Optional[str] = None
    status: str
    accepted_fields: dict[str, bool]
    accepted_merges: list[dict[str, Any]]
    reviewed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReviewResultRequest(BaseModel):
    """Reviewer decision on one QA result; omitted parts are left unchanged."""
    accepted_fields: Optional[dict[str, bool]] = None
    accepted_merges: Optional[list[MergeDecision]] = None
    reject: bool = False


class AcceptFieldRequest(BaseModel):
    field: str


class BulkResult(BaseModel):
    updated: int
    skipped: int


class FieldGroup(BaseModel):
    field: str
    count: int
    examples: list[dict[str, Any]] = Field(default_factory=list)


class QaSummaryResponse(BaseModel):
    qa_run: QaRunResponse
    stats: dict[str, int]
    fields: list[FieldGroup]


class SynthesizeRequest(BaseModel):
    name: Optional[str] = None


class SynthesisResponse(BaseModel):
    run_id: str
    version: int
    transactions_created: int
    corrections_applied: int
