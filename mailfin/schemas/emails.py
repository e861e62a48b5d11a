"""
Pydantic schemas for email store operations.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class EmailSetCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None


class EmailSetResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    email_count: int = 0
    created_at: datetime

    model_config = {"from_attributes": True}


class EmailCreate(BaseModel):
    subject: Optional[str] = None
    sender: Optional[str] = None
    email_date: Optional[datetime] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None


class EmailResponse(BaseModel):
    id: str
    set_id: str
    subject: Optional[str] = None
    sender: Optional[str] = None
    email_date: Optional[datetime] = None
    status: str
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None
    error: Optional[str] = None
    winner_transaction_id: Optional[str] = None
    field_overrides: Optional[dict[str, Any]] = None
    created: bool = True  # false when an identical email was already stored

    model_config = {"from_attributes": True}


class ResetEmailsRequest(BaseModel):
    """Exactly one selector should be given; run_id scopes transaction deletion."""
    email_ids: Optional[list[str]] = None
    set_id: Optional[str] = None
    run_id: Optional[str] = None
    delete_transactions: bool = True


class ResetEmailsResponse(BaseModel):
    reset: int
    skipped: int
    transactions_deleted: int


class WinnerRequest(BaseModel):
    """A transaction id, "tie", or null to clear."""
    transaction_id: Optional[str] = None


class WinnerResponse(BaseModel):
    email_id: str
    winner_transaction_id: Optional[str] = None


class DeleteSetResponse(BaseModel):
    set_id: str
    emails_deleted: int
    runs_deleted: int
    transactions_deleted: int


class FieldOverridesRequest(BaseModel):
    """Field path -> value. Empty or null clears the overrides."""
    overrides: Optional[dict[str, Any]] = None


class FieldOverridesResponse(BaseModel):
    email_id: str
    field_overrides: Optional[dict[str, Any]] = None
