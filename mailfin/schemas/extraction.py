"""
Extraction contracts.
ExtractionDocument is what every ExtractionInvoker must return for one email.
Keys are accepted in snake_case or camelCase (LLM output usually uses camelCase).
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Numeric = Optional[Union[float, str]]


class _Contract(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExtractionItem(_Contract):
    """One transaction as reported by the extractor. Unknown keys are kept."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    transaction_type: Optional[str] = None
    transaction_date: Optional[str] = None
    amount: Numeric = None
    currency: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    institution: Optional[str] = None
    to_account_number: Optional[str] = None
    to_account_name: Optional[str] = None
    to_institution: Optional[str] = None
    symbol: Optional[str] = None
    quantity: Numeric = None
    price: Numeric = None
    fees: Numeric = None
    description: Optional[str] = None
    security_name: Optional[str] = None
    reference_number: Optional[str] = None
    order_type: Optional[str] = None
    order_status: Optional[str] = None
    option_type: Optional[str] = None
    option_action: Optional[str] = None
    strike_price: Numeric = None
    expiration_date: Optional[str] = None
    grant_number: Optional[str] = None
    vest_date: Optional[str] = None
    confidence: Numeric = None
    additional_fields: Optional[dict[str, Any]] = None


class ExtractionDocument(_Contract):
    """Structured result of one extraction call."""

    is_transactional: bool = False
    email_type: str = "other"
    transactions: list[ExtractionItem] = Field(default_factory=list)
    extraction_notes: Optional[str] = None
    discussion_summary: Optional[str] = None
    related_reference_numbers: list[str] = Field(default_factory=list)


class EmailPayload(BaseModel):
    """What the invoker sees of an email."""
    email_id: str
    subject: Optional[str] = None
    sender: Optional[str] = None
    email_date: Optional[str] = None
    body: str = ""


class FieldIssue(_Contract):
    field: str
    current_value: Any = None
    suggested_value: Any = None
    confidence: str = "medium"  # high | medium | low
    reason: Optional[str] = None


class DuplicateField(_Contract):
    fields: list[str]
    suggested_canonical: str
    reason: Optional[str] = None


class QaFinding(_Contract):
    """Result of one QA check on one transaction."""

    has_issues: bool = False
    is_multi_transaction: bool = False
    field_issues: list[FieldIssue] = Field(default_factory=list)
    duplicate_fields: list[DuplicateField] = Field(default_factory=list)
    overall_assessment: Optional[str] = None
