"""
Python enums for every persisted status column.
Values are stored as plain strings; names and values MUST stay stable.
"""

from enum import Enum


class EmailStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    INFORMATIONAL = "informational"
    NON_FINANCIAL = "non_financial"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExtractionOutcome(str, Enum):
    """Status of one EmailExtraction row."""
    COMPLETED = "completed"
    FAILED = "failed"
    INFORMATIONAL = "informational"


class ProgressStage(str, Enum):
    """Run-level progress stages, strictly ordered; ERROR is terminal."""
    EXTRACTING = "extracting"
    PARSING = "parsing"
    SAVING = "saving"
    COMPLETE = "complete"
    ERROR = "error"


STAGE_ORDER = {
    ProgressStage.EXTRACTING: 0,
    ProgressStage.PARSING: 1,
    ProgressStage.SAVING: 2,
    ProgressStage.COMPLETE: 3,
}


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ErrorType(str, Enum):
    SCHEMA_VALIDATION = "schema_validation"
    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"
    UNKNOWN = "unknown"


class TransactionType(str, Enum):
    DIVIDEND = "dividend"
    INTEREST = "interest"
    STOCK_TRADE = "stock_trade"
    OPTION_TRADE = "option_trade"
    WIRE_TRANSFER_IN = "wire_transfer_in"
    WIRE_TRANSFER_OUT = "wire_transfer_out"
    FUNDS_TRANSFER = "funds_transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    RSU_VEST = "rsu_vest"
    RSU_RELEASE = "rsu_release"
    ACCOUNT_TRANSFER = "account_transfer"
    FEE = "fee"
    OTHER = "other"


class QaRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QaResultStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    ACCEPTED = "accepted"
    PARTIAL = "partial"
    REJECTED = "rejected"


class SynthesisType(str, Enum):
    QA_CORRECTIONS = "qa_corrections"
    COMPARISON_WINNERS = "comparison_winners"


class PromptType(str, Enum):
    EXTRACTION = "extraction"
    QA = "qa"
