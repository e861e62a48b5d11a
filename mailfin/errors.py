"""
Error taxonomy for run, QA and synthesis operations.
Every error carries a stable error_code; the API maps each class to an HTTP status.
"""

from typing import Optional


class MailfinError(Exception):
    """Base error for all service-level failures."""

    error_code = "ERR_MAILFIN"
    http_status = 500

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error_code": self.error_code, "message": self.message}


class DuplicateRun(MailfinError):
    """A completed (or in-flight) run already covers this set/model/version."""

    error_code = "ERR_DUPLICATE_RUN"
    http_status = 409

    def __init__(self, message: str, existing_run_id: Optional[str] = None):
        super().__init__(message)
        self.existing_run_id = existing_run_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["existing_run_id"] = self.existing_run_id
        return payload


class NotFound(MailfinError):
    error_code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class AlreadySynthesized(MailfinError):
    error_code = "ERR_ALREADY_SYNTHESIZED"
    http_status = 409

    def __init__(self, qa_run_id: str, synthesized_run_id: Optional[str] = None):
        super().__init__(f"QA run {qa_run_id} has already been synthesized")
        self.qa_run_id = qa_run_id
        self.synthesized_run_id = synthesized_run_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["synthesized_run_id"] = self.synthesized_run_id
        return payload


class InvalidTransition(MailfinError):
    """A state change not permitted from the entity's current status."""

    error_code = "ERR_INVALID_TRANSITION"
    http_status = 409


class InvalidRequest(MailfinError):
    """Input that references fields or entities inconsistently."""

    error_code = "ERR_INVALID_REQUEST"
    http_status = 422


class PartialItemFailure(MailfinError):
    """One transaction item could not be materialized. Recorded, never fatal."""

    error_code = "ERR_ITEM_FAILED"

    def __init__(self, item_index: int, message: str):
        super().__init__(f"item {item_index}: {message}")
        self.item_index = item_index


class InvokerFailure(MailfinError):
    """The extraction call for one email failed. Recorded, never fatal to the run."""

    error_code = "ERR_INVOKER"

    def __init__(self, message: str, error_type: str = "unknown", raw_output: Optional[str] = None):
        super().__init__(message, f"ERR_INVOKER_{error_type.upper()}")
        self.error_type = error_type
        self.raw_output = raw_output


def classify_error(exc: BaseException) -> str:
    """Bucket an extraction failure into an ExtractionLog error_type."""
    if isinstance(exc, InvokerFailure):
        return exc.error_type
    text = str(exc).lower()
    if "validation" in text or "schema" in text:
        return "schema_validation"
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "json" in text or "parse" in text:
        return "parse_error"
    if "api" in text or "status" in text or "rate limit" in text:
        return "api_error"
    return "unknown"
