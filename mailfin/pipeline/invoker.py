"""
Extraction and QA call boundaries.

The LLM itself is out of process: an invoker takes one email plus a prompt and
returns an ExtractionDocument, or raises InvokerFailure. The orchestrator never
retries; the invoker's own timeout is the only retry/abort policy.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional, Union

import httpx
import structlog
from pydantic import ValidationError

from mailfin.config import settings
from mailfin.errors import InvokerFailure
from mailfin.schemas.extraction import EmailPayload, ExtractionDocument, QaFinding

logger = structlog.get_logger(__name__)


class ExtractionInvoker(ABC):
    """Contract for anything that turns one email into an ExtractionDocument."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def extract(
        self,
        email: EmailPayload,
        model_id: str,
        prompt_text: str,
        json_schema: Optional[dict] = None,
    ) -> ExtractionDocument:
        """Must raise InvokerFailure on any failure (never return partial data)."""
        ...


class QaChecker(ABC):
    """Contract for the second-pass reviewer of one transaction."""

    @abstractmethod
    async def check(
        self,
        transaction: dict[str, Any],
        email: EmailPayload,
        model_id: str,
        prompt_text: str,
    ) -> QaFinding:
        ...


ScriptedResult = Union[ExtractionDocument, dict, Exception, Callable[[EmailPayload], Any]]


class StubInvoker(ExtractionInvoker):
    """
    Scripted invoker for development and tests.
    Responses are looked up by email id, then by subject; unknown emails get
    `default` (a non-transactional document unless given).
    """

    def __init__(
        self,
        responses: Optional[Mapping[str, ScriptedResult]] = None,
        default: Optional[ScriptedResult] = None,
        delay_seconds: float = 0.0,
    ):
        self.responses = dict(responses or {})
        self.default = default if default is not None else ExtractionDocument(
            is_transactional=False, email_type="other", extraction_notes="stub"
        )
        self.delay_seconds = delay_seconds
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "stub"

    async def extract(self, email, model_id, prompt_text, json_schema=None):
        self.calls.append(email.email_id)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        scripted = self.responses.get(email.email_id)
        if scripted is None and email.subject is not None:
            scripted = self.responses.get(email.subject)
        if scripted is None:
            scripted = self.default

        if callable(scripted) and not isinstance(scripted, (ExtractionDocument, dict)):
            scripted = scripted(email)
            if asyncio.iscoroutine(scripted):
                scripted = await scripted
        if isinstance(scripted, InvokerFailure):
            raise scripted
        if isinstance(scripted, Exception):
            raise InvokerFailure(str(scripted)) from scripted
        if isinstance(scripted, dict):
            return _parse_document(scripted, raw=json.dumps(scripted))
        return scripted


class StubQaChecker(QaChecker):
    """Scripted QA checker keyed by transaction id; default is "no issues"."""

    def __init__(self, findings: Optional[Mapping[str, Union[QaFinding, Exception]]] = None):
        self.findings = dict(findings or {})

    async def check(self, transaction, email, model_id, prompt_text):
        finding = self.findings.get(transaction["id"])
        if isinstance(finding, Exception):
            raise finding
        return finding or QaFinding(has_issues=False, overall_assessment="No issues found")


class HttpInvoker(ExtractionInvoker):
    """POSTs the email to an extraction service and validates the JSON reply."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return "http"

    async def extract(self, email, model_id, prompt_text, json_schema=None):
        payload = {
            "model": model_id,
            "prompt": prompt_text,
            "schema": json_schema,
            "email": email.model_dump(),
        }
        body = await _post_json(self.url, payload, self.api_key, self.timeout_seconds)
        return _parse_document(body, raw=json.dumps(body)[:10000])


class HttpQaChecker(QaChecker):
    def __init__(self, url: str, api_key: Optional[str] = None, timeout_seconds: float = 120.0):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def check(self, transaction, email, model_id, prompt_text):
        payload = {
            "model": model_id,
            "prompt": prompt_text,
            "transaction": transaction,
            "email": email.model_dump(),
        }
        body = await _post_json(self.url, payload, self.api_key, self.timeout_seconds)
        try:
            return QaFinding.model_validate(body)
        except ValidationError as e:
            raise InvokerFailure(f"QA response failed validation: {e}", "schema_validation") from e


async def _post_json(url: str, payload: dict, api_key: Optional[str], timeout: float) -> Any:
    headers = {"content-type": "application/json"}
    if api_key:
        headers["authorization"] = f"Bearer {api_key}"

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, headers=headers, json=payload)
            resp.raise_for_status()
    except httpx.TimeoutException as e:
        raise InvokerFailure(f"Extraction call timed out after {timeout}s", "timeout") from e
    except httpx.HTTPStatusError as e:
        raise InvokerFailure(
            f"Extraction service returned {e.response.status_code}",
            "api_error",
            raw_output=e.response.text[:2000],
        ) from e
    except httpx.HTTPError as e:
        raise InvokerFailure(f"Extraction service unreachable: {e}", "api_error") from e

    try:
        return resp.json()
    except ValueError as e:
        raise InvokerFailure("Extraction reply is not JSON", "parse_error", raw_output=resp.text[:2000]) from e


def _parse_document(body: Any, raw: Optional[str] = None) -> ExtractionDocument:
    try:
        return ExtractionDocument.model_validate(body)
    except ValidationError as e:
        raise InvokerFailure(
            f"Extraction failed schema validation: {e.error_count()} error(s)",
            "schema_validation",
            raw_output=raw,
        ) from e


def get_invoker() -> ExtractionInvoker:
    """Build the configured invoker."""
    if settings.INVOKER_BACKEND == "http":
        if not settings.INVOKER_URL:
            raise RuntimeError("INVOKER_URL must be set when INVOKER_BACKEND=http")
        return HttpInvoker(
            settings.INVOKER_URL,
            api_key=settings.INVOKER_API_KEY,
            timeout_seconds=settings.INVOKER_TIMEOUT_SECONDS,
        )
    logger.warning("stub_invoker_in_use")
    return StubInvoker()


def get_qa_checker() -> QaChecker:
    if settings.INVOKER_BACKEND == "http":
        url = settings.QA_CHECKER_URL or settings.INVOKER_URL
        if not url:
            raise RuntimeError("QA_CHECKER_URL or INVOKER_URL must be set when INVOKER_BACKEND=http")
        return HttpQaChecker(url, api_key=settings.INVOKER_API_KEY, timeout_seconds=settings.INVOKER_TIMEOUT_SECONDS)
    return StubQaChecker()
