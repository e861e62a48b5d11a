"""
Transaction materializer.
Turns one ExtractionDocument into Transaction rows for a (run, email) pair.
Each item is written inside its own SAVEPOINT: all-or-nothing per item,
and a bad item never blocks its siblings.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.config import settings
from mailfin.errors import InvalidRequest, PartialItemFailure
from mailfin.models.enums import TransactionType
from mailfin.models.tables import Email, Transaction, utcnow
from mailfin.observability.metrics import (
    transaction_items_failed_total,
    transactions_materialized_total,
)
from mailfin.pipeline.accounts import AccountInput, AccountResolver, DatabaseAccountResolver
from mailfin.pipeline.data_fields import DataBag, TransactionDraft
from mailfin.pipeline.values import parse_datetime, parse_decimal, to_jsonable
from mailfin.schemas.extraction import ExtractionDocument, ExtractionItem

logger = structlog.get_logger(__name__)

_KNOWN_TYPES = {t.value for t in TransactionType}
_EXTERNAL_TYPES = {TransactionType.WIRE_TRANSFER_IN.value, TransactionType.WIRE_TRANSFER_OUT.value}

# Item fields that have no column and are kept in the data map
_DATA_FIELDS = (
    "option_type",
    "strike_price",
    "expiration_date",
    "option_action",
    "order_status",
    "grant_number",
    "vest_date",
)

# Item fields consumed by columns or account resolution
_CONSUMED_FIELDS = frozenset(ExtractionItem.model_fields) - set(_DATA_FIELDS)

# Failures that belong to one item; anything else (e.g. a lost connection) propagates
ITEM_ERRORS = (ValueError, TypeError, ArithmeticError, InvalidRequest, IntegrityError, DataError)


@dataclass
class MaterializeResult:
    transaction_ids: list[str] = field(default_factory=list)
    failures: list[PartialItemFailure] = field(default_factory=list)
    confidences: list[Decimal] = field(default_factory=list)

    @property
    def average_confidence(self) -> Optional[Decimal]:
        if not self.confidences:
            return None
        return (sum(self.confidences) / len(self.confidences)).quantize(Decimal("0.0001"))


def normalize_type(raw: Optional[str]) -> str:
    if not raw:
        return TransactionType.OTHER.value
    value = raw.strip().lower().replace(" ", "_").replace("-", "_")
    return value if value in _KNOWN_TYPES else TransactionType.OTHER.value


def normalize_confidence(value: Any) -> Optional[Decimal]:
    """Accept 0..1 or a 0..100 percentage."""
    confidence = parse_decimal(value)
    if confidence is None:
        return None
    if confidence < 0 or confidence > 100:
        raise ValueError(f"confidence out of range: {value!r}")
    if confidence > 1:
        confidence = confidence / 100
    return confidence.quantize(Decimal("0.0001"))


def normalize_item(
    item: ExtractionItem,
    fallback_date: Optional[datetime] = None,
    extraction_notes: Optional[str] = None,
    default_currency: str = "USD",
) -> TransactionDraft:
    """Map one extracted item onto typed columns plus a data bag. Raises ValueError on bad values."""
    tx_type = normalize_type(item.transaction_type)
    columns = {
        "type": tx_type,
        "date": parse_datetime(item.transaction_date) or fallback_date or utcnow(),
        "amount": parse_decimal(item.amount),
        "currency": (item.currency or default_currency).strip().upper(),
        "symbol": item.symbol.strip().upper() if item.symbol else None,
        "quantity": parse_decimal(item.quantity),
        "price": parse_decimal(item.price),
        "fees": parse_decimal(item.fees),
        "description": item.description,
        "security_name": item.security_name,
        "reference_number": item.reference_number,
        "order_type": item.order_type,
        "confidence": normalize_confidence(item.confidence),
    }

    data: dict[str, Any] = {}
    for name in _DATA_FIELDS:
        value = getattr(item, name)
        if value not in (None, ""):
            data[name] = to_jsonable(value)
    if item.transaction_type and tx_type == TransactionType.OTHER.value and item.transaction_type.strip().lower() != tx_type:
        data["original_type"] = item.transaction_type
    for key, value in (item.model_extra or {}).items():
        if key not in _CONSUMED_FIELDS and value not in (None, ""):
            data[key] = value
    for key, value in (item.additional_fields or {}).items():
        if value not in (None, ""):
            data[key] = value
    if extraction_notes:
        data["extraction_notes"] = extraction_notes

    return TransactionDraft(columns=columns, data=DataBag(data))


class TransactionMaterializer:
    def __init__(
        self,
        account_resolver: Optional[AccountResolver] = None,
        default_currency: Optional[str] = None,
    ):
        self.account_resolver = account_resolver or DatabaseAccountResolver()
        self.default_currency = default_currency or settings.DEFAULT_CURRENCY

    async def materialize(
        self,
        session: AsyncSession,
        document: ExtractionDocument,
        email: Email,
        run_id: str,
    ) -> MaterializeResult:
        """Insert one Transaction per item. Item failures are collected, not raised."""
        result = MaterializeResult()

        for index, item in enumerate(document.transactions):
            try:
                async with session.begin_nested():
                    tx = await self._build(session, item, email, run_id, document.extraction_notes)
                    session.add(tx)
                    await session.flush()
            except ITEM_ERRORS as e:
                failure = PartialItemFailure(index, str(e)[:500])
                result.failures.append(failure)
                transaction_items_failed_total.inc()
                logger.warning(
                    "transaction_item_failed",
                    email_id=email.id,
                    item_index=index,
                    error=failure.message,
                )
                continue

            result.transaction_ids.append(tx.id)
            if tx.confidence is not None:
                result.confidences.append(Decimal(tx.confidence))
            transactions_materialized_total.labels(type=tx.type).inc()

        return result

    async def _build(
        self,
        session: AsyncSession,
        item: ExtractionItem,
        email: Email,
        run_id: str,
        extraction_notes: Optional[str],
    ) -> Transaction:
        draft = normalize_item(
            item,
            fallback_date=email.email_date,
            extraction_notes=extraction_notes,
            default_currency=self.default_currency,
        )
        account_id = await self.account_resolver.resolve(
            session,
            AccountInput(
                account_number=item.account_number,
                account_name=item.account_name,
                institution=item.institution,
            ),
        )
        to_account_id = None
        if item.to_account_number or item.to_account_name:
            to_account_id = await self.account_resolver.resolve(
                session,
                AccountInput(
                    account_number=item.to_account_number,
                    account_name=item.to_account_name,
                    institution=item.to_institution,
                    is_external=draft.columns["type"] in _EXTERNAL_TYPES,
                ),
            )

        return Transaction(
            extraction_run_id=run_id,
            source_email_id=email.id,
            account_id=account_id,
            to_account_id=to_account_id,
            data=draft.data.to_dict(),
            **draft.columns,
        )
