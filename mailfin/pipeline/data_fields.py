"""
Field namespace for transactions.

A field path is either a typed column ("amount", "symbol", ...) or a key in
the free-form data map, written "data.<key>". Only these two shapes are valid;
everything else is rejected before any write happens.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from mailfin.errors import InvalidRequest
from mailfin.pipeline.values import is_empty, parse_datetime, parse_decimal

DATA_PREFIX = "data."

NUMERIC_COLUMNS = frozenset({"amount", "quantity", "price", "fees", "confidence"})
DATE_COLUMNS = frozenset({"date"})
TEXT_COLUMNS = frozenset({
    "type",
    "currency",
    "symbol",
    "description",
    "security_name",
    "reference_number",
    "order_type",
})
ACCOUNT_COLUMNS = frozenset({"account_id", "to_account_id"})

# Columns a reviewer correction may overwrite
TYPED_COLUMNS = NUMERIC_COLUMNS | DATE_COLUMNS | TEXT_COLUMNS | ACCOUNT_COLUMNS
# Columns that may never be empty on a stored transaction
REQUIRED_COLUMNS = frozenset({"type", "date", "currency"})


class InvalidFieldPath(InvalidRequest):
    error_code = "ERR_INVALID_FIELD"


@dataclass(frozen=True)
class FieldPath:
    name: str
    is_data: bool

    @classmethod
    def parse(cls, raw: str) -> "FieldPath":
        if not isinstance(raw, str) or not raw.strip():
            raise InvalidFieldPath(f"empty field path: {raw!r}")
        raw = raw.strip()
        if raw.startswith(DATA_PREFIX):
            key = raw[len(DATA_PREFIX):]
            if not key or "." in key:
                raise InvalidFieldPath(f"invalid data path: {raw!r}")
            return cls(name=key, is_data=True)
        if raw in TYPED_COLUMNS:
            return cls(name=raw, is_data=False)
        raise InvalidFieldPath(f"unknown transaction field: {raw!r}")

    @classmethod
    def try_parse(cls, raw: str) -> Optional["FieldPath"]:
        try:
            return cls.parse(raw)
        except InvalidFieldPath:
            return None

    def __str__(self) -> str:
        return f"{DATA_PREFIX}{self.name}" if self.is_data else self.name


def coerce_column_value(column: str, value: Any) -> Any:
    """Convert a JSON-ish value to the Python type of a typed column."""
    if column in NUMERIC_COLUMNS:
        return parse_decimal(value)
    if column in DATE_COLUMNS:
        return parse_datetime(value)
    if value is None:
        return None
    return str(value)


class DataBag:
    """
    Immutable key/value map backing Transaction.data.
    Every mutation returns a new bag so JSON columns are always reassigned.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, DataBag) and other._values == self._values

    def with_value(self, key: str, value: Any) -> "DataBag":
        values = dict(self._values)
        values[key] = value
        return DataBag(values)

    def without(self, keys: Iterable[str]) -> "DataBag":
        drop = set(keys)
        return DataBag({k: v for k, v in self._values.items() if k not in drop})

    def filled_from(self, other: Mapping[str, Any]) -> "DataBag":
        """Take values from `other` only where this bag has none."""
        values = dict(self._values)
        for key, value in other.items():
            if is_empty(values.get(key)) and not is_empty(value):
                values[key] = value
        return DataBag(values)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)


@dataclass
class TransactionDraft:
    """Column values plus data bag of a transaction about to be written."""

    columns: dict[str, Any]
    data: DataBag = field(default_factory=DataBag)

    def read(self, path: FieldPath) -> Any:
        if path.is_data:
            return self.data.get(path.name)
        return self.columns.get(path.name)

    def overwrite(self, path: FieldPath, value: Any) -> None:
        if path.is_data:
            self.data = self.data.with_value(path.name, value)
            return
        coerced = coerce_column_value(path.name, value)
        if coerced is None and path.name in REQUIRED_COLUMNS:
            raise InvalidFieldPath(f"{path.name} cannot be cleared")
        self.columns[path.name] = coerced

    def fill_gaps(self, other: "TransactionDraft", keep: Iterable[str] = ()) -> None:
        """Copy columns and data keys from `other` wherever this draft is empty."""
        skip = set(keep)
        for name, value in other.columns.items():
            if name not in skip and is_empty(self.columns.get(name)) and not is_empty(value):
                self.columns[name] = value
        self.data = self.data.filled_from(other.data.to_dict())

    def merge(self, canonical: FieldPath, merged: list[FieldPath]) -> bool:
        """
        Fill an empty canonical field from the first non-null merged data key,
        then drop every merged data key. Returns True when a value was copied.
        """
        copied = False
        if is_empty(self.read(canonical)):
            for source in merged:
                candidate = self.read(source)
                if candidate is not None:
                    self.overwrite(canonical, candidate)
                    copied = True
                    break

        drop = [p.name for p in merged if p.is_data and p != canonical]
        self.data = self.data.without(drop)
        return copied
