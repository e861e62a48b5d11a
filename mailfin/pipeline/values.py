"""
Value parsers for extractor output.

Extractors report numbers and dates as JSON numbers or loose strings:
- 1,234.56 / $1,234.56 / USD 1234.56
- (1,234.56)        -> negative (parentheses)
- -1,234.56         -> negative (leading minus)
- 1,234.56-         -> negative (trailing minus)
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil import parser as dateutil_parser

_CURRENCY_TOKENS = re.compile(r"(USD|EUR|GBP|CAD|US\$|\$|€|£)", re.IGNORECASE)


def parse_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert a number or numeric string to Decimal.
    Empty values become None; anything unparseable raises ValueError.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))

    s = str(value).strip()
    if not s or s in ("-", "--", "N/A", "n/a"):
        return None

    s = _CURRENCY_TOKENS.sub("", s).strip()

    is_negative = False
    if s.startswith("(") and s.endswith(")"):
        s = s[1:-1].strip()
        is_negative = True
    if s.endswith("-"):
        s = s[:-1].strip()
        is_negative = True
    if s.startswith("-"):
        s = s[1:].strip()
        is_negative = True

    s = s.replace(",", "").replace(" ", "")
    try:
        amount = Decimal(s)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"not a number: {value!r}")
    return -amount if is_negative else amount


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO or free-form date. Naive results are taken as UTC.
    Empty values become None; unparseable text raises ValueError.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            parsed = dateutil_parser.parse(s)
        except (ValueError, OverflowError) as e:
            raise ValueError(f"not a date: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_empty(value: Any) -> bool:
    """A column counts as empty when it is None or a blank string."""
    return value is None or (isinstance(value, str) and value.strip() == "")


def to_jsonable(value: Any) -> Any:
    """Make column values safe to store in a JSON column."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value
