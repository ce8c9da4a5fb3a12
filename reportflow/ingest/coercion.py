"""
reportflow/ingest/coercion.py
=============================

Cell value coercion for spreadsheet-exported rows.

Spreadsheet exports hand us a mix of strings, JSON numbers, and the odd
date object. Each schema column names one rule:

    STRING                   trimmed text, integral floats without ".0"
    NUMERIC_OR_ZERO          currency/grouping stripped; garbage and blanks -> 0
    DATE_STRICT_ISO          exactly YYYY-MM-DD, anything else is an error
    DATE_FLEXIBLE            M/D/YYYY, M/D/YY, ISO date or datetime; else null
    DATE_SPREADSHEET_SERIAL  day offset from 1899-12-30; strings as FLEXIBLE

Every date rule yields a naive datetime anchored at local noon, so later
timezone conversion cannot move the value to a neighbouring calendar day.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Optional, Union

from reportflow.core.errors import ValidationError


class CoercionRule(str, Enum):
    STRING = "string"
    NUMERIC_OR_ZERO = "numeric_or_zero"
    DATE_STRICT_ISO = "date_strict_iso"
    DATE_FLEXIBLE = "date_flexible"
    DATE_SPREADSHEET_SERIAL = "date_spreadsheet_serial"

    @property
    def is_date(self) -> bool:
        return self in (
            CoercionRule.DATE_STRICT_ISO,
            CoercionRule.DATE_FLEXIBLE,
            CoercionRule.DATE_SPREADSHEET_SERIAL,
        )


Number = Union[int, float]

NOON = time(12, 0)
SPREADSHEET_EPOCH = date(1899, 12, 30)
# Serial 60 is the spreadsheet's fictitious 1900-02-29
PHANTOM_LEAP_DAY_SERIAL = 60
MAX_SPREADSHEET_SERIAL = (date(9999, 12, 31) - SPREADSHEET_EPOCH).days

_WHITESPACE_RE = re.compile(r"\s+")
_STRICT_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMERIC_NOISE_RE = re.compile(r"[\s,$€£¥]")
_SLASH_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")


# =============================================================================
# Text helpers
# =============================================================================


def clean_text(value: Any) -> Any:
    """Collapse internal whitespace and trim strings; other values pass through."""
    if isinstance(value, str):
        return _WHITESPACE_RE.sub(" ", value).strip()
    return value


def is_blank(value: Any) -> bool:
    """None, empty/whitespace strings and NaN count as blank."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, float):
        return math.isnan(value)
    return False


def to_text(value: Any) -> Optional[str]:
    """Render a cell as text, or None when blank."""
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return clean_text(str(value))


# =============================================================================
# Numbers
# =============================================================================


def parse_number_or_zero(value: Any) -> Number:
    """
    Parse a numeric cell, falling back to 0.

    "$1,234.50" -> 1234.5, "12" -> 12, "n/a" -> 0, None -> 0, inf -> 0.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else 0
    if not isinstance(value, str):
        return 0

    cleaned = _NUMERIC_NOISE_RE.sub("", value)
    if not cleaned:
        return 0
    try:
        return int(cleaned)
    except ValueError:
        pass
    try:
        number = float(cleaned)
    except ValueError:
        return 0
    return number if math.isfinite(number) else 0


# =============================================================================
# Dates
# =============================================================================


def anchor_noon(day: date) -> datetime:
    """Return the naive datetime at 12:00 local time on ``day``."""
    return datetime.combine(day, NOON)


def parse_strict_iso_date(value: Any) -> date:
    """
    Parse exactly ``YYYY-MM-DD``.

    Raises:
        ValidationError: For any other shape or an impossible calendar date
    """
    text = value.strip() if isinstance(value, str) else value
    if not isinstance(text, str) or not _STRICT_ISO_RE.match(text):
        raise ValidationError(f"Invalid date {value!r}: expected YYYY-MM-DD")
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid date {value!r}: {exc}") from exc


def parse_flexible_date(value: Any) -> Optional[date]:
    """
    Parse M/D/YYYY, M/D/YY, ISO date or ISO datetime text.

    Date and datetime objects pass through. Returns None when unparseable.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    match = _SLASH_DATE_RE.match(text)
    if match:
        month, day, year = (int(part) for part in match.groups())
        if len(match.group(3)) == 2:
            year += 2000 if year < 50 else 1900
        try:
            return date(year, month, day)
        except ValueError:
            return None

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def spreadsheet_serial_to_date(serial: Number) -> Optional[date]:
    """
    Convert a spreadsheet day serial to a calendar date.

    Serial 1 is 1899-12-31. The spreadsheet's fictitious 1900-02-29 (serial
    60) resolves to 1900-03-01; every other serial counts whole days from
    1899-12-30, fractional time of day discarded.
    """
    if not math.isfinite(serial) or serial < 0:
        return None
    days = int(math.floor(serial))
    if days > MAX_SPREADSHEET_SERIAL:
        return None
    if days == PHANTOM_LEAP_DAY_SERIAL:
        return date(1900, 3, 1)
    return SPREADSHEET_EPOCH + timedelta(days=days)


def parse_spreadsheet_date(value: Any) -> Optional[date]:
    """Numbers are day serials; everything else follows parse_flexible_date."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return spreadsheet_serial_to_date(value)
    return parse_flexible_date(value)


# =============================================================================
# Dispatch
# =============================================================================


def coerce_value(rule: CoercionRule, value: Any) -> Any:
    """
    Apply ``rule`` to a cleaned cell value.

    Raises:
        ValidationError: Only for DATE_STRICT_ISO with a non-blank, malformed value
    """
    if rule is CoercionRule.STRING:
        return to_text(value)
    if rule is CoercionRule.NUMERIC_OR_ZERO:
        return parse_number_or_zero(value)

    if is_blank(value):
        return None

    if rule is CoercionRule.DATE_STRICT_ISO:
        if isinstance(value, datetime):
            return anchor_noon(value.date())
        if isinstance(value, date):
            return anchor_noon(value)
        parsed = parse_strict_iso_date(value)
    elif rule is CoercionRule.DATE_FLEXIBLE:
        parsed = parse_flexible_date(value)
    elif rule is CoercionRule.DATE_SPREADSHEET_SERIAL:
        parsed = parse_spreadsheet_date(value)
    else:
        raise ValueError(f"Unsupported coercion rule: {rule!r}")

    return anchor_noon(parsed) if parsed is not None else None
