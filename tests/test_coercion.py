"""
Tests for reportflow/ingest/coercion.py - cell coercion rules.

Tests cover:
- Text cleanup and blank detection
- Numeric parsing with currency noise and zero fallback
- Strict ISO, flexible and spreadsheet-serial dates (noon anchoring)
"""

from __future__ import annotations

import math
from datetime import date, datetime

import pytest

from reportflow.core.errors import ValidationError
from reportflow.ingest.coercion import (
    CoercionRule,
    clean_text,
    coerce_value,
    is_blank,
    parse_flexible_date,
    parse_number_or_zero,
    parse_strict_iso_date,
    spreadsheet_serial_to_date,
    to_text,
)


class TestTextHelpers:
    """Whitespace cleanup and blank detection."""

    def test_clean_text_collapses_whitespace(self):
        """Internal runs of whitespace collapse to one space and ends are trimmed."""
        assert clean_text("  Doe,\t  Jane \n") == "Doe, Jane"

    def test_clean_text_passes_non_strings(self):
        """Numbers are returned untouched."""
        assert clean_text(12.5) == 12.5

    @pytest.mark.parametrize("value", [None, "", "   ", float("nan")])
    def test_blank_values(self, value):
        """None, whitespace and NaN are blank."""
        assert is_blank(value)

    @pytest.mark.parametrize("value", [0, "0", "x", 0.0])
    def test_non_blank_values(self, value):
        """Zero is a value, not a blank."""
        assert not is_blank(value)

    def test_to_text_renders_integral_float_without_fraction(self):
        """Spreadsheet IDs read as floats keep their integer form."""
        assert to_text(10234.0) == "10234"

    def test_to_text_blank_is_none(self):
        assert to_text("  ") is None


class TestNumbers:
    """NUMERIC_OR_ZERO parsing."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("$1,234.50", 1234.5),
            ("12", 12),
            (" 7.25 ", 7.25),
            ("€30", 30),
            (8, 8),
            (2.5, 2.5),
        ],
    )
    def test_parses_numbers(self, raw, expected):
        """Currency symbols, thousands separators and whitespace are ignored."""
        assert parse_number_or_zero(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "n/a", "--", float("inf"), float("nan")])
    def test_unparseable_falls_back_to_zero(self, raw):
        """Anything unparseable or non-finite becomes 0."""
        result = parse_number_or_zero(raw)
        assert result == 0
        assert not (isinstance(result, float) and math.isnan(result))


class TestStrictIsoDates:
    """DATE_STRICT_ISO parsing."""

    def test_parses_iso_date(self):
        assert parse_strict_iso_date("2024-01-15") == date(2024, 1, 15)

    @pytest.mark.parametrize("raw", ["01/15/2024", "2024-1-15", "2024-02-30", "yesterday", 20240115])
    def test_rejects_other_shapes(self, raw):
        """Anything but a real YYYY-MM-DD calendar date is a ValidationError."""
        with pytest.raises(ValidationError):
            parse_strict_iso_date(raw)

    def test_coerce_anchors_at_noon(self):
        """Stored dates are anchored at 12:00 local time."""
        assert coerce_value(CoercionRule.DATE_STRICT_ISO, "2024-01-15") == datetime(2024, 1, 15, 12, 0)

    def test_coerce_blank_is_none(self):
        """A blank strict date is absent, not an error."""
        assert coerce_value(CoercionRule.DATE_STRICT_ISO, "") is None


class TestFlexibleDates:
    """DATE_FLEXIBLE parsing."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1/15/2024", date(2024, 1, 15)),
            ("01/05/24", date(2024, 1, 5)),
            ("12/31/99", date(1999, 12, 31)),
            ("2024-01-15", date(2024, 1, 15)),
            ("2024-01-15T23:30:00Z", date(2024, 1, 15)),
            (datetime(2024, 1, 15, 8, 0), date(2024, 1, 15)),
        ],
    )
    def test_parses_supported_shapes(self, raw, expected):
        assert parse_flexible_date(raw) == expected

    @pytest.mark.parametrize("raw", ["13/45/2024", "soon", "", 45306])
    def test_unparseable_is_none(self, raw):
        """Malformed flexible dates are dropped to None rather than failing the row."""
        assert parse_flexible_date(raw) is None


class TestSpreadsheetSerials:
    """DATE_SPREADSHEET_SERIAL conversion."""

    def test_serial_one(self):
        """Serial 1 is the last day of 1899."""
        assert spreadsheet_serial_to_date(1) == date(1899, 12, 31)

    def test_serial_sixty_phantom_leap_day(self):
        """Serial 60 (the fictitious 1900-02-29) resolves to 1900-03-01."""
        assert spreadsheet_serial_to_date(60) == date(1900, 3, 1)

    def test_modern_serial(self):
        """45306 is 2024-01-15, as any spreadsheet displays it."""
        assert spreadsheet_serial_to_date(45306) == date(2024, 1, 15)

    def test_fractional_time_is_discarded(self):
        assert spreadsheet_serial_to_date(45306.75) == date(2024, 1, 15)

    @pytest.mark.parametrize("raw", [-1, float("inf"), float("nan"), 10_000_000])
    def test_out_of_range_is_none(self, raw):
        assert spreadsheet_serial_to_date(raw) is None

    def test_coerce_accepts_serial_and_text(self):
        """Serial columns also accept text dates."""
        assert coerce_value(CoercionRule.DATE_SPREADSHEET_SERIAL, 45306) == datetime(2024, 1, 15, 12)
        assert coerce_value(CoercionRule.DATE_SPREADSHEET_SERIAL, "1/15/2024") == datetime(2024, 1, 15, 12)
