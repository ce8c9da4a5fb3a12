"""
Tests for reportflow/ingest/schema.py and registry.py.

Tests cover:
- ReportSchema construction checks and derived field views
- Period parsing and schema matching
- Registry lookup, versioning and the built-in report types
"""

from __future__ import annotations

from datetime import datetime

import pytest

from reportflow.core.errors import UnknownReportTypeError, ValidationError
from reportflow.ingest.coercion import CoercionRule
from reportflow.ingest.registry import (
    BUILTIN_SCHEMAS,
    HORIZON,
    LABOR,
    SchemaRegistry,
    default_registry,
)
from reportflow.ingest.schema import (
    ColumnSpec,
    Period,
    PeriodKind,
    ReportSchema,
    WriteMode,
    normalize_label,
)


def _schema(**overrides) -> ReportSchema:
    base = dict(
        report_type="t",
        table="t_reports",
        expected_headers=("Name",),
        columns=(ColumnSpec("name", "Name"), ColumnSpec("qty", "Qty", CoercionRule.NUMERIC_OR_ZERO)),
        identifying_fields=("uploaded_date", "name"),
        mutable_fields=("qty",),
    )
    base.update(overrides)
    return ReportSchema(**base)


class TestReportSchema:
    """Descriptor construction and derived views."""

    def test_field_names_order(self):
        """Period fields first, then columns, uploader last."""
        schema = _schema()
        assert schema.field_names == ("uploaded_date", "name", "qty", "uploaded_by")

    def test_row_ordinal_follows_period(self):
        schema = _schema(
            identifying_fields=("uploaded_date", "line_number"),
            mutable_fields=("name", "qty"),
            row_ordinal_field="line_number",
        )
        assert schema.field_names[:2] == ("uploaded_date", "line_number")
        assert schema.sql_type("line_number") == "INTEGER"

    def test_period_named_column_listed_once(self):
        """Horizon's Date cell feeds uploaded_date without a second column."""
        assert HORIZON.field_names.count("uploaded_date") == 1
        assert HORIZON.sql_type("uploaded_date") == "TIMESTAMP"

    def test_rejects_unsafe_identifier(self):
        with pytest.raises(ValueError, match="invalid SQL identifiers"):
            _schema(table="reports; DROP TABLE x")

    def test_rejects_unknown_identifying_field(self):
        with pytest.raises(ValueError, match="unknown fields"):
            _schema(identifying_fields=("uploaded_date", "nope"))

    def test_rejects_identifying_and_mutable_overlap(self):
        with pytest.raises(ValueError, match="both identifying and mutable"):
            _schema(mutable_fields=("name",))

    def test_rejects_column_shadowing_uploader(self):
        with pytest.raises(ValueError):
            _schema(columns=(ColumnSpec("name", "Name"), ColumnSpec("uploaded_by", "By")), mutable_fields=())

    def test_alias_resolution(self):
        """Aliases and whitespace drift normalize to the canonical label."""
        schema = _schema(aliases={"Full  Name": "Name"})
        assert schema.normalize("  full name ") == "NAME"
        assert schema.normalize("name") == "NAME"

    def test_case_sensitive_labels(self):
        assert normalize_label(" Reg.  Hrs ", case_sensitive=True) == "Reg. Hrs"
        assert normalize_label(" Reg.  Hrs ") == "REG. HRS"

    def test_required_fields_include_identifying(self):
        assert LABOR.required_fields == ("uploaded_date", "employee", "date")


class TestPeriod:
    """Reporting period parsing."""

    def test_single_is_anchored_at_noon(self):
        period = Period.single("2024-01-15")
        assert period.start == datetime(2024, 1, 15, 12)
        assert period.kind is PeriodKind.SINGLE
        assert period.describe() == "2024-01-15"

    def test_range(self):
        period = Period.range("2024-01-08", "2024-01-14")
        assert period.kind is PeriodKind.RANGE
        assert period.describe() == "2024-01-08..2024-01-14"

    def test_range_start_after_end(self):
        with pytest.raises(ValidationError, match="after endDate"):
            Period.range("2024-01-14", "2024-01-08")

    @pytest.mark.parametrize("raw", [None, "", "01/15/2024"])
    def test_single_requires_iso_date(self, raw):
        with pytest.raises(ValidationError):
            Period.single(raw)

    def test_values_for_matching_schema(self):
        assert Period.single("2024-01-15").values_for(LABOR) == {
            "uploaded_date": datetime(2024, 1, 15, 12)
        }

    def test_values_for_wrong_kind(self):
        with pytest.raises(ValidationError, match="expects a single period"):
            Period.range("2024-01-08", "2024-01-14").values_for(LABOR)


class TestSchemaRegistry:
    """Lookup by report-type tag and version."""

    def test_latest_version_by_default(self):
        registry = default_registry()
        schema = registry.get("employee_weekly")
        assert schema.version == 2
        assert schema.write_mode is WriteMode.REPLACE_PERIOD

    def test_explicit_version(self):
        schema = default_registry().get("employee_weekly", 1)
        assert schema.table == "employee_weekly_by_name"
        assert "legal_last_name" in schema.identifying_fields

    def test_unknown_type(self):
        with pytest.raises(UnknownReportTypeError) as exc_info:
            default_registry().get("payroll")
        assert exc_info.value.status_code == 400
        assert isinstance(exc_info.value, LookupError)

    def test_unknown_version(self):
        with pytest.raises(UnknownReportTypeError):
            default_registry().get("labor", 7)

    def test_duplicate_registration(self):
        registry = SchemaRegistry([LABOR])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(LABOR)

    def test_contains_and_iteration(self):
        registry = default_registry()
        assert "labor" in registry
        assert "payroll" not in registry
        assert len(list(registry)) == len(BUILTIN_SCHEMAS)
        assert registry.versions("employee_weekly") == [1, 2]

    def test_builtin_report_types(self):
        assert default_registry().report_types() == sorted(
            [
                "diverse_weekly",
                "diversedaily",
                "employeeTotal",
                "employee_weekly",
                "freight_breakers_weekly",
                "hire_dynamics_weekly",
                "horizon",
                "labor",
            ]
        )
