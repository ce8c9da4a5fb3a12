"""
reportflow/ingest/schema.py
===========================

Declarative report descriptors.

A ReportSchema describes one report type (at one key revision): the header
labels that identify its header row, the columns it stores and how each cell
is coerced, the composite natural key, and which fields a later upload may
overwrite. One engine consumes every descriptor.

Usage:
    LABOR = ReportSchema(
        report_type="labor",
        table="daily_reports",
        expected_headers=("Employee", "Date", "Reg. Hrs"),
        columns=(
            ColumnSpec("employee", "Employee"),
            ColumnSpec("date", "Date", CoercionRule.DATE_FLEXIBLE),
            ColumnSpec("reg_hrs", "Reg. Hrs", CoercionRule.NUMERIC_OR_ZERO),
        ),
        identifying_fields=("uploaded_date", "employee"),
        mutable_fields=("date", "reg_hrs", "uploaded_by"),
        case_sensitive=True,
    )
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from reportflow.core.errors import ValidationError

from .coercion import CoercionRule, anchor_noon, parse_strict_iso_date

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")
_WHITESPACE_RE = re.compile(r"\s+")


class HeaderMatchPolicy(str, Enum):
    EXACT = "exact"
    SUPERSET = "superset"


class HeaderSource(str, Enum):
    """Where header labels live in the submitted rows."""

    AUTO = "auto"
    KEYS = "keys"  # labels are the row mapping keys; the row is data
    VALUES = "values"  # labels are cell values of one row; data starts below it


class PeriodKind(str, Enum):
    SINGLE = "single"
    RANGE = "range"


class WriteMode(str, Enum):
    UPSERT = "upsert"
    REPLACE_PERIOD = "replace_period"


SINGLE_PERIOD_FIELDS: Tuple[str, ...] = ("uploaded_date",)
RANGE_PERIOD_FIELDS: Tuple[str, ...] = ("start_date", "end_date")

SQL_TYPES = {
    CoercionRule.STRING: "TEXT",
    CoercionRule.NUMERIC_OR_ZERO: "DOUBLE PRECISION",
    CoercionRule.DATE_STRICT_ISO: "TIMESTAMP",
    CoercionRule.DATE_FLEXIBLE: "TIMESTAMP",
    CoercionRule.DATE_SPREADSHEET_SERIAL: "TIMESTAMP",
}


def normalize_label(label: Any, case_sensitive: bool = False) -> str:
    """Collapse whitespace, trim, and upper-case unless case-sensitive."""
    text = _WHITESPACE_RE.sub(" ", str(label)).strip()
    return text if case_sensitive else text.upper()


@dataclass(frozen=True)
class ColumnSpec:
    """One stored column and the header label it is read from."""

    name: str
    label: str
    rule: CoercionRule = CoercionRule.STRING
    required: bool = False

    @property
    def sql_type(self) -> str:
        return SQL_TYPES[self.rule]


@dataclass(frozen=True)
class ReportSchema:
    """Declarative descriptor for one report type at one key revision."""

    report_type: str
    table: str
    expected_headers: Tuple[str, ...]
    columns: Tuple[ColumnSpec, ...]
    identifying_fields: Tuple[str, ...]
    mutable_fields: Tuple[str, ...]
    version: int = 1
    match_policy: HeaderMatchPolicy = HeaderMatchPolicy.SUPERSET
    order_significant: bool = False
    case_sensitive: bool = False
    aliases: Mapping[str, str] = field(default_factory=dict)
    header_source: HeaderSource = HeaderSource.AUTO
    period_kind: PeriodKind = PeriodKind.SINGLE
    write_mode: WriteMode = WriteMode.UPSERT
    stop_on_footer: bool = True
    uploader_field: str = "uploaded_by"
    row_ordinal_field: Optional[str] = None
    description: str = ""

    def __post_init__(self) -> None:
        names = [self.table, *self.field_names]
        bad = [name for name in names if not _IDENTIFIER_RE.match(name)]
        if bad:
            raise ValueError(f"{self.key}: invalid SQL identifiers {bad}")

        column_names = [c.name for c in self.columns]
        if len(set(column_names)) != len(column_names):
            raise ValueError(f"{self.key}: duplicate column names")

        fields = set(self.field_names)
        if len(fields) != len(self.field_names):
            raise ValueError(f"{self.key}: a column shadows a context field")

        if not self.identifying_fields:
            raise ValueError(f"{self.key}: identifying_fields cannot be empty")
        unknown = (set(self.identifying_fields) | set(self.mutable_fields)) - fields
        if unknown:
            raise ValueError(f"{self.key}: unknown fields {sorted(unknown)}")
        overlap = set(self.identifying_fields) & set(self.mutable_fields)
        if overlap:
            raise ValueError(f"{self.key}: fields both identifying and mutable {sorted(overlap)}")

        if not self.expected_headers:
            raise ValueError(f"{self.key}: expected_headers cannot be empty")

        alias_map = {
            normalize_label(alias, self.case_sensitive): normalize_label(
                target, self.case_sensitive
            )
            for alias, target in self.aliases.items()
        }
        object.__setattr__(self, "_alias_map", alias_map)

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    @property
    def key(self) -> str:
        return f"{self.report_type}@v{self.version}"

    @property
    def period_fields(self) -> Tuple[str, ...]:
        if self.period_kind is PeriodKind.SINGLE:
            return SINGLE_PERIOD_FIELDS
        return RANGE_PERIOD_FIELDS

    @property
    def context_fields(self) -> Tuple[str, ...]:
        """Fields injected by the engine rather than read from cells."""
        fields = list(self.period_fields)
        if self.row_ordinal_field:
            fields.append(self.row_ordinal_field)
        fields.append(self.uploader_field)
        return tuple(fields)

    @property
    def field_names(self) -> Tuple[str, ...]:
        """
        Every stored column in insert order.

        A cell column named like a period field (Horizon's own Date cell
        feeding uploaded_date) is listed once, as the period field.
        """
        names = list(self.period_fields)
        if self.row_ordinal_field:
            names.append(self.row_ordinal_field)
        names.extend(c.name for c in self.columns if c.name not in self.period_fields)
        names.append(self.uploader_field)
        return tuple(names)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        extra = [c.name for c in self.columns if c.required and c.name not in self.identifying_fields]
        return tuple(self.identifying_fields) + tuple(extra)

    def column(self, name: str) -> ColumnSpec:
        for spec in self.columns:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def sql_type(self, name: str) -> str:
        if name in self.period_fields:
            return "TIMESTAMP"
        if name == self.row_ordinal_field:
            return "INTEGER"
        if name == self.uploader_field:
            return "TEXT"
        return self.column(name).sql_type

    def normalize(self, label: Any) -> str:
        """Normalized, alias-resolved form of a header label."""
        normalized = normalize_label(label, self.case_sensitive)
        return self._alias_map.get(normalized, normalized)  # type: ignore[attr-defined]

    @property
    def expected_labels(self) -> Tuple[str, ...]:
        return tuple(self.normalize(label) for label in self.expected_headers)


# =============================================================================
# Reporting period
# =============================================================================


@dataclass(frozen=True)
class Period:
    """The reporting period an upload covers: one day, or a start/end range."""

    start: datetime
    end: Optional[datetime] = None

    @property
    def kind(self) -> PeriodKind:
        return PeriodKind.SINGLE if self.end is None else PeriodKind.RANGE

    @classmethod
    def single(cls, report_date: Any) -> "Period":
        """
        Raises:
            ValidationError: If report_date is missing or not YYYY-MM-DD
        """
        if report_date in (None, ""):
            raise ValidationError("reportDate is required for this report type")
        return cls(start=anchor_noon(parse_strict_iso_date(report_date)))

    @classmethod
    def range(cls, start_date: Any, end_date: Any) -> "Period":
        """
        Raises:
            ValidationError: If either bound is missing, malformed, or start > end
        """
        if start_date in (None, "") or end_date in (None, ""):
            raise ValidationError("startDate and endDate are required for this report type")
        start = anchor_noon(parse_strict_iso_date(start_date))
        end = anchor_noon(parse_strict_iso_date(end_date))
        if start > end:
            raise ValidationError(
                f"startDate {start.date().isoformat()} is after endDate {end.date().isoformat()}"
            )
        return cls(start=start, end=end)

    def values_for(self, schema: ReportSchema) -> Dict[str, datetime]:
        """
        Map the period onto the schema's period columns.

        Raises:
            ValidationError: If the period kind does not match the schema
        """
        if self.kind is not schema.period_kind:
            raise ValidationError(
                f"{schema.report_type} expects a {schema.period_kind.value} period, "
                f"got {self.kind.value}"
            )
        if self.end is None:
            return {"uploaded_date": self.start}
        return {"start_date": self.start, "end_date": self.end}

    def describe(self) -> str:
        if self.end is None:
            return self.start.date().isoformat()
        return f"{self.start.date().isoformat()}..{self.end.date().isoformat()}"
