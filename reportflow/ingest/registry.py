"""
reportflow/ingest/registry.py
=============================

Schema registry and the built-in report types.

Report types are looked up by their upload tag ("labor", "horizon", ...).
A tag may carry several key revisions; each revision is an independent
ReportSchema with its own version number and table, and lookups without a
version resolve to the latest one.

Usage:
    registry = default_registry()
    schema = registry.get("horizon")
    legacy = registry.get("employee_weekly", version=1)
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from reportflow.core.errors import UnknownReportTypeError

from .coercion import CoercionRule
from .schema import (
    ColumnSpec,
    HeaderMatchPolicy,
    HeaderSource,
    PeriodKind,
    ReportSchema,
    WriteMode,
)

STRING = CoercionRule.STRING
NUMBER = CoercionRule.NUMERIC_OR_ZERO
FLEX_DATE = CoercionRule.DATE_FLEXIBLE
SERIAL_DATE = CoercionRule.DATE_SPREADSHEET_SERIAL


class SchemaRegistry:
    """In-memory lookup of ReportSchema by (report_type, version)."""

    def __init__(self, schemas: Iterable[ReportSchema] = ()):
        self._schemas: Dict[Tuple[str, int], ReportSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: ReportSchema) -> ReportSchema:
        key = (schema.report_type, schema.version)
        if key in self._schemas:
            raise ValueError(f"Schema already registered: {schema.key}")
        self._schemas[key] = schema
        return schema

    def get(self, report_type: str, version: Optional[int] = None) -> ReportSchema:
        """
        Resolve a report-type tag.

        Raises:
            UnknownReportTypeError: If the tag (or tag/version) is not registered
        """
        if version is not None:
            try:
                return self._schemas[(report_type, version)]
            except KeyError:
                raise UnknownReportTypeError(report_type, version) from None

        versions = self.versions(report_type)
        if not versions:
            raise UnknownReportTypeError(report_type)
        return self._schemas[(report_type, versions[-1])]

    def versions(self, report_type: str) -> List[int]:
        return sorted(v for (tag, v) in self._schemas if tag == report_type)

    def report_types(self) -> List[str]:
        return sorted({tag for (tag, _) in self._schemas})

    def __contains__(self, report_type: object) -> bool:
        return any(tag == report_type for (tag, _) in self._schemas)

    def __iter__(self) -> Iterator[ReportSchema]:
        return iter(self._schemas[key] for key in sorted(self._schemas))

    def __len__(self) -> int:
        return len(self._schemas)


# =============================================================================
# Built-in report types
# =============================================================================

# Staffing-agency daily labor export (one row per employee per day)
LABOR = ReportSchema(
    report_type="labor",
    table="daily_reports",
    description="Daily labor hours and pay per employee",
    expected_headers=(
        "Employee",
        "Shift (G4)",
        "Department (G3)",
        "Date",
        "Reg. Hrs",
        "Reg. Pay",
        "Reg Rate",
        "OT",
        "OT1 Pay",
        "Total Hrs",
        "Total Pay",
    ),
    columns=(
        ColumnSpec("employee", "Employee"),
        ColumnSpec("shift_g4", "Shift (G4)"),
        ColumnSpec("department_g3", "Department (G3)"),
        ColumnSpec("date", "Date", FLEX_DATE, required=True),
        ColumnSpec("reg_hrs", "Reg. Hrs", NUMBER),
        ColumnSpec("reg_pay", "Reg. Pay", NUMBER),
        ColumnSpec("reg_rate", "Reg Rate", NUMBER),
        ColumnSpec("ot", "OT", NUMBER),
        ColumnSpec("ot_1_pay", "OT1 Pay", NUMBER),
        ColumnSpec("total_hrs", "Total Hrs", NUMBER),
        ColumnSpec("total_pay", "Total Pay", NUMBER),
    ),
    identifying_fields=("uploaded_date", "employee"),
    mutable_fields=(
        "shift_g4",
        "department_g3",
        "date",
        "reg_hrs",
        "reg_pay",
        "reg_rate",
        "ot",
        "ot_1_pay",
        "total_hrs",
        "total_pay",
        "uploaded_by",
    ),
    match_policy=HeaderMatchPolicy.EXACT,
    case_sensitive=True,
)

# Diverse staffing daily export: title rows above an embedded header row
DIVERSE_DAILY = ReportSchema(
    report_type="diversedaily",
    table="diverse_daily_reports",
    description="Diverse staffing daily hours, rates and cost",
    expected_headers=("EMPLOYEE NAME", "EMPLOYEE PAYROLL ID", "LAST NAME"),
    columns=(
        ColumnSpec("employee_payroll_id", "EMPLOYEE PAYROLL ID"),
        ColumnSpec("employee_name", "EMPLOYEE NAME"),
        ColumnSpec("first_name", "FIRST NAME"),
        ColumnSpec("last_name", "LAST NAME"),
        ColumnSpec("pay_rate", "PAY RATE", NUMBER),
        ColumnSpec("bill_rate", "BILL RATE", NUMBER),
        ColumnSpec("department_name", "DEPARTMENT NAME"),
        ColumnSpec("reg", "REG", NUMBER),
        ColumnSpec("ot1", "OT1", NUMBER),
        ColumnSpec("ot2", "OT2", NUMBER),
        ColumnSpec("vac", "VAC", NUMBER),
        ColumnSpec("hol", "HOL", NUMBER),
        ColumnSpec("sic", "SIC", NUMBER),
        ColumnSpec("oth", "OTH", NUMBER),
        ColumnSpec("total", "TOTAL", NUMBER),
        ColumnSpec("date", "DATE", FLEX_DATE),
        ColumnSpec("usd_cost", "USD COST", NUMBER),
    ),
    identifying_fields=("uploaded_date", "employee_payroll_id"),
    mutable_fields=(
        "employee_name",
        "first_name",
        "last_name",
        "pay_rate",
        "bill_rate",
        "department_name",
        "reg",
        "ot1",
        "ot2",
        "vac",
        "hol",
        "sic",
        "oth",
        "total",
        "date",
        "usd_cost",
        "uploaded_by",
    ),
    header_source=HeaderSource.VALUES,
)

# Payroll totals by business unit / department / pay code for one day
EMPLOYEE_TOTAL = ReportSchema(
    report_type="employeeTotal",
    table="employee_reports",
    description="Daily payroll totals by business unit and pay code",
    expected_headers=(
        "Business Unit Description",
        "Business Unit Code",
        "Home Department Code",
        "Worked Department",
        "Pay Code [Timecard]",
        "Dollars",
        "Hours",
        "Shift",
    ),
    columns=(
        ColumnSpec("business_unit_description", "Business Unit Description"),
        ColumnSpec("business_unit_code", "Business Unit Code"),
        ColumnSpec("home_department_code", "Home Department Code"),
        ColumnSpec("worked_department", "Worked Department"),
        ColumnSpec("pay_code_timecard", "Pay Code [Timecard]"),
        ColumnSpec("dollars", "Dollars", NUMBER),
        ColumnSpec("hours", "Hours", NUMBER),
        ColumnSpec("shift", "Shift"),
    ),
    identifying_fields=("uploaded_date", "line_number"),
    mutable_fields=(
        "business_unit_description",
        "business_unit_code",
        "home_department_code",
        "worked_department",
        "pay_code_timecard",
        "dollars",
        "hours",
        "shift",
        "uploaded_by",
    ),
    case_sensitive=True,
    write_mode=WriteMode.REPLACE_PERIOD,
    row_ordinal_field="line_number",
    stop_on_footer=False,
)

HORIZON_NUMERIC_COLUMNS = (
    ("total_scheduled_lumpers", "Total Scheduled Lumpers"),
    ("total_present_lumpers", "Total Present Lumpers"),
    ("late", "Late"),
    ("no_work", "No Work"),
    ("no_call_no_show", "No Call/ No Show"),
    ("called_out", "Called Out"),
    ("early_dismissal", "Early Dismissal"),
    ("new_starters_today", "New Starters Today"),
    ("terminations", "Terminations"),
    ("resignations", "Resignations"),
    ("inbound_scheduled", "Inbound Scheduled"),
    ("inbound_completed", "Inbound Completed"),
    ("total_cases_unloaded", "Total Cases Unloaded"),
    ("total_cases_closed_for_the_day", "Total Cases Closed For The Day"),
    (
        "total_containers_carried_over_to_the_next_day",
        "Total Containers Carried Over To The Next Day",
    ),
    ("total_hours_for_the_day", "Total Hours For The Day"),
    ("cpm_for_the_day", "CPM For The Day"),
    ("number_of_skus", "Number Of SKUs"),
    ("near_misses", "Near Misses"),
    ("incidents", "Incidents"),
    ("accidents", "Accidents"),
)

# Warehouse shift summary; a numeric Date cell dates the row itself
HORIZON = ReportSchema(
    report_type="horizon",
    table="horizon_reports",
    description="Warehouse shift attendance and throughput",
    expected_headers=("Date", "Shift") + tuple(label for _, label in HORIZON_NUMERIC_COLUMNS),
    columns=(
        ColumnSpec("uploaded_date", "Date", SERIAL_DATE),
        ColumnSpec("shift", "Shift"),
    )
    + tuple(ColumnSpec(name, label, NUMBER) for name, label in HORIZON_NUMERIC_COLUMNS),
    identifying_fields=("uploaded_date", "shift"),
    mutable_fields=tuple(name for name, _ in HORIZON_NUMERIC_COLUMNS) + ("uploaded_by",),
    stop_on_footer=False,
)

EMPLOYEE_WEEKLY_ALIASES = {
    "PAY CODE [TIMECARD]": "PAY CODE",
    "HOME DEPARTMENT CODE [TIMECARD]": "HOME DEPARTMENT CODE",
}

# First revision: one row per employee and pay code, keyed by legal name
EMPLOYEE_WEEKLY_V1 = ReportSchema(
    report_type="employee_weekly",
    version=1,
    table="employee_weekly_by_name",
    description="Weekly payroll by employee legal name (legacy key)",
    expected_headers=(
        "LEGAL LAST NAME",
        "LEGAL FIRST NAME",
        "BUSINESS UNIT CODE",
        "HOME DEPARTMENT CODE",
        "PAY CODE",
        "DOLLARS",
        "HOURS",
    ),
    columns=(
        ColumnSpec("legal_last_name", "LEGAL LAST NAME"),
        ColumnSpec("legal_first_name", "LEGAL FIRST NAME"),
        ColumnSpec("full_name", "FULL NAME"),
        ColumnSpec("business_unit_description", "BUSINESS UNIT DESCRIPTION"),
        ColumnSpec("business_unit_code", "BUSINESS UNIT CODE"),
        ColumnSpec("home_department_code", "HOME DEPARTMENT CODE"),
        ColumnSpec("pay_code", "PAY CODE"),
        ColumnSpec("dollars", "DOLLARS", NUMBER),
        ColumnSpec("hours", "HOURS", NUMBER),
        ColumnSpec("shift", "SHIFT"),
    ),
    identifying_fields=(
        "start_date",
        "end_date",
        "legal_last_name",
        "legal_first_name",
        "pay_code",
        "business_unit_code",
        "home_department_code",
    ),
    mutable_fields=("full_name", "business_unit_description", "dollars", "hours", "shift", "uploaded_by"),
    aliases=EMPLOYEE_WEEKLY_ALIASES,
    period_kind=PeriodKind.RANGE,
)

# Current revision: aggregated lines, the week is replaced wholesale
EMPLOYEE_WEEKLY_V2 = ReportSchema(
    report_type="employee_weekly",
    version=2,
    table="employee_weekly",
    description="Weekly payroll totals by business unit and pay code",
    expected_headers=(
        "BUSINESS UNIT DESCRIPTION",
        "BUSINESS UNIT CODE",
        "HOME DEPARTMENT CODE",
        "PAY CODE",
        "DOLLARS",
        "HOURS",
        "SHIFT",
    ),
    columns=(
        ColumnSpec("business_unit_description", "BUSINESS UNIT DESCRIPTION"),
        ColumnSpec("business_unit_code", "BUSINESS UNIT CODE"),
        ColumnSpec("home_department_code", "HOME DEPARTMENT CODE"),
        ColumnSpec("pay_code", "PAY CODE"),
        ColumnSpec("dollars", "DOLLARS", NUMBER),
        ColumnSpec("hours", "HOURS", NUMBER),
        ColumnSpec("shift", "SHIFT"),
    ),
    identifying_fields=("start_date", "end_date", "line_number"),
    mutable_fields=(
        "business_unit_description",
        "business_unit_code",
        "home_department_code",
        "pay_code",
        "dollars",
        "hours",
        "shift",
        "uploaded_by",
    ),
    aliases=EMPLOYEE_WEEKLY_ALIASES,
    period_kind=PeriodKind.RANGE,
    write_mode=WriteMode.REPLACE_PERIOD,
    row_ordinal_field="line_number",
    stop_on_footer=False,
)

DIVERSE_WEEKLY = ReportSchema(
    report_type="diverse_weekly",
    table="diverse_weekly_reports",
    description="Diverse staffing weekly hours and bill rate",
    expected_headers=(
        "EMPLOYEE NAME",
        "EMPLOYEE PAYROLL ID",
        "FIRST NAME",
        "LAST NAME",
        "DEPARTMENT NAME",
        "REG",
        "OT1",
        "TOTAL",
        "BILL RATE",
    ),
    columns=(
        ColumnSpec("employee_payroll_id", "EMPLOYEE PAYROLL ID"),
        ColumnSpec("employee_name", "EMPLOYEE NAME"),
        ColumnSpec("first_name", "FIRST NAME"),
        ColumnSpec("last_name", "LAST NAME"),
        ColumnSpec("department_name", "DEPARTMENT NAME"),
        ColumnSpec("reg", "REG", NUMBER),
        ColumnSpec("ot1", "OT1", NUMBER),
        ColumnSpec("total", "TOTAL", NUMBER),
        ColumnSpec("bill_rate", "BILL RATE", NUMBER),
    ),
    identifying_fields=("employee_payroll_id", "start_date", "end_date"),
    mutable_fields=(
        "employee_name",
        "first_name",
        "last_name",
        "department_name",
        "reg",
        "ot1",
        "total",
        "bill_rate",
        "uploaded_by",
    ),
    match_policy=HeaderMatchPolicy.EXACT,
    order_significant=True,
    period_kind=PeriodKind.RANGE,
)

HIRE_DYNAMICS_COLUMNS = (
    ColumnSpec("employee_id", "Employee"),
    ColumnSpec("department_g3", "Department (G3)"),
    ColumnSpec("work_date", "Work Date", SERIAL_DATE),
    ColumnSpec("approval_status", "Approval Status"),
    ColumnSpec("time_dcomp", "TIME.DCOMP"),
    ColumnSpec("date", "Date", SERIAL_DATE),
    ColumnSpec("paycode", "Paycode"),
    ColumnSpec("in_time", "IN"),
    ColumnSpec("in_ex", "In Ex"),
    ColumnSpec("out_time", "OUT"),
    ColumnSpec("out_ex", "Out Ex"),
    ColumnSpec("reason", "Reason"),
    ColumnSpec("department", "Department"),
    ColumnSpec("shift_pay_ex", "Sh/Pay Ex"),
    ColumnSpec("reg_hrs", "Reg Hrs", NUMBER),
    ColumnSpec("ot", "OT", NUMBER),
    ColumnSpec("dt", "DT", NUMBER),
    ColumnSpec("daily_total", "Daily Total", NUMBER),
    ColumnSpec("count", "COUNT", NUMBER),
)

# Punch-level timecard export from the Hire Dynamics portal
HIRE_DYNAMICS_WEEKLY = ReportSchema(
    report_type="hire_dynamics_weekly",
    table="hire_dynamics_weekly",
    description="Weekly timecard punches per employee and work date",
    expected_headers=tuple(spec.label for spec in HIRE_DYNAMICS_COLUMNS),
    columns=HIRE_DYNAMICS_COLUMNS,
    identifying_fields=("employee_id", "start_date", "end_date", "work_date"),
    mutable_fields=tuple(
        spec.name
        for spec in HIRE_DYNAMICS_COLUMNS
        if spec.name not in ("employee_id", "work_date")
    )
    + ("uploaded_by",),
    period_kind=PeriodKind.RANGE,
)

FREIGHT_BREAKERS_WEEKLY = ReportSchema(
    report_type="freight_breakers_weekly",
    table="freight_breakers_weekly",
    description="Weekly container unload piecework",
    expected_headers=(
        "Date",
        "Employee",
        "Job",
        "Container",
        "QTY",
        "SKUCount",
        "Door",
        "Type",
        "Units",
        "Rate",
        "Amount",
    ),
    columns=(
        ColumnSpec("date", "Date", SERIAL_DATE),
        ColumnSpec("employee", "Employee"),
        ColumnSpec("job", "Job"),
        ColumnSpec("container", "Container"),
        ColumnSpec("qty", "QTY", NUMBER),
        ColumnSpec("sku_count", "SKUCount", NUMBER),
        ColumnSpec("door", "Door"),
        ColumnSpec("type", "Type"),
        ColumnSpec("units", "Units", NUMBER),
        ColumnSpec("rate", "Rate", NUMBER),
        ColumnSpec("amount", "Amount", NUMBER),
    ),
    identifying_fields=("start_date", "end_date", "date", "employee", "job", "container"),
    mutable_fields=("qty", "sku_count", "door", "type", "units", "rate", "amount", "uploaded_by"),
    period_kind=PeriodKind.RANGE,
)

BUILTIN_SCHEMAS: Tuple[ReportSchema, ...] = (
    LABOR,
    DIVERSE_DAILY,
    EMPLOYEE_TOTAL,
    HORIZON,
    EMPLOYEE_WEEKLY_V1,
    EMPLOYEE_WEEKLY_V2,
    DIVERSE_WEEKLY,
    HIRE_DYNAMICS_WEEKLY,
    FREIGHT_BREAKERS_WEEKLY,
)


def default_registry() -> SchemaRegistry:
    """Fresh registry holding every built-in report type."""
    return SchemaRegistry(BUILTIN_SCHEMAS)
