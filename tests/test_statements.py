"""
Tests for reportflow/ingest/statements.py - SQL rendering.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

import pytest

from reportflow.ingest.normalizer import NormalizedRecord
from reportflow.ingest.registry import EMPLOYEE_WEEKLY_V2
from reportflow.ingest.statements import build_create_table, build_delete_period, build_upsert

DAY = datetime(2024, 1, 15, 12)


def _record(employee: str, hours: float) -> NormalizedRecord:
    return NormalizedRecord(
        values={
            "uploaded_date": DAY,
            "employee": employee,
            "date": DAY,
            "reg_hrs": hours,
            "uploaded_by": "jdoe",
        },
        row_number=1,
    )


class TestUpsertStatement:
    def test_renders_multi_row_upsert(self, hours_schema):
        statement = build_upsert(hours_schema, [_record("A", 8), _record("B", 9)])
        assert statement.sql == (
            "INSERT INTO hours_reports (uploaded_date, employee, date, reg_hrs, uploaded_by)\n"
            "VALUES\n"
            "    (%s, %s, %s, %s, %s),\n"
            "    (%s, %s, %s, %s, %s)\n"
            "ON CONFLICT (uploaded_date, employee) DO UPDATE SET "
            "date = EXCLUDED.date, reg_hrs = EXCLUDED.reg_hrs, uploaded_by = EXCLUDED.uploaded_by"
        )
        assert statement.params == [DAY, "A", DAY, 8, "jdoe", DAY, "B", DAY, 9, "jdoe"]

    def test_placeholder_override(self, hours_schema):
        statement = build_upsert(hours_schema, [_record("A", 8)], placeholder="?")
        assert "(?, ?, ?, ?, ?)" in statement.sql
        assert "%s" not in statement.sql

    def test_plain_mappings_accepted(self, hours_schema):
        statement = build_upsert(hours_schema, [{"employee": "A", "reg_hrs": 1}])
        assert statement.rows == ((None, "A", None, 1, None),)

    def test_no_mutable_fields_does_nothing(self, hours_schema):
        frozen = replace(hours_schema, mutable_fields=())
        statement = build_upsert(frozen, [_record("A", 8)])
        assert statement.sql.endswith("ON CONFLICT (uploaded_date, employee) DO NOTHING")


class TestDeleteStatement:
    def test_deletes_period(self):
        end = datetime(2024, 1, 14, 12)
        start = datetime(2024, 1, 8, 12)
        statement = build_delete_period(
            EMPLOYEE_WEEKLY_V2, {"start_date": start, "end_date": end}
        )
        assert statement.sql == (
            "DELETE FROM employee_weekly WHERE start_date = %s AND end_date = %s"
        )
        assert statement.params == [start, end]

    def test_upsert_schema_refused(self, hours_schema):
        with pytest.raises(ValueError, match="does not replace by period"):
            build_delete_period(hours_schema, {"uploaded_date": DAY})


class TestCreateTable:
    def test_ddl(self, hours_schema):
        statement = build_create_table(hours_schema)
        assert statement.sql == (
            "CREATE TABLE IF NOT EXISTS hours_reports (\n"
            "    uploaded_date TIMESTAMP NOT NULL,\n"
            "    employee TEXT NOT NULL,\n"
            "    date TIMESTAMP,\n"
            "    reg_hrs DOUBLE PRECISION,\n"
            "    uploaded_by TEXT,\n"
            "    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,\n"
            "    CONSTRAINT uq_hours_reports UNIQUE (uploaded_date, employee)\n"
            ")"
        )
        assert statement.params == ()

    def test_ordinal_column_type(self):
        sql = build_create_table(EMPLOYEE_WEEKLY_V2).sql
        assert "line_number INTEGER NOT NULL" in sql
        assert "UNIQUE (start_date, end_date, line_number)" in sql
