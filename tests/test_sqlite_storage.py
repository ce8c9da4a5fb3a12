"""
Tests that execute the generated SQL against sqlite3.

sqlite understands the same INSERT ... ON CONFLICT ... DO UPDATE and
CREATE TABLE ... UNIQUE forms as PostgreSQL, so these tests check the
rendered statements themselves rather than a test double's reading of them.
"""

from __future__ import annotations

import pytest

from reportflow.core.errors import StorageError
from reportflow.ingest.orchestrator import IngestionService
from reportflow.ingest.registry import default_registry
from reportflow.ingest.sessions import ChunkInfo
from reportflow.ingest.statements import build_create_table
from tests.helpers import SqliteStorage


async def _create(storage: SqliteStorage, service: IngestionService, report_type: str) -> None:
    async with storage.transaction() as unit:
        await unit.execute(build_create_table(service.schema(report_type)))


@pytest.fixture
def labor_rows() -> list:
    header = [
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
    ]
    return [
        ["Daily Labor Report"],
        header,
        ["Doe, Jane", "1st", "Receiving", "1/15/2024", "8", "$120.00", "15", "0", "0", "8", "$120.00"],
        ["Roe, Rick", "2nd", "Shipping", "1/15/2024", "9", "$144.00", "16", "1", "24", "10", "$168.00"],
        ["Doe, Jane", "1st", "Receiving", "1/15/2024", "10", "$150.00", "15", "0", "0", "10", "$150.00"],
        ["TOTAL", "", "", "", "27", "", "", "", "", "28", ""],
        ["Late, Larry", "1st", "Receiving", "1/15/2024", "4", "", "", "", "", "4", ""],
    ]


class TestSqliteIngestion:
    @pytest.mark.asyncio
    async def test_labor_upsert(self, sqlite_storage, labor_rows):
        service = IngestionService(storage=sqlite_storage)
        await _create(sqlite_storage, service, "labor")
        period = service.parse_period("labor", report_date="2024-01-15")

        outcome = await service.ingest("labor", labor_rows, "labor.xlsx", period, "jdoe")

        rows = sqlite_storage.rows("daily_reports", order_by="employee")
        assert [(r["employee"], r["reg_hrs"], r["reg_pay"]) for r in rows] == [
            ("Doe, Jane", 10, 150.0),
            ("Roe, Rick", 9, 144.0),
        ]
        assert rows[0]["uploaded_date"] == "2024-01-15 12:00:00"
        assert rows[0]["uploaded_by"] == "jdoe"
        assert outcome.footer_reached

    @pytest.mark.asyncio
    async def test_reingest_no_duplicates(self, sqlite_storage, labor_rows):
        service = IngestionService(storage=sqlite_storage)
        await _create(sqlite_storage, service, "labor")
        period = service.parse_period("labor", report_date="2024-01-15")

        await service.ingest("labor", labor_rows, "labor.xlsx", period, "jdoe")
        first = sqlite_storage.rows("daily_reports", order_by="employee")
        await service.ingest("labor", labor_rows, "labor.xlsx", period, "jdoe")
        second = sqlite_storage.rows("daily_reports", order_by="employee")

        strip = lambda rows: [{k: v for k, v in r.items() if k != "created_at"} for r in rows]  # noqa: E731
        assert strip(second) == strip(first)
        assert len(second) == 2

    @pytest.mark.asyncio
    async def test_chunked_matches_whole(self, labor_rows):
        whole = SqliteStorage()
        chunked = SqliteStorage()
        try:
            for storage in (whole, chunked):
                service = IngestionService(storage=storage, batch_size=1)
                await _create(storage, service, "labor")
            period = service.parse_period("labor", report_date="2024-01-15")

            await IngestionService(storage=whole).ingest(
                "labor", labor_rows, "labor.xlsx", period, "jdoe"
            )
            service = IngestionService(storage=chunked, batch_size=1)
            chunks = [labor_rows[0:2], labor_rows[2:4], labor_rows[4:]]
            for i, rows in enumerate(chunks):
                await service.ingest(
                    "labor", rows, "labor.xlsx", period, "jdoe", chunk=ChunkInfo(i, 3, i == 2)
                )

            columns = "employee, reg_hrs, total_pay, uploaded_date, uploaded_by"
            query = f"SELECT {columns} FROM daily_reports ORDER BY employee"
            assert [tuple(r) for r in chunked.conn.execute(query)] == [
                tuple(r) for r in whole.conn.execute(query)
            ]
        finally:
            whole.close()
            chunked.close()

    @pytest.mark.asyncio
    async def test_failed_batch_rolls_back(self, labor_rows):
        storage = SqliteStorage()
        try:
            service = IngestionService(storage=storage, batch_size=1)
            await _create(storage, service, "labor")
            storage.fail_on_execute = storage.statements + 2
            period = service.parse_period("labor", report_date="2024-01-15")

            with pytest.raises(StorageError):
                await service.ingest("labor", labor_rows, "labor.xlsx", period, "jdoe")

            assert storage.rows("daily_reports") == []
        finally:
            storage.close()

    @pytest.mark.asyncio
    async def test_replace_period(self, sqlite_storage):
        service = IngestionService(storage=sqlite_storage, registry=default_registry())
        await _create(sqlite_storage, service, "employee_weekly")
        period = service.parse_period("employee_weekly", start_date="2024-01-08", end_date="2024-01-14")
        header = [
            "Business Unit Description",
            "Business Unit Code",
            "Home Department Code [Timecard]",
            "Pay Code [Timecard]",
            "Dollars",
            "Hours",
            "Shift",
        ]
        first = [header, ["Unit", "100", "D1", "REG", "1,000", "40", "1"], ["Unit", "100", "D1", "OT", "150", "5", "1"]]
        second = [header, ["Unit", "100", "D1", "REG", "900", "36", "1"]]

        await service.ingest("employee_weekly", first, "w.xlsx", period, "jdoe")
        outcome = await service.ingest("employee_weekly", second, "w.xlsx", period, "jdoe")

        rows = sqlite_storage.rows("employee_weekly")
        assert [(r["line_number"], r["pay_code"], r["dollars"]) for r in rows] == [(1, "REG", 900)]
        assert outcome.rows_replaced == 2
