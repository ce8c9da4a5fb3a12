"""
tests/conftest.py

Pytest configuration and shared fixtures for the Reportflow test suite.

Every test runs against in-process storage doubles (see tests/helpers.py);
nothing here needs a PostgreSQL server. Tests that do talk to a real
database are marked ``integration`` and skip unless DATABASE_URL is set.
"""

from __future__ import annotations

import logging
import os
from typing import Generator

import pytest

from reportflow.core.config import reset_settings
from reportflow.core.logging import ColoredConsoleFormatter, StructuredJsonFormatter, clear_context
from reportflow.ingest.coercion import CoercionRule
from reportflow.ingest.orchestrator import IngestionService
from reportflow.ingest.registry import SchemaRegistry
from reportflow.ingest.schema import ColumnSpec, HeaderMatchPolicy, PeriodKind, ReportSchema
from reportflow.ingest.sessions import UploadSessionStore
from tests.helpers import InMemoryStorage, SqliteStorage

# =============================================================================
# GLOBAL TEST CONFIGURATION
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests when no database is configured."""
    if os.environ.get("DATABASE_URL"):
        return
    skip = pytest.mark.skip(reason="DATABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Reset the settings cache before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Drop handlers installed by configure_logging (create_app, CLI main)."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, (StructuredJsonFormatter, ColoredConsoleFormatter)):
            root.removeHandler(handler)
    root.setLevel(level)
    clear_context()


# =============================================================================
# SCHEMAS
# =============================================================================


HOURS = ReportSchema(
    report_type="hours",
    table="hours_reports",
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

SHIFTS = ReportSchema(
    report_type="shifts",
    table="shift_reports",
    expected_headers=("Shift", "Employee", "Hours"),
    columns=(
        ColumnSpec("shift", "Shift"),
        ColumnSpec("employee", "Employee"),
        ColumnSpec("hours", "Hours", CoercionRule.NUMERIC_OR_ZERO),
        ColumnSpec("work_date", "Work Date", CoercionRule.DATE_STRICT_ISO),
    ),
    identifying_fields=("start_date", "end_date", "employee"),
    mutable_fields=("shift", "hours", "work_date"),
    match_policy=HeaderMatchPolicy.SUPERSET,
    period_kind=PeriodKind.RANGE,
)


@pytest.fixture
def hours_schema() -> ReportSchema:
    return HOURS


@pytest.fixture
def shifts_schema() -> ReportSchema:
    return SHIFTS


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry([HOURS, SHIFTS])


# =============================================================================
# STORAGE / SERVICE
# =============================================================================


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def sqlite_storage() -> Generator[SqliteStorage, None, None]:
    storage = SqliteStorage()
    yield storage
    storage.close()


@pytest.fixture
def session_store() -> UploadSessionStore:
    return UploadSessionStore(ttl_seconds=60)


@pytest.fixture
def service(
    memory_storage: InMemoryStorage,
    registry: SchemaRegistry,
    session_store: UploadSessionStore,
) -> IngestionService:
    return IngestionService(
        storage=memory_storage,
        registry=registry,
        sessions=session_store,
        batch_size=2,
    )
