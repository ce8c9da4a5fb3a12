"""
tests/helpers.py

Storage doubles for exercising the ingestion engine without PostgreSQL.

InMemoryStorage interprets the engine's statement objects directly and keeps
per-table rows keyed by the conflict columns. SqliteStorage executes the
rendered SQL against an in-memory sqlite3 database, so the generated
INSERT ... ON CONFLICT and DELETE statements run for real.
"""

from __future__ import annotations

import copy
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from reportflow.ingest.statements import DDLStatement, DeleteStatement, UpsertStatement

Rows = Dict[Tuple[Any, ...], Dict[str, Any]]


class InjectedFailure(RuntimeError):
    """Raised by a storage double when told to fail."""


class _MemoryUnit:
    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage

    async def execute(self, statement: Any) -> int:
        storage = self._storage
        storage.executed.append(statement)
        if storage.fail_on_execute is not None and len(storage.executed) == storage.fail_on_execute:
            raise InjectedFailure(f"injected failure on statement {storage.fail_on_execute}")

        if isinstance(statement, UpsertStatement):
            return storage._apply_upsert(statement)
        if isinstance(statement, DeleteStatement):
            return storage._apply_delete(statement)
        if isinstance(statement, DDLStatement):
            storage.tables.setdefault(statement.table, {})
            return 0
        raise TypeError(f"Unsupported statement: {type(statement).__name__}")


class InMemoryStorage:
    """
    StorageConnection that stores rows in dictionaries.

    Args:
        fail_on_execute: 1-based statement number (counted across the
            storage's lifetime) that raises InjectedFailure
    """

    placeholder = "%s"

    def __init__(self, fail_on_execute: Optional[int] = None):
        self.tables: Dict[str, Rows] = {}
        self.executed: List[Any] = []
        self.fail_on_execute = fail_on_execute
        self.transactions = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[_MemoryUnit, None]:
        self.transactions += 1
        snapshot = copy.deepcopy(self.tables)
        try:
            yield _MemoryUnit(self)
        except Exception:
            self.tables = snapshot
            self.rollbacks += 1
            raise

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Stored rows of ``table`` in insertion order."""
        return [dict(row) for row in self.tables.get(table, {}).values()]

    def _apply_upsert(self, statement: UpsertStatement) -> int:
        table = self.tables.setdefault(statement.table, {})
        for values in statement.rows:
            row = dict(zip(statement.columns, values))
            key = tuple(row[name] for name in statement.conflict_columns)
            existing = table.get(key)
            if existing is None:
                table[key] = row
            else:
                for name in statement.update_columns:
                    existing[name] = row[name]
        return len(statement.rows)

    def _apply_delete(self, statement: DeleteStatement) -> int:
        table = self.tables.get(statement.table, {})
        doomed = [
            key
            for key, row in table.items()
            if all(row.get(name) == value for name, value in statement.where)
        ]
        for key in doomed:
            del table[key]
        return len(doomed)


# =============================================================================
# sqlite3
# =============================================================================


def _adapt_datetime(value: datetime) -> str:
    return value.isoformat(sep=" ")


sqlite3.register_adapter(datetime, _adapt_datetime)


class _SqliteUnit:
    def __init__(self, storage: "SqliteStorage"):
        self._storage = storage

    async def execute(self, statement: Any) -> int:
        storage = self._storage
        storage.statements += 1
        if storage.fail_on_execute is not None and storage.statements == storage.fail_on_execute:
            raise InjectedFailure(f"injected failure on statement {storage.fail_on_execute}")
        cursor = storage.conn.execute(statement.sql, list(statement.params))
        return max(cursor.rowcount, 0)


class SqliteStorage:
    """StorageConnection over an in-memory sqlite3 database ("?" placeholders)."""

    placeholder = "?"

    def __init__(self, fail_on_execute: Optional[int] = None):
        self.conn = sqlite3.connect(":memory:", isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.fail_on_execute = fail_on_execute
        self.statements = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[_SqliteUnit, None]:
        self.conn.execute("BEGIN")
        try:
            yield _SqliteUnit(self)
        except Exception:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def rows(self, table: str, order_by: str = "rowid") -> List[Dict[str, Any]]:
        cursor = self.conn.execute(f"SELECT * FROM {table} ORDER BY {order_by}")
        return [dict(row) for row in cursor.fetchall()]

    def close(self) -> None:
        self.conn.close()
