"""
Reportflow Engine - Transactional Storage

The ingestion engine only needs one capability from a relational store: run
a sequence of parameterized statements inside a single transaction that
commits on success and rolls back on any exception.

    class StorageConnection(Protocol):
        placeholder: str
        def transaction(self) -> AsyncContextManager[StorageUnit]: ...

    class StorageUnit(Protocol):
        async def execute(self, statement: Statement) -> int: ...

PsycopgStorage implements it on the shared psycopg async pool.

Usage:
    storage = PsycopgStorage()

    async with storage.transaction() as unit:
        await unit.execute(delete_stmt)
        await unit.execute(upsert_stmt)
        # Commits automatically if no exception
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncContextManager,
    AsyncGenerator,
    Awaitable,
    Callable,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

import psycopg
from psycopg_pool import AsyncConnectionPool

from reportflow.core.errors import StorageError
from reportflow.core.logging import get_logger

logger = get_logger(__name__)


class Statement(Protocol):
    """A rendered SQL statement plus its positional parameters."""

    @property
    def sql(self) -> str: ...

    @property
    def params(self) -> Sequence[Any]: ...


class StorageUnit(Protocol):
    async def execute(self, statement: Statement) -> int: ...


@runtime_checkable
class StorageConnection(Protocol):
    placeholder: str

    def transaction(self) -> AsyncContextManager[StorageUnit]: ...


# =============================================================================
# psycopg adapter
# =============================================================================


class _PsycopgUnit:
    """Executes statements on one connection inside an open transaction."""

    def __init__(self, conn: psycopg.AsyncConnection):
        self._conn = conn

    async def execute(self, statement: Statement) -> int:
        async with self._conn.cursor() as cur:
            await cur.execute(statement.sql, list(statement.params))
            return max(cur.rowcount, 0)


class PsycopgStorage:
    """
    StorageConnection backed by the psycopg async connection pool.

    Args:
        pool_getter: Coroutine returning the pool (defaults to reportflow.db.get_pool)
    """

    placeholder = "%s"

    def __init__(
        self,
        pool_getter: Optional[Callable[[], Awaitable[Optional[AsyncConnectionPool]]]] = None,
    ):
        if pool_getter is None:
            from reportflow.db import get_pool

            pool_getter = get_pool
        self._pool_getter = pool_getter

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[_PsycopgUnit, None]:
        """
        Async context manager for one database transaction.

        Commits on success, rolls back on exception.

        Raises:
            StorageError: If the pool is unavailable
        """
        pool = await self._pool_getter()
        if pool is None:
            raise StorageError("Database connection pool is not initialized")

        async with pool.connection() as conn:
            await conn.set_autocommit(False)

            try:
                yield _PsycopgUnit(conn)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
