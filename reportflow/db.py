# reportflow/db.py
"""
Reportflow Engine - Database Layer

Owns the process-wide psycopg AsyncConnectionPool used by PsycopgStorage.

The pool is opened once at startup with bounded, jittered retries. Opening
never raises: a database that is down or misconfigured leaves the service up
in degraded mode, uploads fail with a storage error and /readyz reports the
last failure until the pool comes up (get_pool() retries on first use).
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Iterator, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from loguru import logger
from psycopg_pool import AsyncConnectionPool

from . import __version__
from .core.config import Settings, get_settings

CONNECT_ATTEMPTS = 5
CONNECT_BUDGET_SECONDS = 30.0
FIRST_BACKOFF_SECONDS = 1.0
READINESS_TIMEOUT_SECONDS = 2.0

# sslmode values weaker than "require"
_WEAK_SSLMODES = {"disable", "allow", "prefer"}


@dataclass
class PoolStatus:
    """What /readyz and the startup log know about the pool."""

    ready: bool = False
    attempts: int = 0
    last_error: Optional[str] = None
    opened_in_ms: Optional[float] = None
    last_ping_at: Optional[float] = None


_status = PoolStatus()
_pool: Optional[AsyncConnectionPool] = None


def get_pool_status() -> PoolStatus:
    return _status


# ---------------------------------------------------------------------------
# DSN helpers
# ---------------------------------------------------------------------------


def describe_dsn(dsn: str) -> dict[str, Optional[str]]:
    """Loggable parts of a DSN; the password is never included."""
    parsed = urlparse(dsn)
    options = dict(parse_qsl(parsed.query))
    return {
        "host": parsed.hostname,
        "port": str(parsed.port or 5432),
        "dbname": parsed.path.lstrip("/") or None,
        "user": parsed.username,
        "sslmode": options.get("sslmode", "default"),
    }


def require_ssl(dsn: str) -> str:
    """Return ``dsn`` with sslmode raised to ``require`` when weaker or unset."""
    parsed = urlparse(dsn)
    options = dict(parse_qsl(parsed.query))
    current = options.get("sslmode")
    if current is not None and current not in _WEAK_SSLMODES:
        return dsn
    if current is not None:
        logger.warning("sslmode={} upgraded to require", current)
    options["sslmode"] = "require"
    return urlunparse(parsed._replace(query=urlencode(options)))


def application_name() -> str:
    """pg_stat_activity tag, e.g. ``reportflow_v0_1_0``."""
    return "reportflow_v" + __version__.replace(".", "_").replace("-", "_")


def _backoff_delays(attempts: int) -> Iterator[float]:
    """Exponential delays (1s, 2s, 4s, ...) with up to 30% jitter."""
    for attempt in range(attempts - 1):
        base = FIRST_BACKOFF_SECONDS * 2**attempt
        yield base + random.uniform(0, base * 0.3)


async def _select_one(pool: AsyncConnectionPool) -> None:
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute("SELECT 1")
            row = await cur.fetchone()
    if not row or row[0] != 1:
        raise RuntimeError(f"SELECT 1 returned {row!r}")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def init_db_pool(settings: Settings | None = None) -> None:
    """
    Open the pool, retrying with backoff inside a fixed time budget.

    Never raises; on failure the pool stays None and the error is kept in
    get_pool_status() for the readiness probe.
    """
    global _pool

    if _pool is not None:
        return

    settings = settings or get_settings()
    dsn = settings.database_url
    if not dsn:
        _status.last_error = "DATABASE_URL not configured"
        logger.warning("No usable DATABASE_URL; database pool not opened")
        return

    if settings.DB_REQUIRE_SSL:
        dsn = require_ssl(dsn)
    logger.info("Opening database pool", **describe_dsn(dsn))

    started = time.monotonic()
    delays = _backoff_delays(CONNECT_ATTEMPTS)

    for attempt in range(1, CONNECT_ATTEMPTS + 1):
        _status.attempts = attempt
        pool = AsyncConnectionPool(
            dsn,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            kwargs={"application_name": application_name()},
            open=False,
        )
        try:
            await pool.open()
            await _select_one(pool)
        except Exception as exc:
            await pool.close()
            _status.ready = False
            _status.last_error = f"{type(exc).__name__}: {str(exc)[:200]}"
            logger.warning(
                "Database pool attempt {}/{} failed: {}", attempt, CONNECT_ATTEMPTS, _status.last_error
            )
        else:
            _pool = pool
            _status.ready = True
            _status.last_error = None
            _status.opened_in_ms = (time.monotonic() - started) * 1000
            _status.last_ping_at = time.monotonic()
            logger.info(
                "Database pool ready after {} attempt(s) ({:.0f}ms)", attempt, _status.opened_in_ms
            )
            return

        remaining = CONNECT_BUDGET_SECONDS - (time.monotonic() - started)
        delay = next(delays, None)
        if delay is None or remaining <= 0:
            break
        delay = min(delay, remaining)
        logger.info("Retrying database pool in {:.1f}s", delay)
        await asyncio.sleep(delay)

    logger.error(
        "Database pool unavailable after {} attempt(s) ({:.1f}s): {}; /readyz will return 503",
        _status.attempts,
        time.monotonic() - started,
        _status.last_error,
    )


async def close_db_pool() -> None:
    global _pool
    if _pool is None:
        return
    logger.info("Closing database pool")
    pool, _pool = _pool, None
    _status.ready = False
    await pool.close()


async def get_pool() -> Optional[AsyncConnectionPool]:
    """The shared pool, opened on first use when startup did not open it."""
    if _pool is None:
        await init_db_pool()
    return _pool


async def check_db_ready(timeout: float = READINESS_TIMEOUT_SECONDS) -> tuple[bool, str]:
    """
    SELECT 1 against the pool within ``timeout`` seconds.

    Returns:
        (ready, human-readable status)
    """
    pool = _pool
    if pool is None:
        return False, _status.last_error or "Pool not initialized"

    started = time.monotonic()
    try:
        await asyncio.wait_for(_select_one(pool), timeout=timeout)
    except asyncio.TimeoutError:
        _status.ready = False
        _status.last_error = f"SELECT 1 timed out after {timeout}s"
        return False, f"timeout ({timeout}s)"
    except Exception as exc:
        _status.ready = False
        _status.last_error = f"{type(exc).__name__}: {str(exc)[:100]}"
        return False, f"error: {type(exc).__name__}"

    _status.ready = True
    _status.last_error = None
    _status.last_ping_at = time.monotonic()
    return True, f"ok ({(time.monotonic() - started) * 1000:.0f}ms)"
