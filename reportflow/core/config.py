"""
Reportflow Engine - Core Config

Settings are read from the process environment only; auto-loading of .env
files is disabled. The database DSN resolves from DATABASE_URL first, then
from the discrete PG_DB_* variables used by older deployments.

A missing or malformed DSN never crashes the process: the service boots in
degraded mode, /health answers 200 and /readyz answers 503 until fixed.

Usage:
    from reportflow.core.config import get_settings

    settings = get_settings()
    batch_size = settings.INGEST_BATCH_SIZE
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal
from urllib.parse import quote, urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings.

    Does NOT auto-load any .env file. All variables must be present in
    os.environ before instantiation.
    """

    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================

    DATABASE_URL: str = Field(
        default="",
        description="Primary Postgres connection string (preferred)",
    )

    # Discrete connection parameters (fallback when DATABASE_URL is unset)
    PG_DB_HOST: str | None = Field(default=None)
    PG_DB_PORT: int = Field(default=5432)
    PG_DB_USER: str | None = Field(default=None)
    PG_DB_PASSWORD: str | None = Field(default=None)
    PG_DB_NAME: str | None = Field(default=None)

    DB_POOL_MIN_SIZE: int = Field(default=1, ge=0)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)
    DB_REQUIRE_SSL: bool = Field(
        default=False,
        description="Upgrade sslmode to 'require' when building the pool",
    )

    # =========================================================================
    # ENVIRONMENT CONTROL
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit JSON log lines; colored console output when false",
    )

    # =========================================================================
    # INGESTION
    # =========================================================================

    INGEST_BATCH_SIZE: int = Field(
        default=1000,
        ge=1,
        description="Rows per INSERT ... ON CONFLICT statement",
    )
    UPLOAD_SESSION_TTL_SECONDS: float = Field(
        default=1800.0,
        gt=0,
        description="Idle time after which a chunked upload session is reclaimed",
    )
    UPLOAD_SESSION_REAP_INTERVAL_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the background session reaper",
    )

    # =========================================================================
    # HTTP SERVER
    # =========================================================================

    REPORTFLOW_CORS_ORIGINS: str | None = Field(default=None)
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3500)

    # =========================================================================
    # VALIDATION - DEGRADED MODE
    # =========================================================================

    @model_validator(mode="after")
    def _warn_on_missing_database(self) -> "Settings":
        """
        Log a warning when no usable DSN is configured.

        The service keeps booting; database operations fail until fixed.
        """
        dsn = self._resolve_database_url()
        if not dsn:
            logger.warning(
                "DATABASE_URL not configured - entering DEGRADED MODE "
                "(set DATABASE_URL or PG_DB_HOST/PG_DB_USER/PG_DB_NAME)"
            )
        elif not dsn.startswith(("postgresql://", "postgres://")):
            logger.warning(
                "DATABASE_URL has invalid format - entering DEGRADED MODE "
                f"(expected postgresql://..., got {dsn[:12]}...)"
            )
        if self.DB_POOL_MIN_SIZE > self.DB_POOL_MAX_SIZE:
            raise ValueError("DB_POOL_MIN_SIZE cannot exceed DB_POOL_MAX_SIZE")
        return self

    def _resolve_database_url(self) -> str | None:
        """
        Resolve the effective database URL.

        Resolution Order:
        1. DATABASE_URL
        2. postgresql:// URL assembled from PG_DB_HOST, PG_DB_PORT,
           PG_DB_USER, PG_DB_PASSWORD, PG_DB_NAME
        3. None (degraded mode)
        """
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL.strip()

        if self.PG_DB_HOST and self.PG_DB_USER and self.PG_DB_NAME:
            credentials = quote(self.PG_DB_USER, safe="")
            if self.PG_DB_PASSWORD:
                credentials += ":" + quote(self.PG_DB_PASSWORD, safe="")
            return (
                f"postgresql://{credentials}@{self.PG_DB_HOST}:{self.PG_DB_PORT}"
                f"/{self.PG_DB_NAME}"
            )

        return None

    @staticmethod
    def _extract_db_host(db_url: str) -> str | None:
        """Extract hostname from database URL."""
        try:
            return urlparse(db_url).hostname
        except ValueError:
            return None

    # =========================================================================
    # PROPERTY ALIASES
    # =========================================================================

    @property
    def database_url(self) -> str:
        """Effective DSN, or an empty string when degraded."""
        dsn = self._resolve_database_url() or ""
        if not dsn.startswith(("postgresql://", "postgres://")):
            return ""
        return dsn

    @property
    def is_db_configured(self) -> bool:
        return bool(self.database_url)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "dev"

    @property
    def cors_allowed_origins(self) -> list[str]:
        """
        Parse REPORTFLOW_CORS_ORIGINS into a list.

        Missing or empty means [] (deny all).
        """
        if self.REPORTFLOW_CORS_ORIGINS:
            raw = self.REPORTFLOW_CORS_ORIGINS.replace(",", " ")
            return [o.strip().rstrip("/") for o in raw.split() if o.strip().startswith("http")]
        return []


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()  # type: ignore[call-arg]


def reset_settings() -> None:
    """Clear the cached settings (for testing or environment switch)."""
    get_settings.cache_clear()


def log_startup_diagnostics(service_name: str = "Reportflow") -> None:
    """Log the effective configuration (never the password)."""
    settings = get_settings()
    db_host = (
        Settings._extract_db_host(settings.database_url)
        if settings.database_url
        else "not_configured"
    )

    logger.info(f"{service_name} startup diagnostics")
    logger.info(f"  ENVIRONMENT:       {settings.ENVIRONMENT}")
    logger.info(f"  DB Host:           {db_host}")
    logger.info(f"  LOG_LEVEL:         {settings.LOG_LEVEL}")
    logger.info(f"  INGEST_BATCH_SIZE: {settings.INGEST_BATCH_SIZE}")
    logger.info(f"  SESSION TTL:       {settings.UPLOAD_SESSION_TTL_SECONDS:.0f}s")


__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "log_startup_diagnostics",
]
