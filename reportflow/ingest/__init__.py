"""
Reportflow Engine - Report Ingestion

Header discovery, row normalization, chunk buffering and transactional
upsert for spreadsheet-exported reports.
"""

from .orchestrator import (
    IngestionOrchestrator,
    IngestionService,
    IngestOutcome,
    IngestStatus,
    parse_period,
)
from .registry import SchemaRegistry, default_registry
from .schema import (
    ColumnSpec,
    HeaderMatchPolicy,
    HeaderSource,
    Period,
    PeriodKind,
    ReportSchema,
    WriteMode,
)
from .coercion import CoercionRule
from .sessions import ChunkAssembler, ChunkInfo, UploadSessionStore

__all__ = [
    "ChunkAssembler",
    "ChunkInfo",
    "CoercionRule",
    "ColumnSpec",
    "HeaderMatchPolicy",
    "HeaderSource",
    "IngestOutcome",
    "IngestStatus",
    "IngestionOrchestrator",
    "IngestionService",
    "Period",
    "PeriodKind",
    "ReportSchema",
    "SchemaRegistry",
    "UploadSessionStore",
    "WriteMode",
    "default_registry",
    "parse_period",
]
