"""
reportflow/ingest/orchestrator.py
=================================

Entry points of the ingestion engine.

IngestionOrchestrator runs one schema's pipeline:

    rows ─► HeaderResolver ─► RowNormalizer ─► ChunkAssembler ─► UpsertBatcher

IngestionService routes a report-type tag to a cached orchestrator and
shares one upload session store across all report types.

Usage:
    service = IngestionService(storage=PsycopgStorage())
    period = service.parse_period("labor", report_date="2024-01-15")
    outcome = await service.ingest("labor", rows, "labor_0115.xlsx", period, "jdoe")
    print(outcome.summary())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from reportflow.core.errors import ValidationError
from reportflow.core.logging import LogContext, Timer
from reportflow.core.transactions import StorageConnection

from .headers import HeaderMapping, HeaderResolver
from .normalizer import NormalizationResult, RowNormalizer
from .registry import SchemaRegistry, default_registry
from .schema import Period, PeriodKind, ReportSchema
from .sessions import ChunkAssembler, ChunkInfo, UploadSession, UploadSessionStore
from .upsert import DEFAULT_BATCH_SIZE, UpsertBatcher, UpsertResult

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    BUFFERED = "buffered"  # chunk accepted, waiting for more
    COMMITTED = "committed"  # records written
    EMPTY = "empty"  # nothing admitted, nothing written


@dataclass
class IngestOutcome:
    """Result of one ingest call (a whole file or one chunk)."""

    report_type: str
    schema_version: int
    file_name: str
    status: IngestStatus
    period: str
    rows_received: int = 0
    rows_admitted: int = 0
    rows_dropped: int = 0
    drop_reasons: Dict[str, int] = field(default_factory=dict)
    rows_written: int = 0
    batches: int = 0
    duplicates_collapsed: int = 0
    rows_replaced: int = 0
    footer_reached: bool = False
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    duration_ms: float = 0.0
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def summary(self) -> str:
        """Return a human-readable summary."""
        if self.status is IngestStatus.BUFFERED:
            return (
                f"{self.report_type} {self.file_name}: chunk {self.chunk_index + 1}/"
                f"{self.total_chunks} buffered, {self.rows_admitted} rows so far"
            )
        lines = [
            f"{self.report_type} (v{self.schema_version}) {self.file_name} [{self.period}]: "
            f"{self.status.value}",
            f"  rows received:  {self.rows_received}",
            f"  rows admitted:  {self.rows_admitted}",
            f"  rows dropped:   {self.rows_dropped}",
            f"  rows written:   {self.rows_written} in {self.batches} batches",
        ]
        if self.drop_reasons:
            reasons = ", ".join(f"{k}={v}" for k, v in sorted(self.drop_reasons.items()))
            lines.append(f"  drop reasons:   {reasons}")
        if self.duplicates_collapsed:
            lines.append(f"  duplicate keys: {self.duplicates_collapsed}")
        if self.rows_replaced:
            lines.append(f"  rows replaced:  {self.rows_replaced}")
        if self.footer_reached:
            lines.append("  stopped at footer row")
        lines.append(f"  duration:       {self.duration_ms:.0f}ms")
        return "\n".join(lines)


def parse_period(
    schema: ReportSchema,
    report_date: Any = None,
    start_date: Any = None,
    end_date: Any = None,
) -> Period:
    """
    Build the Period a schema expects from raw request values.

    Raises:
        ValidationError: Missing or malformed dates, or start after end
    """
    if schema.period_kind is PeriodKind.SINGLE:
        return Period.single(report_date)
    return Period.range(start_date, end_date)


class IngestionOrchestrator:
    """Runs header discovery, normalization, buffering and upsert for one schema."""

    def __init__(
        self,
        schema: ReportSchema,
        storage: StorageConnection,
        assembler: Optional[ChunkAssembler] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.schema = schema
        self.assembler = assembler or ChunkAssembler()
        self.batcher = UpsertBatcher(storage, batch_size=batch_size)
        self.resolver = HeaderResolver(schema)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def ingest(
        self,
        rows: Sequence[Any],
        file_name: str,
        period: Period,
        uploaded_by: str,
        chunk: Optional[ChunkInfo] = None,
    ) -> IngestOutcome:
        """
        Ingest a whole file, or one chunk of a multi-chunk upload.

        Args:
            rows: Raw rows (mappings or sequences)
            file_name: Upload file name; identifies the chunk session
            period: Reporting period of the upload
            uploaded_by: Resolved uploader identity
            chunk: Chunk position, or None for a whole-file upload

        Returns:
            IngestOutcome (BUFFERED for non-final chunks)

        Raises:
            SchemaError: No acceptable header row
            ValidationError: Empty input, bad period, or chunk sequencing violation
            StorageError: The write failed and was rolled back
        """
        rows = list(rows)
        try:
            context = self.build_context(period, uploaded_by)
        except ValidationError:
            if chunk is not None:
                self.assembler.abort(file_name)
            raise

        with LogContext(report_type=self.schema.report_type, file_name=file_name), Timer() as timer:
            if chunk is None:
                outcome = await self._ingest_whole(rows, file_name, period, context)
            else:
                outcome = await self._ingest_chunk(rows, file_name, period, context, chunk)

        outcome.duration_ms = round(timer.elapsed_ms, 2)
        if outcome.status is not IngestStatus.BUFFERED:
            logger.info(
                "[ingest] %s %s: %s, %d admitted, %d dropped, %d written (%.0fms)",
                self.schema.report_type,
                file_name,
                outcome.status.value,
                outcome.rows_admitted,
                outcome.rows_dropped,
                outcome.rows_written,
                outcome.duration_ms,
                extra={
                    "report_type": self.schema.report_type,
                    "file_name": file_name,
                    "status": outcome.status.value,
                    "rows": outcome.rows_written,
                    "duration_ms": outcome.duration_ms,
                },
            )
        return outcome

    def prepare(
        self, rows: Sequence[Any], period: Period, uploaded_by: str
    ) -> Tuple[HeaderMapping, NormalizationResult]:
        """
        Resolve the header and normalize rows without touching storage.

        Raises:
            SchemaError: No acceptable header row
            ValidationError: Empty input or bad period
        """
        rows = list(rows)
        if not rows:
            raise ValidationError(f"No data rows submitted for {self.schema.report_type}")
        context = self.build_context(period, uploaded_by)
        mapping = self.resolver.resolve(rows)
        result = RowNormalizer(self.schema, mapping).normalize_rows(
            rows[mapping.data_offset :],
            context,
            start_row=mapping.data_offset,
        )
        return mapping, result

    def build_context(self, period: Period, uploaded_by: str) -> Dict[str, Any]:
        """
        Context values injected into every record.

        Raises:
            ValidationError: Period kind mismatch or missing uploader
        """
        if not uploaded_by or not str(uploaded_by).strip():
            raise ValidationError("Uploader identity is required")
        context: Dict[str, Any] = dict(period.values_for(self.schema))
        context[self.schema.uploader_field] = str(uploaded_by).strip()
        return context

    # -------------------------------------------------------------------------
    # Pipelines
    # -------------------------------------------------------------------------

    async def _ingest_whole(
        self,
        rows: List[Any],
        file_name: str,
        period: Period,
        context: Dict[str, Any],
    ) -> IngestOutcome:
        if not rows:
            raise ValidationError(f"No data rows submitted for {self.schema.report_type}")

        mapping = self.resolver.resolve(rows)
        result = RowNormalizer(self.schema, mapping).normalize_rows(
            rows[mapping.data_offset :],
            context,
            start_row=mapping.data_offset,
        )
        written = await self.batcher.write(self.schema, result.records, self._period_values(context))

        outcome = self._outcome(file_name, period, written)
        outcome.rows_received = len(rows)
        outcome.rows_admitted = len(result.records)
        outcome.rows_dropped = result.rows_dropped
        outcome.drop_reasons = dict(result.dropped)
        outcome.footer_reached = result.footer_reached
        return outcome

    async def _ingest_chunk(
        self,
        rows: List[Any],
        file_name: str,
        period: Period,
        context: Dict[str, Any],
        chunk: ChunkInfo,
    ) -> IngestOutcome:
        with LogContext(chunk_index=chunk.index, total_chunks=chunk.total):
            session = self.assembler.begin(file_name, self.schema, chunk, context)
            try:
                return await self._accept_chunk(session, rows, file_name, period, chunk)
            except Exception:
                self.assembler.abort(file_name, session)
                raise

    async def _accept_chunk(
        self,
        session: UploadSession,
        rows: List[Any],
        file_name: str,
        period: Period,
        chunk: ChunkInfo,
    ) -> IngestOutcome:
        if chunk.index == 0:
            if not rows:
                raise ValidationError(f"First chunk of {file_name} contains no rows")
            session.mapping = self.resolver.resolve(rows)
            block = rows[session.mapping.data_offset :]
            start_row = session.mapping.data_offset
        else:
            block = rows
            start_row = session.rows_received

        if session.footer_reached:
            logger.debug("[ingest] %s: ignoring chunk %d after footer", file_name, chunk.index)
            result = NormalizationResult()
        else:
            if session.mapping is None:
                raise ValidationError(
                    f"Upload {file_name} has no header row; restart it from chunk 0"
                )
            result = RowNormalizer(self.schema, session.mapping).normalize_rows(
                block,
                session.context,
                start_row=start_row,
                start_ordinal=len(session.records),
            )
        self.assembler.append(session, result, rows_received=len(rows))

        if not chunk.is_last:
            logger.debug(
                "[ingest] %s: chunk %d/%d buffered (%d records so far)",
                file_name,
                chunk.index + 1,
                chunk.total,
                len(session.records),
            )
            outcome = self._outcome(file_name, period, None, session)
            outcome.status = IngestStatus.BUFFERED
            return outcome

        written = await self.batcher.write(
            self.schema, session.records, self._period_values(session.context)
        )
        self.assembler.complete(session)
        return self._outcome(file_name, period, written, session)

    # -------------------------------------------------------------------------

    def _period_values(self, context: Dict[str, Any]) -> Dict[str, Any]:
        return {name: context[name] for name in self.schema.period_fields}

    def _outcome(
        self,
        file_name: str,
        period: Period,
        written: Optional[UpsertResult],
        session: Optional[UploadSession] = None,
    ) -> IngestOutcome:
        status = IngestStatus.COMMITTED
        if written is not None and written.rows_submitted == 0:
            status = IngestStatus.EMPTY
            logger.warning(
                "[ingest] %s %s: no valid rows admitted, nothing written",
                self.schema.report_type,
                file_name,
            )

        outcome = IngestOutcome(
            report_type=self.schema.report_type,
            schema_version=self.schema.version,
            file_name=file_name,
            status=status,
            period=period.describe(),
        )
        if written is not None:
            outcome.rows_written = written.rows_written
            outcome.batches = written.batches
            outcome.duplicates_collapsed = written.duplicates_collapsed
            outcome.rows_replaced = written.rows_deleted
        if session is not None:
            outcome.rows_received = session.rows_received
            outcome.rows_admitted = len(session.records)
            outcome.rows_dropped = session.rows_dropped
            outcome.drop_reasons = dict(session.dropped)
            outcome.footer_reached = session.footer_reached
            outcome.chunk_index = session.received_chunks - 1
            outcome.total_chunks = session.total_chunks
        return outcome


class IngestionService:
    """Routes report-type tags to orchestrators sharing one session store."""

    def __init__(
        self,
        storage: StorageConnection,
        registry: Optional[SchemaRegistry] = None,
        sessions: Optional[UploadSessionStore] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.storage = storage
        self.registry = registry or default_registry()
        self.assembler = ChunkAssembler(sessions or UploadSessionStore())
        self.batch_size = batch_size
        self._orchestrators: Dict[Tuple[str, int], IngestionOrchestrator] = {}

    @property
    def sessions(self) -> UploadSessionStore:
        return self.assembler.store

    def schema(self, report_type: str, version: Optional[int] = None) -> ReportSchema:
        """
        Raises:
            UnknownReportTypeError: If the tag is not registered
        """
        return self.registry.get(report_type, version)

    def orchestrator(
        self, report_type: str, version: Optional[int] = None
    ) -> IngestionOrchestrator:
        schema = self.schema(report_type, version)
        key = (schema.report_type, schema.version)
        if key not in self._orchestrators:
            self._orchestrators[key] = IngestionOrchestrator(
                schema,
                self.storage,
                assembler=self.assembler,
                batch_size=self.batch_size,
            )
        return self._orchestrators[key]

    def parse_period(
        self,
        report_type: str,
        report_date: Any = None,
        start_date: Any = None,
        end_date: Any = None,
        version: Optional[int] = None,
    ) -> Period:
        return parse_period(self.schema(report_type, version), report_date, start_date, end_date)

    def abort_upload(self, file_name: str) -> None:
        """Destroy the chunk session for ``file_name``, if any."""
        self.assembler.abort(file_name)

    async def ingest(
        self,
        report_type: str,
        rows: Sequence[Any],
        file_name: str,
        period: Period,
        uploaded_by: str,
        chunk: Optional[ChunkInfo] = None,
        version: Optional[int] = None,
    ) -> IngestOutcome:
        """Route to the report type's orchestrator (see IngestionOrchestrator.ingest)."""
        orchestrator = self.orchestrator(report_type, version)
        return await orchestrator.ingest(rows, file_name, period, uploaded_by, chunk=chunk)
