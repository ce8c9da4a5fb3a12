"""
Reportflow Engine - Upload Router

JSON endpoint the browser uploader posts spreadsheet rows to.

Endpoints:
    POST /api/v1/upload       - Ingest a whole file or one chunk of it
    GET  /api/v1/upload/types - List registered report types

The browser parses the spreadsheet itself and posts rows as JSON, either as
objects keyed by column label or as arrays of cell values. Large files are
split into chunks that share a fileName.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import ReportflowError
from ..ingest.orchestrator import IngestionService, IngestOutcome
from ..ingest.sessions import ChunkInfo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/upload", tags=["upload"])


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------


class UploadPayload(BaseModel):
    """One upload request: a whole file, or one chunk of it."""

    model_config = ConfigDict(populate_by_name=True)

    file_type: str = Field(..., alias="fileType", description="Report type tag")
    file_name: str = Field(..., alias="fileName", min_length=1)
    report_date: Optional[str] = Field(None, alias="reportDate")
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")
    schema_version: Optional[int] = Field(None, alias="schemaVersion")
    data: list[Any] = Field(default_factory=list, description="Rows (objects or arrays)")
    chunk_index: Optional[int] = Field(None, alias="chunkIndex")
    total_chunks: Optional[int] = Field(None, alias="totalChunks")
    is_last_chunk: Optional[bool] = Field(None, alias="isLastChunk")

    def chunk_info(self) -> Optional[ChunkInfo]:
        """
        ChunkInfo when the request is part of a chunked upload.

        Raises:
            HTTPException: 400 if only some of the chunk fields are present
        """
        fields = (self.chunk_index, self.total_chunks, self.is_last_chunk)
        if all(f is None for f in fields):
            return None
        if any(f is None for f in fields):
            raise HTTPException(
                status_code=400,
                detail="chunkIndex, totalChunks and isLastChunk must be sent together",
            )
        return ChunkInfo(
            index=self.chunk_index, total=self.total_chunks, is_last=self.is_last_chunk
        )


class UploadResponse(BaseModel):
    """Result of one upload request."""

    status: str
    message: str
    report_type: str
    schema_version: int
    file_name: str
    period: str
    rows_received: int
    rows_admitted: int
    rows_dropped: int
    drop_reasons: dict[str, int]
    rows_written: int
    duplicates_collapsed: int
    rows_replaced: int
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    duration_ms: float
    completed_at: datetime

    @classmethod
    def from_outcome(cls, outcome: IngestOutcome) -> "UploadResponse":
        if outcome.status.value == "buffered":
            message = f"Chunk {outcome.chunk_index + 1} of {outcome.total_chunks} received"
        elif outcome.status.value == "empty":
            message = f"No valid rows found in {outcome.file_name}"
        else:
            message = f"{outcome.rows_admitted} rows saved from {outcome.file_name}"
        return cls(
            status=outcome.status.value,
            message=message,
            report_type=outcome.report_type,
            schema_version=outcome.schema_version,
            file_name=outcome.file_name,
            period=outcome.period,
            rows_received=outcome.rows_received,
            rows_admitted=outcome.rows_admitted,
            rows_dropped=outcome.rows_dropped,
            drop_reasons=outcome.drop_reasons,
            rows_written=outcome.rows_written,
            duplicates_collapsed=outcome.duplicates_collapsed,
            rows_replaced=outcome.rows_replaced,
            chunk_index=outcome.chunk_index,
            total_chunks=outcome.total_chunks,
            duration_ms=outcome.duration_ms,
            completed_at=outcome.completed_at,
        )


class ReportTypeInfo(BaseModel):
    report_type: str
    version: int
    table: str
    period: str
    expected_headers: list[str]
    description: str = ""


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_ingestion_service(request: Request) -> IngestionService:
    service = getattr(request.app.state, "ingestion_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ingestion service not initialized")
    return service


def get_uploader(
    x_uploaded_by: Optional[str] = Header(None, alias="X-Uploaded-By"),
) -> str:
    """Uploader identity, set upstream by the identity provider."""
    if not x_uploaded_by or not x_uploaded_by.strip():
        raise HTTPException(status_code=401, detail="Missing X-Uploaded-By header")
    return x_uploaded_by.strip()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=UploadResponse,
    summary="Upload report rows",
    description="""
Ingest a whole report, or one chunk of a chunked upload.

Non-final chunks are buffered and answered with status `buffered`; the
final chunk writes every buffered row in one transaction.
""",
)
async def upload_report(
    payload: UploadPayload,
    uploaded_by: str = Depends(get_uploader),
    service: IngestionService = Depends(get_ingestion_service),
) -> UploadResponse:
    if payload.file_type not in service.registry:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Invalid fileType: {payload.file_type}. Must be one of: "
                f"{', '.join(service.registry.report_types())}"
            ),
        )

    chunk = payload.chunk_info()
    logger.info(
        "Upload %s (%s) by %s: %d rows%s",
        payload.file_name,
        payload.file_type,
        uploaded_by,
        len(payload.data),
        f", chunk {chunk.index + 1}/{chunk.total}" if chunk else "",
        extra={"file_name": payload.file_name, "report_type": payload.file_type},
    )

    try:
        period = service.parse_period(
            payload.file_type,
            report_date=payload.report_date,
            start_date=payload.start_date,
            end_date=payload.end_date,
            version=payload.schema_version,
        )
    except ReportflowError:
        # A bad chunk ends the whole upload
        if chunk is not None:
            service.abort_upload(payload.file_name)
        raise

    outcome = await service.ingest(
        payload.file_type,
        payload.data,
        payload.file_name,
        period,
        uploaded_by,
        chunk=chunk,
        version=payload.schema_version,
    )
    return UploadResponse.from_outcome(outcome)


@router.get("/types", response_model=list[ReportTypeInfo], summary="List report types")
async def list_report_types(
    service: IngestionService = Depends(get_ingestion_service),
) -> list[ReportTypeInfo]:
    return [
        ReportTypeInfo(
            report_type=schema.report_type,
            version=schema.version,
            table=schema.table,
            period=schema.period_kind.value,
            expected_headers=list(schema.expected_headers),
            description=schema.description,
        )
        for schema in service.registry
    ]
