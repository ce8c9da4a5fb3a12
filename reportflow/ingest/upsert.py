"""
reportflow/ingest/upsert.py
===========================

Transactional batched upsert of normalized records.

All batches of one ingestion run inside a single storage transaction: either
every record is stored or none is. Duplicate identifying keys within the
submitted record set are collapsed first, so the outcome equals applying the
records one by one in submission order (the last occurrence's mutable fields
win; write-once fields keep the first occurrence's value).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from reportflow.core.errors import IngestError, StorageError
from reportflow.core.logging import Timer
from reportflow.core.transactions import StorageConnection

from .normalizer import NormalizedRecord
from .schema import ReportSchema, WriteMode
from .statements import build_delete_period, build_upsert

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


@dataclass
class UpsertResult:
    """Outcome of one transactional write."""

    rows_submitted: int = 0
    rows_written: int = 0
    duplicates_collapsed: int = 0
    batches: int = 0
    rows_deleted: int = 0
    duration_ms: float = 0.0


def collapse_duplicates(
    schema: ReportSchema, records: Sequence[NormalizedRecord]
) -> Tuple[List[NormalizedRecord], int]:
    """
    Merge records sharing an identifying key, in submission order.

    The first occurrence fixes the record's position and its write-once
    fields; each later occurrence overwrites the mutable fields.

    Returns:
        (unique records, number of records merged away)
    """
    merged: Dict[Tuple[Any, ...], NormalizedRecord] = {}
    for record in records:
        key = record.key(schema.identifying_fields)
        existing = merged.get(key)
        if existing is None:
            merged[key] = NormalizedRecord(values=dict(record.values), row_number=record.row_number)
            continue
        for name in schema.mutable_fields:
            existing.values[name] = record.values.get(name)
    return list(merged.values()), len(records) - len(merged)


class UpsertBatcher:
    """Writes record sets for any schema through a StorageConnection."""

    def __init__(self, storage: StorageConnection, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.storage = storage
        self.batch_size = batch_size

    async def write(
        self,
        schema: ReportSchema,
        records: Sequence[NormalizedRecord],
        period_values: Optional[Mapping[str, Any]] = None,
    ) -> UpsertResult:
        """
        Upsert ``records`` atomically.

        Args:
            schema: Target schema
            records: Normalized records, in submission order
            period_values: Period column values; required for REPLACE_PERIOD

        Raises:
            StorageError: Transaction start or any batch failed (rolled back)
        """
        result = UpsertResult(rows_submitted=len(records))
        if not records:
            return result

        unique, collapsed = collapse_duplicates(schema, records)
        result.duplicates_collapsed = collapsed
        if collapsed:
            logger.info(
                "[upsert] %s: collapsed %d duplicate keys (last occurrence wins)",
                schema.table,
                collapsed,
            )

        if schema.write_mode is WriteMode.REPLACE_PERIOD and period_values is None:
            raise ValueError(f"{schema.key} requires period values to replace")

        placeholder = self.storage.placeholder
        total_batches = (len(unique) + self.batch_size - 1) // self.batch_size

        with Timer() as timer:
            try:
                async with self.storage.transaction() as unit:
                    if schema.write_mode is WriteMode.REPLACE_PERIOD:
                        delete = build_delete_period(schema, dict(period_values), placeholder)
                        result.rows_deleted = await unit.execute(delete)
                        logger.info(
                            "[upsert] %s: cleared %d rows for period %s",
                            schema.table,
                            result.rows_deleted,
                            delete.params,
                        )

                    for batch_start in range(0, len(unique), self.batch_size):
                        batch = unique[batch_start : batch_start + self.batch_size]
                        batch_num = batch_start // self.batch_size + 1
                        statement = build_upsert(schema, batch, placeholder)
                        affected = await unit.execute(statement)
                        result.rows_written += affected
                        result.batches += 1
                        logger.debug(
                            "[upsert] %s: batch %d/%d (%d rows)",
                            schema.table,
                            batch_num,
                            total_batches,
                            len(batch),
                            extra={"batch": batch_num, "rows": len(batch)},
                        )
            except IngestError:
                raise
            except Exception as exc:
                logger.error(
                    "[upsert] %s: write failed after %d/%d batches, rolled back: %s",
                    schema.table,
                    result.batches,
                    total_batches,
                    exc,
                    extra={"error_code": "storage_error"},
                )
                raise StorageError(
                    f"Failed to write {schema.report_type} rows to {schema.table}: {exc}"
                ) from exc

        result.duration_ms = round(timer.elapsed_ms, 2)
        logger.info(
            "[upsert] %s: committed %d rows in %d batches (%.0fms)",
            schema.table,
            len(unique),
            result.batches,
            result.duration_ms,
            extra={"rows": len(unique), "duration_ms": result.duration_ms},
        )
        return result
