"""
reportflow/ingest/cli.py
========================

Command-line ingestion of a CSV export.

Reads the file as positional rows (title and blank rows before the header
are fine), then runs it through the same engine the upload API uses. With
--chunk-size the file is replayed as consecutive chunks, exactly as the
browser uploader would post it.

Examples:
    # Dry run (header + normalization only, no database)
    python -m reportflow.ingest.cli --file labor.csv --type labor --report-date 2024-01-15 --dry-run

    # Weekly report, created table if missing
    python -m reportflow.ingest.cli -f week.csv -t diverse_weekly \\
        --start-date 2024-01-08 --end-date 2024-01-14 --create-table
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import getpass
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from reportflow.core.config import get_settings
from reportflow.core.errors import ReportflowError, ValidationError
from reportflow.core.logging import configure_logging
from reportflow.core.transactions import PsycopgStorage, StorageConnection

from .orchestrator import IngestionService, IngestOutcome
from .registry import default_registry
from .sessions import ChunkInfo
from .statements import build_create_table

logger = logging.getLogger(__name__)


def read_csv_rows(filepath: Path, encoding: str = "utf-8-sig") -> List[List[str]]:
    """
    Read every CSV record as a list of cells.

    The dialect is sniffed from the first 8KB; Excel CSV is the fallback.
    """
    with open(filepath, "r", encoding=encoding, newline="") as f:
        sample = f.read(8192)
        f.seek(0)

        try:
            dialect = csv.Sniffer().sniff(sample, delimiters=",\t;|")
        except csv.Error:
            dialect = csv.excel  # type: ignore

        return [row for row in csv.reader(f, dialect=dialect)]


def split_chunks(rows: Sequence[List[str]], chunk_size: int) -> List[Sequence[List[str]]]:
    """Split rows into consecutive chunks; an empty file is one empty chunk."""
    if not rows:
        return [rows]
    return [rows[start : start + chunk_size] for start in range(0, len(rows), chunk_size)]


async def ingest_file(
    service: IngestionService,
    report_type: str,
    rows: Sequence[List[str]],
    file_name: str,
    uploaded_by: str,
    report_date: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    chunk_size: int = 0,
    version: Optional[int] = None,
) -> IngestOutcome:
    """Ingest CSV rows whole, or replayed as chunks of ``chunk_size`` rows."""
    period = service.parse_period(report_type, report_date, start_date, end_date, version=version)

    if chunk_size <= 0:
        return await service.ingest(
            report_type, rows, file_name, period, uploaded_by, version=version
        )

    chunks = split_chunks(rows, chunk_size)
    outcome: Optional[IngestOutcome] = None
    for index, chunk_rows in enumerate(chunks):
        chunk = ChunkInfo(index=index, total=len(chunks), is_last=index == len(chunks) - 1)
        outcome = await service.ingest(
            report_type, chunk_rows, file_name, period, uploaded_by, chunk=chunk, version=version
        )
    if outcome is None:
        raise ValidationError(f"No rows to ingest from {file_name}")
    return outcome


async def create_table(storage: StorageConnection, service: IngestionService, report_type: str, version: Optional[int]) -> None:
    statement = build_create_table(service.schema(report_type, version))
    async with storage.transaction() as unit:
        await unit.execute(statement)
    logger.info("[cli] ensured table %s", statement.table)


async def _run(args: argparse.Namespace, rows: List[List[str]]) -> IngestOutcome:
    from reportflow.db import close_db_pool, init_db_pool

    settings = get_settings()
    await init_db_pool(settings)
    storage = PsycopgStorage()
    service = IngestionService(storage=storage, batch_size=settings.INGEST_BATCH_SIZE)
    try:
        if args.create_table:
            await create_table(storage, service, args.type, args.schema_version)
        return await ingest_file(
            service,
            args.type,
            rows,
            file_name=Path(args.file).name,
            uploaded_by=args.uploaded_by,
            report_date=args.report_date,
            start_date=args.start_date,
            end_date=args.end_date,
            chunk_size=args.chunk_size,
            version=args.schema_version,
        )
    finally:
        await close_db_pool()


def _dry_run(args: argparse.Namespace, rows: List[List[str]]) -> None:
    registry = default_registry()
    schema = registry.get(args.type, args.schema_version)
    # Storage is never touched by prepare()
    service = IngestionService(storage=PsycopgStorage(), registry=registry)
    orchestrator = service.orchestrator(args.type, args.schema_version)
    period = service.parse_period(
        args.type, args.report_date, args.start_date, args.end_date, version=args.schema_version
    )
    mapping, result = orchestrator.prepare(rows, period, args.uploaded_by)

    print(f"{schema.report_type} (v{schema.version}) -> {schema.table}")
    print(f"  header row:     {mapping.header_index + 1} ({mapping.source.value})")
    if mapping.extras:
        print(f"  ignored:        {', '.join(mapping.extras)}")
    print(f"  rows read:      {result.rows_seen}")
    print(f"  rows admitted:  {len(result.records)}")
    print(f"  rows dropped:   {result.rows_dropped}")
    for reason, count in sorted(result.dropped.items()):
        print(f"    {reason}: {count}")
    if result.footer_reached:
        print("  stopped at footer row")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="Idempotent report CSV importer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )
    parser.add_argument("--file", "-f", help="Path to the CSV file to import")
    parser.add_argument("--type", "-t", help="Report type tag (see --list-types)")
    parser.add_argument("--report-date", help="Report date (YYYY-MM-DD) for daily reports")
    parser.add_argument("--start-date", help="Period start (YYYY-MM-DD) for weekly reports")
    parser.add_argument("--end-date", help="Period end (YYYY-MM-DD) for weekly reports")
    parser.add_argument(
        "--uploaded-by",
        default=getpass.getuser(),
        help="Uploader identity recorded on every row (default: current user)",
    )
    parser.add_argument("--schema-version", type=int, help="Schema version (default: latest)")
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=0,
        help="Replay the file as chunks of N rows (default: whole file)",
    )
    parser.add_argument("--encoding", default="utf-8-sig", help="File encoding")
    parser.add_argument(
        "--create-table",
        action="store_true",
        help="CREATE TABLE IF NOT EXISTS before importing",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse and validate without writing to database",
    )
    parser.add_argument("--list-types", action="store_true", help="List report types and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    configure_logging(level="DEBUG" if args.verbose else "INFO", json_output=False)

    if args.list_types:
        for schema in default_registry():
            period = "reportDate" if schema.period_kind.value == "single" else "startDate/endDate"
            print(f"{schema.report_type:<26} v{schema.version}  {schema.table:<26} {period}")
        return 0

    if not args.file or not args.type:
        parser.error("--file and --type are required")

    try:
        rows = read_csv_rows(Path(args.file), encoding=args.encoding)

        if args.dry_run:
            _dry_run(args, rows)
            return 0

        outcome = asyncio.run(_run(args, rows))

        print("\n" + "=" * 60)
        print(outcome.summary())
        print("=" * 60)
        return 0

    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ReportflowError as e:
        print(f"Error ({e.error_code}): {e.message}", file=sys.stderr)
        return 2 if e.is_input_error else 1
    except Exception as e:
        logger.exception("Import failed")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
