"""
reportflow/ingest/normalizer.py
===============================

Turns raw rows into typed records for one schema.

For every row after the header:
    1. strings are trimmed and internal whitespace collapsed
    2. cells are resolved to schema columns through the header mapping
    3. each column is coerced by its rule
    4. period columns, uploader and (optionally) the row ordinal are injected
    5. rows that are blank, lack an identifying/required value, or carry a
       malformed strict date are dropped and counted

A footer row (first cell empty or containing "TOTAL") ends the block when the
schema asks for it; neither it nor anything after it is read.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple

from reportflow.core.errors import RowError, ValidationError

from .coercion import clean_text, coerce_value, is_blank
from .headers import HeaderMapping, as_mapping
from .schema import HeaderSource, ReportSchema

logger = logging.getLogger(__name__)

FOOTER_MARKER = "TOTAL"


@dataclass
class NormalizedRecord:
    """Typed column values for one admitted row."""

    values: Dict[str, Any]
    row_number: int

    def key(self, fields: Iterable[str]) -> Tuple[Any, ...]:
        return tuple(self.values.get(name) for name in fields)


@dataclass
class NormalizationResult:
    """Records admitted from one block of rows plus what was dropped and why."""

    records: List[NormalizedRecord] = field(default_factory=list)
    rows_seen: int = 0
    dropped: Counter = field(default_factory=Counter)
    footer_reached: bool = False

    @property
    def rows_dropped(self) -> int:
        return sum(self.dropped.values())


class FooterReached(Exception):
    """Raised by normalize_row when the row is a totals/footer row."""


class RowNormalizer:
    """Normalizes rows of one schema against a resolved header mapping."""

    def __init__(self, schema: ReportSchema, mapping: HeaderMapping):
        self.schema = schema
        self.mapping = mapping
        self._column_labels = [(spec, schema.normalize(spec.label)) for spec in schema.columns]
        self._label_cache: Dict[Hashable, str] = dict(mapping.key_to_label)

    def normalize_rows(
        self,
        rows: Iterable[Any],
        context: Mapping[str, Any],
        start_row: int = 0,
        start_ordinal: int = 0,
    ) -> NormalizationResult:
        """
        Normalize a block of data rows.

        Args:
            rows: Data rows (header already skipped)
            context: Injected values (period columns and uploader)
            start_row: Number of rows preceding this block, for row numbering
            start_ordinal: Records admitted before this block, for row ordinals

        Returns:
            NormalizationResult with admitted records and drop counts
        """
        result = NormalizationResult()

        for offset, raw in enumerate(rows):
            row_number = start_row + offset + 1
            result.rows_seen += 1
            try:
                record = self.normalize_row(
                    raw,
                    context,
                    row_number=row_number,
                    ordinal=start_ordinal + len(result.records) + 1,
                )
            except FooterReached:
                result.rows_seen -= 1
                result.footer_reached = True
                logger.info(
                    "[normalize] %s: footer at row %d, ignoring remaining rows",
                    self.schema.report_type,
                    row_number,
                )
                break
            except RowError as exc:
                result.dropped[exc.reason] += 1
                logger.debug("[normalize] row %d dropped: %s", row_number, exc.message)
                continue
            result.records.append(record)

        if result.rows_dropped:
            reasons = ", ".join(f"{reason}={count}" for reason, count in sorted(result.dropped.items()))
            logger.warning(
                "[normalize] %s: dropped %d of %d rows (%s)",
                self.schema.report_type,
                result.rows_dropped,
                result.rows_seen,
                reasons,
                extra={"report_type": self.schema.report_type, "dropped": result.rows_dropped},
            )

        return result

    def normalize_row(
        self,
        raw: Any,
        context: Mapping[str, Any],
        row_number: int = 0,
        ordinal: Optional[int] = None,
    ) -> NormalizedRecord:
        """
        Normalize one data row.

        Raises:
            RowError: Row must be dropped (reason in ``exc.reason``)
            FooterReached: Row is a footer and the schema stops on footers
        """
        row = as_mapping(raw, row_number)

        if all(is_blank(value) for value in row.values()):
            raise RowError("blank row", reason="blank_row", row_number=row_number)

        if self.schema.stop_on_footer and self._is_footer(row):
            raise FooterReached(row_number)

        cells = self._cells(row)

        values: Dict[str, Any] = dict(context)
        if self.schema.row_ordinal_field and ordinal is not None:
            values[self.schema.row_ordinal_field] = ordinal

        for spec, label in self._column_labels:
            try:
                value = coerce_value(spec.rule, cells.get(label))
            except ValidationError as exc:
                raise RowError(
                    exc.message, reason=f"invalid_{spec.name}", row_number=row_number
                ) from exc

            if spec.name in self.schema.period_fields:
                # A row-level date overrides the upload's period date
                if value is not None:
                    values[spec.name] = value
                continue
            values[spec.name] = value

        for name in self.schema.required_fields:
            if is_blank(values.get(name)):
                raise RowError(
                    f"row {row_number}: missing {name}",
                    reason=f"missing_{name}",
                    row_number=row_number,
                )

        return NormalizedRecord(values=values, row_number=row_number)

    # -------------------------------------------------------------------------

    def _cells(self, row: Mapping[Hashable, Any]) -> Dict[str, Any]:
        """Canonical label -> cleaned cell value; the first key for a label wins."""
        cells: Dict[str, Any] = {}
        if self.mapping.source is HeaderSource.VALUES:
            for key, label in self.mapping.key_to_label.items():
                if label not in cells:
                    cells[label] = clean_text(row.get(key))
            return cells

        for key, value in row.items():
            label = self._label_cache.get(key)
            if label is None:
                if not isinstance(key, str):
                    continue
                label = self.schema.normalize(key)
                self._label_cache[key] = label
            if label not in cells:
                cells[label] = clean_text(value)
        return cells

    def _is_footer(self, row: Mapping[Hashable, Any]) -> bool:
        first = clean_text(row.get(self.mapping.first_key))
        if is_blank(first):
            return True
        return isinstance(first, str) and FOOTER_MARKER in first
