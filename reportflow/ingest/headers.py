"""
reportflow/ingest/headers.py
============================

Header row discovery.

Exports rarely start at the header: title banners, run dates and blank rows
come first, and some tools emit the header as the first row's values rather
than as mapping keys. The resolver scans rows in order and accepts the first
one whose label set satisfies the schema's policy.

    EXACT     received labels == expected labels (order checked if significant);
              a row holding every expected label plus unknown ones is rejected
    SUPERSET  every expected label present; extras ignored
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

from reportflow.core.errors import ErrorDetail, SchemaError, ValidationError

from .coercion import is_blank
from .schema import HeaderMatchPolicy, HeaderSource, ReportSchema

logger = logging.getLogger(__name__)

RawRow = Mapping[Hashable, Any]


def as_mapping(row: Any, row_number: Optional[int] = None) -> RawRow:
    """
    Rows may be mappings or plain sequences; sequences key by position.

    Raises:
        ValidationError: If the row is neither
    """
    if isinstance(row, Mapping):
        return row
    if isinstance(row, (list, tuple)):
        return dict(enumerate(row))
    where = f"row {row_number}" if row_number is not None else "row"
    raise ValidationError(f"{where} is not an object or array (got {type(row).__name__})")


@dataclass
class HeaderMapping:
    """Where the header was found and how raw keys map onto canonical labels."""

    header_index: int
    source: HeaderSource
    key_to_label: Dict[Hashable, str] = field(default_factory=dict)
    first_key: Optional[Hashable] = None
    extras: Tuple[str, ...] = ()

    @property
    def data_offset(self) -> int:
        """
        Index of the first data row in the block the header was found in.

        For KEYS headers ``header_index`` is itself the first data row.
        """
        if self.source is HeaderSource.VALUES:
            return self.header_index + 1
        return self.header_index


@dataclass
class _Candidate:
    labels: List[str]
    key_to_label: Dict[Hashable, str]
    first_key: Optional[Hashable]


class HeaderResolver:
    """Locates the header row for one schema."""

    def __init__(self, schema: ReportSchema):
        self.schema = schema
        self._expected = list(schema.expected_labels)
        self._expected_set = set(self._expected)

    def resolve(self, rows: Sequence[Any]) -> HeaderMapping:
        """
        Scan ``rows`` forward for the first satisfying header row.

        Raises:
            SchemaError: If no row satisfies the policy, or an EXACT header
                carries unexpected labels
        """
        best_missing: Optional[List[str]] = None
        out_of_order: Optional[int] = None

        for index, raw in enumerate(rows):
            row = as_mapping(raw, index + 1)
            for source, candidate in self._candidates(row):
                missing = [label for label in self._expected if label not in candidate.labels]
                if missing:
                    if best_missing is None or len(missing) < len(best_missing):
                        best_missing = missing
                    continue

                extras = tuple(
                    dict.fromkeys(lbl for lbl in candidate.labels if lbl not in self._expected_set)
                )
                if self.schema.match_policy is HeaderMatchPolicy.EXACT:
                    if extras:
                        raise SchemaError(
                            f"Invalid headers for {self.schema.report_type}. "
                            f"Unexpected: {', '.join(extras)}",
                            details=[
                                ErrorDetail(field=label, message="unexpected header", code="unexpected")
                                for label in extras
                            ],
                        )
                    if self.schema.order_significant and not self._in_order(candidate.labels):
                        out_of_order = index if out_of_order is None else out_of_order
                        logger.debug(
                            "[headers] %s: row %d has expected labels out of order",
                            self.schema.report_type,
                            index,
                        )
                        continue
                elif extras:
                    logger.info(
                        "[headers] %s: ignoring unexpected columns: %s",
                        self.schema.report_type,
                        ", ".join(extras),
                    )

                logger.debug(
                    "[headers] %s: header found at row %d (%s)",
                    self.schema.report_type,
                    index,
                    source.value,
                )
                start = index
                if source is HeaderSource.KEYS:
                    start = self._keyed_run_start(rows, index, set(candidate.labels))
                    if start < index:
                        logger.info(
                            "[headers] %s: %d leading rows with omitted cells kept as data",
                            self.schema.report_type,
                            index - start,
                        )
                return HeaderMapping(
                    header_index=start,
                    source=source,
                    key_to_label=candidate.key_to_label,
                    first_key=candidate.first_key,
                    extras=extras,
                )

        if out_of_order is not None:
            raise SchemaError(
                f"Invalid headers for {self.schema.report_type}. "
                f"Columns at row {out_of_order} must appear in order: {', '.join(self._expected)}"
            )

        missing = best_missing if best_missing is not None else self._expected
        raise SchemaError(
            f"Invalid headers for {self.schema.report_type}. Missing: {', '.join(missing)}",
            details=[
                ErrorDetail(field=label, message="missing header", code="missing")
                for label in missing
            ],
        )

    # -------------------------------------------------------------------------

    def _candidates(self, row: RawRow) -> List[Tuple[HeaderSource, _Candidate]]:
        source = self.schema.header_source
        candidates = []
        if source in (HeaderSource.AUTO, HeaderSource.KEYS):
            candidates.append((HeaderSource.KEYS, self._labels_from(row, use_keys=True)))
        if source in (HeaderSource.AUTO, HeaderSource.VALUES):
            candidates.append((HeaderSource.VALUES, self._labels_from(row, use_keys=False)))
        return candidates

    def _labels_from(self, row: RawRow, use_keys: bool) -> _Candidate:
        labels: List[str] = []
        key_to_label: Dict[Hashable, str] = {}
        first_key: Optional[Hashable] = None
        for key, value in row.items():
            raw_label = key if use_keys else value
            if not isinstance(raw_label, str) or is_blank(raw_label):
                continue
            label = self.schema.normalize(raw_label)
            if first_key is None:
                first_key = key
            labels.append(label)
            key_to_label.setdefault(key, label)
        return _Candidate(labels=labels, key_to_label=key_to_label, first_key=first_key)

    def _keyed_run_start(self, rows: Sequence[Any], index: int, labels: set) -> int:
        """
        Walk back over keyed rows whose keys are all header labels.

        Exports drop empty cells from row objects, so a data row with a blank
        cell fails the header check on its own.
        """
        start = index
        while start > 0:
            previous = rows[start - 1]
            if not isinstance(previous, Mapping):
                break
            keys = self._labels_from(previous, use_keys=True).labels
            if not keys or not set(keys) <= labels:
                break
            start -= 1
        return start

    def _in_order(self, labels: List[str]) -> bool:
        return [label for label in labels if label in self._expected_set] == self._expected
