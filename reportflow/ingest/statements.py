"""
reportflow/ingest/statements.py
===============================

SQL rendering for report tables.

Statements keep their structure (table, columns, rows, conflict target) next
to the rendered SQL so storage adapters and test doubles can use either.
Identifiers come from validated ReportSchema descriptors and are emitted
unquoted; values always travel as positional parameters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Sequence, Tuple

from .schema import ReportSchema, WriteMode


@dataclass(frozen=True)
class UpsertStatement:
    """Multi-row INSERT ... ON CONFLICT (identifying fields) DO UPDATE."""

    table: str
    columns: Tuple[str, ...]
    rows: Tuple[Tuple[Any, ...], ...]
    conflict_columns: Tuple[str, ...]
    update_columns: Tuple[str, ...]
    placeholder: str = "%s"

    @property
    def sql(self) -> str:
        row_template = "(" + ", ".join([self.placeholder] * len(self.columns)) + ")"
        values_sql = ",\n    ".join([row_template] * len(self.rows))
        if self.update_columns:
            conflict_action = "DO UPDATE SET " + ", ".join(
                f"{name} = EXCLUDED.{name}" for name in self.update_columns
            )
        else:
            conflict_action = "DO NOTHING"
        return (
            f"INSERT INTO {self.table} ({', '.join(self.columns)})\n"
            f"VALUES\n    {values_sql}\n"
            f"ON CONFLICT ({', '.join(self.conflict_columns)}) {conflict_action}"
        )

    @property
    def params(self) -> List[Any]:
        params: List[Any] = []
        for row in self.rows:
            params.extend(row)
        return params


@dataclass(frozen=True)
class DeleteStatement:
    """DELETE of every row matching the given column values."""

    table: str
    where: Tuple[Tuple[str, Any], ...]
    placeholder: str = "%s"

    @property
    def sql(self) -> str:
        conditions = " AND ".join(f"{name} = {self.placeholder}" for name, _ in self.where)
        return f"DELETE FROM {self.table} WHERE {conditions}"

    @property
    def params(self) -> List[Any]:
        return [value for _, value in self.where]


@dataclass(frozen=True)
class DDLStatement:
    """Parameterless schema statement."""

    table: str
    text: str
    params: Tuple[Any, ...] = field(default=())

    @property
    def sql(self) -> str:
        return self.text


def build_upsert(
    schema: ReportSchema,
    records: Sequence[Any],
    placeholder: str = "%s",
) -> UpsertStatement:
    """
    Render one batch of records.

    Args:
        schema: Schema the records were normalized against
        records: NormalizedRecord objects (or plain value mappings)
        placeholder: Positional parameter marker of the target driver
    """
    columns = schema.field_names
    rows = tuple(
        tuple(_values(record).get(name) for name in columns) for record in records
    )
    return UpsertStatement(
        table=schema.table,
        columns=columns,
        rows=rows,
        conflict_columns=tuple(schema.identifying_fields),
        update_columns=tuple(schema.mutable_fields),
        placeholder=placeholder,
    )


def build_delete_period(
    schema: ReportSchema,
    period_values: dict,
    placeholder: str = "%s",
) -> DeleteStatement:
    """DELETE every stored row of the given period (REPLACE_PERIOD schemas)."""
    if schema.write_mode is not WriteMode.REPLACE_PERIOD:
        raise ValueError(f"{schema.key} does not replace by period")
    return DeleteStatement(
        table=schema.table,
        where=tuple((name, period_values[name]) for name in schema.period_fields),
        placeholder=placeholder,
    )


def build_create_table(schema: ReportSchema) -> DDLStatement:
    """CREATE TABLE IF NOT EXISTS with a unique constraint over the identifying fields."""
    column_lines = []
    for name in schema.field_names:
        nullability = " NOT NULL" if name in schema.identifying_fields else ""
        column_lines.append(f"    {name} {schema.sql_type(name)}{nullability}")
    column_lines.append("    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP")
    column_lines.append(
        f"    CONSTRAINT uq_{schema.table} UNIQUE ({', '.join(schema.identifying_fields)})"
    )
    text = (
        f"CREATE TABLE IF NOT EXISTS {schema.table} (\n"
        + ",\n".join(column_lines)
        + "\n)"
    )
    return DDLStatement(table=schema.table, text=text)


def _values(record: Any) -> Mapping[str, Any]:
    if isinstance(record, Mapping):
        return record
    return record.values
