"""
export.py - Serialization of result sets to CSV, JSON and SQL text.

An empty result set is never exported: callers get a ValidationError
instead of an empty file.
"""

import csv
import io
import json
from datetime import datetime
from enum import Enum
from typing import Final

from sqlite_browser.db.schema import quote_identifier
from sqlite_browser.errors import ValidationError
from sqlite_browser.query import Cell, CellType, ResultSet


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    SQL = "sql"


CONTENT_TYPES: Final[dict[ExportFormat, str]] = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
    ExportFormat.SQL: "application/sql",
}


def parse_format(value: str | ExportFormat) -> ExportFormat:
    """
    Normalize an export format tag.

    Raises:
        ValidationError: If the format is not csv, json or sql
    """
    if isinstance(value, ExportFormat):
        return value
    try:
        return ExportFormat(str(value).lower())
    except ValueError as e:
        raise ValidationError(f"Unsupported export format: {value}", field="format", value=value) from e


def export_filename(fmt: str | ExportFormat, now: datetime | None = None) -> str:
    """Suggested download name, e.g. ``export_20240131_235959.csv``."""
    fmt = parse_format(fmt)
    now = now or datetime.now()
    return f"export_{now:%Y%m%d_%H%M%S}.{fmt.value}"


def serialize(
    result: ResultSet,
    fmt: str | ExportFormat,
    table_name: str | None = None,
    source_query: str | None = None,
    now: datetime | None = None,
) -> bytes:
    """
    Serialize a result set.

    Args:
        result: Rows to export
        fmt: csv, json or sql
        table_name: Target table for SQL INSERT lines; defaults to the
            table the result set was read from
        source_query: Statement that produced the rows, recorded in SQL
            export comments
        now: Timestamp recorded in SQL export comments

    Returns:
        UTF-8 encoded document

    Raises:
        ValidationError: If there are no rows, the format is unknown,
            or a SQL export has no target table
    """
    fmt = parse_format(fmt)
    if result.is_empty:
        raise ValidationError("No data to export")

    if fmt is ExportFormat.CSV:
        return to_csv(result)
    if fmt is ExportFormat.JSON:
        return to_json(result)

    target = table_name or result.source_table
    if not target:
        raise ValidationError(
            "SQL export needs a target table name", field="table_name"
        )
    return to_sql(result, target, source_query=source_query, now=now)


def to_csv(result: ResultSet) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL)
    writer.writerow(result.columns)
    for row in result.rows:
        writer.writerow(
            ["" if row[col].is_null else row[col].to_text() for col in result.columns]
        )
    return buffer.getvalue().encode("utf-8")


def to_json(result: ResultSet) -> bytes:
    return json.dumps(result.to_dict(), indent=4, ensure_ascii=False).encode("utf-8")


def sql_literal(cell: Cell) -> str:
    """Render a cell as a SQL literal: NULL, X'..' for blobs, else quoted text."""
    if cell.type is CellType.NULL:
        return "NULL"
    if cell.type is CellType.BLOB:
        return f"X'{cell.value.hex()}'"
    return "'" + cell.to_text().replace("'", "''") + "'"


def to_sql(
    result: ResultSet,
    table_name: str,
    source_query: str | None = None,
    now: datetime | None = None,
) -> bytes:
    now = now or datetime.now()
    lines = [
        f"-- Export generated on {now:%Y-%m-%d %H:%M:%S}",
        "-- Table: " + " ".join(table_name.split()),
    ]
    if source_query:
        lines.append("-- Query: " + " ".join(source_query.split()))
    lines.append("")

    target = quote_identifier(table_name)
    columns = ", ".join(quote_identifier(col) for col in result.columns)
    for row in result.rows:
        values = ", ".join(sql_literal(row[col]) for col in result.columns)
        lines.append(f"INSERT INTO {target} ({columns}) VALUES ({values});")
    return ("\n".join(lines) + "\n").encode("utf-8")
