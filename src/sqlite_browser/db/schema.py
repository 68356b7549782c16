"""
schema.py - Table introspection and identifier whitelisting.

SQLite cannot bind identifiers as parameters, so every table or column
name embedded in a statement is first checked against the live catalog.
Only names that pass the check reach quote_identifier().
"""

import os
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from sqlite_browser.config import RESERVED_TABLE_PREFIX
from sqlite_browser.errors import SchemaError


@dataclass(frozen=True)
class ColumnInfo:
    """One column as reported by PRAGMA table_info."""
    name: str
    declared_type: str
    not_null: bool
    default_value: str | None
    is_primary_key: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "declared_type": self.declared_type,
            "not_null": self.not_null,
            "default_value": self.default_value,
            "is_primary_key": self.is_primary_key,
        }


@dataclass(frozen=True)
class TableSchema:
    """Ordered columns of one table."""
    table_name: str
    columns: tuple[ColumnInfo, ...]

    @property
    def column_names(self) -> list[str]:
        return [col.name for col in self.columns]

    @property
    def primary_key(self) -> str | None:
        """The single primary-key column, or None."""
        for col in self.columns:
            if col.is_primary_key:
                return col.name
        return None

    def column(self, name: str) -> ColumnInfo | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None


@dataclass(frozen=True)
class DatabaseInfo:
    """Summary of a database file for display."""
    path: str
    size_bytes: int
    table_counts: dict[str, int] = field(default_factory=dict)

    @property
    def total_tables(self) -> int:
        return len(self.table_counts)


def quote_identifier(name: str) -> str:
    """Quote an identifier for SQLite. Callers must whitelist ``name`` first."""
    return '"' + name.replace('"', '""') + '"'


def is_reserved_table(name: str) -> bool:
    """Return True for tables owned by the storage engine."""
    return name.lower().startswith(RESERVED_TABLE_PREFIX)


def list_tables(conn: sqlite3.Connection, include_internal: bool = False) -> list[str]:
    """
    List table names from the catalog.

    Args:
        conn: SQLite connection
        include_internal: Include engine-owned ``sqlite_`` tables

    Returns:
        Table names ordered by name

    Raises:
        SchemaError: If the catalog cannot be read
    """
    try:
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        )
        names = [row[0] for row in cursor.fetchall()]
    except conn.Error as e:
        raise SchemaError(f"Failed to read catalog: {e}") from e
    if include_internal:
        return names
    return [name for name in names if not is_reserved_table(name)]


def table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    """Exact-match lookup of a table name in the live catalog."""
    return table_name in list_tables(conn, include_internal=True)


def require_table(conn: sqlite3.Connection, table_name: str) -> str:
    """
    Whitelist check for a caller-supplied table name.

    Returns:
        The table name, safe to pass to quote_identifier()

    Raises:
        SchemaError: If no table with exactly this name exists
    """
    if not table_name or not table_exists(conn, table_name):
        raise SchemaError(f"Table '{table_name}' does not exist", table_name=table_name)
    return table_name


def get_columns(conn: sqlite3.Connection, table_name: str) -> list[ColumnInfo]:
    """
    Get column metadata for a table, in schema order.

    Raises:
        SchemaError: If the table is unknown or introspection fails
    """
    require_table(conn, table_name)
    try:
        cursor = conn.execute(f"PRAGMA table_info({quote_identifier(table_name)})")
        rows = cursor.fetchall()
    except conn.Error as e:
        raise SchemaError(f"Failed to read table info: {e}", table_name=table_name) from e

    # cid, name, type, notnull, dflt_value, pk (1-based position in the key)
    single_key = sum(1 for row in rows if row[5]) == 1
    return [
        ColumnInfo(
            name=row[1],
            declared_type=row[2] or "",
            not_null=bool(row[3]),
            default_value=row[4],
            is_primary_key=single_key and bool(row[5]),
        )
        for row in rows
    ]


def get_table_schema(conn: sqlite3.Connection, table_name: str) -> TableSchema:
    """Get the full TableSchema for a whitelisted table."""
    return TableSchema(table_name=table_name, columns=tuple(get_columns(conn, table_name)))


def get_primary_key(conn: sqlite3.Connection, table_name: str) -> str | None:
    """
    Return the first column flagged as primary key, or None.

    Composite keys are not flagged, so such tables report None.

    Raises:
        SchemaError: If the table is unknown
    """
    for col in get_columns(conn, table_name):
        if col.is_primary_key:
            return col.name
    return None


def require_columns(schema: TableSchema, names: list[str]) -> None:
    """
    Whitelist check for caller-supplied column names.

    Raises:
        SchemaError: If any name is not a column of the table
    """
    known = set(schema.column_names)
    for name in names:
        if name not in known:
            raise SchemaError(
                f"Column '{name}' does not exist in table '{schema.table_name}'",
                table_name=schema.table_name,
                column_name=name,
            )


def get_database_info(conn: sqlite3.Connection, db_path: str) -> DatabaseInfo:
    """
    Summarize a database: user tables with row counts and file size.

    Raises:
        SchemaError: If the catalog or a table cannot be read
    """
    counts = {}
    for table_name in list_tables(conn):
        try:
            row = conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(table_name)}").fetchone()
        except conn.Error as e:
            raise SchemaError(f"Failed to count rows: {e}", table_name=table_name) from e
        counts[table_name] = row[0]
    return DatabaseInfo(path=db_path, size_bytes=os.path.getsize(db_path), table_counts=counts)
