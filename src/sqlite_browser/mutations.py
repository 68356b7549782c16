"""
mutations.py - Insert, update, delete and drop-table primitives.

Every value coming from structured input is bound as a parameter.
Table and column names are whitelisted against the live catalog
before they are quoted into a statement.

Updates and deletes are keyed on the table's single-column primary
key; tables without one (or with a composite key) reject them.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from sqlite_browser.db.connection import with_busy_retry
from sqlite_browser.db.schema import (
    get_primary_key,
    get_table_schema,
    is_reserved_table,
    quote_identifier,
    require_columns,
    require_table,
)
from sqlite_browser.errors import ConstraintError, QueryError, SchemaError, ValidationError

logger = logging.getLogger("sqlite_browser.mutations")


@dataclass(frozen=True)
class Insert:
    table: str
    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateFields:
    table: str
    pk_column: str
    pk_value: Any
    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteBatch:
    table: str
    pk_column: str | None = None
    pk_values: tuple[Any, ...] = ()


@dataclass(frozen=True)
class DropTable:
    table: str


PendingMutation = Insert | UpdateFields | DeleteBatch | DropTable


@dataclass(frozen=True)
class MutationResult:
    """
    Outcome of one mutation.

    ``affected`` is the engine's row count for inserts and updates, and
    the number of requested identifiers for batch deletes.
    """
    table: str
    affected: int
    message: str
    last_row_id: int | None = None


def _has_value(value: Any) -> bool:
    return value is not None and value != ""


def _execute_write(
    conn: sqlite3.Connection, sql: str, params: Sequence[Any] = ()
) -> sqlite3.Cursor:
    try:
        return with_busy_retry(lambda: conn.execute(sql, tuple(params)))
    except conn.Error as e:
        raise QueryError(f"Statement failed: {e}", sql=sql) from e


def insert_row(
    conn: sqlite3.Connection, table_name: str, values: Mapping[str, Any]
) -> MutationResult:
    """
    Insert one row built from the table's columns in schema order.

    Each column takes the supplied value when present and non-empty,
    else its declared default expression when it has one; otherwise it
    is left out so the engine applies its own default or NOT NULL rule.
    Supplied keys that are not columns of the table are ignored.

    Args:
        conn: SQLite connection
        table_name: Target table
        values: Column name -> value

    Returns:
        MutationResult with the new rowid

    Raises:
        SchemaError: If the table does not exist
        ValidationError: If no column ends up in the statement
        QueryError: If the engine rejects the row
    """
    schema = get_table_schema(conn, table_name)

    columns = []
    placeholders = []
    params = []
    for col in schema.columns:
        value = values.get(col.name)
        if _has_value(value):
            columns.append(quote_identifier(col.name))
            placeholders.append("?")
            params.append(value)
        elif col.default_value is not None:
            # Catalog text already parsed by SQLite as a default expression
            columns.append(quote_identifier(col.name))
            placeholders.append(f"({col.default_value})")

    if not columns:
        raise ValidationError("No data to insert", field="values")

    sql = (
        f"INSERT INTO {quote_identifier(table_name)} ({', '.join(columns)}) "
        f"VALUES ({', '.join(placeholders)})"
    )
    cursor = _execute_write(conn, sql, params)
    logger.info(f"Inserted row into {table_name}", extra={"table_name": table_name})
    return MutationResult(
        table=table_name,
        affected=cursor.rowcount,
        message=f"Row inserted successfully into '{table_name}'.",
        last_row_id=cursor.lastrowid,
    )


def update_fields(
    conn: sqlite3.Connection,
    table_name: str,
    pk_column: str,
    pk_value: Any,
    values: Mapping[str, Any],
) -> MutationResult:
    """
    Update the columns of the single row whose primary key equals pk_value.

    ``pk_column`` is never updated, even when present in ``values``.
    An empty set list fails before anything touches the database.

    Raises:
        ValidationError: If no field besides the primary key is supplied
        SchemaError: If the table or a column does not exist, or
            pk_column is not the table's primary key
        ConstraintError: If the table has no single-column primary key
        QueryError: If the engine rejects the update
    """
    set_columns = [name for name in values if name != pk_column]
    if not set_columns:
        raise ValidationError("No fields to update", field="values")

    schema = get_table_schema(conn, table_name)
    primary_key = schema.primary_key
    if primary_key is None:
        raise ConstraintError(
            f"No primary key found for table '{table_name}'. "
            "Update is not supported without a primary key.",
            table_name=table_name,
        )
    if pk_column != primary_key:
        raise SchemaError(
            f"Column '{pk_column}' is not the primary key of '{table_name}'",
            table_name=table_name,
            column_name=pk_column,
        )
    require_columns(schema, set_columns)

    assignments = ", ".join(f"{quote_identifier(name)} = ?" for name in set_columns)
    sql = (
        f"UPDATE {quote_identifier(table_name)} SET {assignments} "
        f"WHERE {quote_identifier(primary_key)} = ?"
    )
    params = [values[name] for name in set_columns] + [pk_value]
    cursor = _execute_write(conn, sql, params)
    logger.info(
        f"Updated {cursor.rowcount} row(s) in {table_name}",
        extra={"table_name": table_name, "fields": len(set_columns)},
    )
    return MutationResult(
        table=table_name,
        affected=cursor.rowcount,
        message=f"Record updated successfully in '{table_name}'.",
    )


def update_row(
    conn: sqlite3.Connection, table_name: str, pk_value: Any, values: Mapping[str, Any]
) -> MutationResult:
    """Update one row, discovering the primary key column from the schema."""
    primary_key = get_primary_key(conn, table_name)
    if primary_key is None:
        raise ConstraintError(
            f"No primary key found for table '{table_name}'. "
            "Update is not supported without a primary key.",
            table_name=table_name,
        )
    return update_fields(conn, table_name, primary_key, pk_value, values)


def delete_rows(
    conn: sqlite3.Connection,
    table_name: str,
    pk_values: Sequence[Any],
    pk_column: str | None = None,
) -> MutationResult:
    """
    Delete the rows whose primary key is in pk_values.

    One ``DELETE ... WHERE pk IN (?, ...)`` is issued. The reported count
    is the number of identifiers requested, not a verified row count.
    When ``pk_column`` is given it must name the discovered primary key.

    Raises:
        SchemaError: If the table does not exist or pk_column is not
            its primary key
        ConstraintError: If the table has no single-column primary key
        ValidationError: If pk_values is empty
        QueryError: If the engine rejects the delete
    """
    primary_key = get_primary_key(conn, table_name)
    if primary_key is None:
        raise ConstraintError(
            f"No primary key found for table '{table_name}'. "
            "Deletion is not supported without a primary key.",
            table_name=table_name,
        )
    if pk_column is not None and pk_column != primary_key:
        raise SchemaError(
            f"Column '{pk_column}' is not the primary key of '{table_name}'",
            table_name=table_name,
            column_name=pk_column,
        )
    ids = list(pk_values)
    if not ids:
        raise ValidationError("No rows selected for deletion", field="pk_values")

    placeholders = ", ".join("?" for _ in ids)
    sql = (
        f"DELETE FROM {quote_identifier(table_name)} "
        f"WHERE {quote_identifier(primary_key)} IN ({placeholders})"
    )
    _execute_write(conn, sql, ids)
    logger.info(f"Deleted {len(ids)} row(s) from {table_name}", extra={"table_name": table_name})
    return MutationResult(
        table=table_name,
        affected=len(ids),
        message=f"{len(ids)} row(s) deleted successfully from '{table_name}'.",
    )


def drop_table(conn: sqlite3.Connection, table_name: str) -> MutationResult:
    """
    Drop a user table.

    Raises:
        SchemaError: If the table does not exist
        ValidationError: If the table is owned by the storage engine
        QueryError: If the engine rejects the drop
    """
    require_table(conn, table_name)
    if is_reserved_table(table_name):
        raise ValidationError("Cannot delete system tables", field="table", value=table_name)

    _execute_write(conn, f"DROP TABLE IF EXISTS {quote_identifier(table_name)}")
    logger.info(f"Dropped table {table_name}", extra={"table_name": table_name})
    return MutationResult(
        table=table_name,
        affected=0,
        message=f"Table '{table_name}' deleted successfully.",
    )


def apply_mutation(conn: sqlite3.Connection, mutation: PendingMutation) -> MutationResult:
    """Execute a pending mutation."""
    if isinstance(mutation, Insert):
        return insert_row(conn, mutation.table, mutation.values)
    if isinstance(mutation, UpdateFields):
        return update_fields(
            conn, mutation.table, mutation.pk_column, mutation.pk_value, mutation.values
        )
    if isinstance(mutation, DeleteBatch):
        return delete_rows(conn, mutation.table, mutation.pk_values, pk_column=mutation.pk_column)
    if isinstance(mutation, DropTable):
        return drop_table(conn, mutation.table)
    raise ValidationError(f"Unsupported mutation: {type(mutation).__name__}")
