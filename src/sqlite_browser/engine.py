"""
engine.py - Database browser facade.

The DatabaseBrowser is the primary public interface. Each method is
one self-contained operation: open a connection, do the work, close
the connection. Nothing is pooled or reused between calls; the only
state carried across calls is the injected key-format cache.
"""

import sqlite3
from contextlib import contextmanager
from types import ModuleType
from typing import Any, Iterator, Mapping, Sequence

from sqlite_browser.config import DEFAULT_PAGE_SIZE, DEFAULT_STATEMENT_TIMEOUT_SECONDS, Settings
from sqlite_browser.db.connection import load_driver, open_database, resolve_database_path
from sqlite_browser.db.keys import KeyFormatCache
from sqlite_browser.db.schema import (
    DatabaseInfo,
    TableSchema,
    get_database_info,
    get_primary_key,
    get_table_schema,
    list_tables,
    require_table,
    table_exists,
)
from sqlite_browser.errors import ValidationError
from sqlite_browser.export import ExportFormat, parse_format, serialize
from sqlite_browser.mutations import (
    MutationResult,
    PendingMutation,
    apply_mutation,
    delete_rows,
    drop_table,
    insert_row,
    update_fields,
    update_row,
)
from sqlite_browser.query import (
    CountMode,
    NoResult,
    Page,
    ResultSet,
    browse_table,
    count_total,
    execute,
    is_paginable,
    paginate,
)
from sqlite_browser.session import SessionState


class DatabaseBrowser:
    """
    Browse, query and mutate one database file.
    """

    def __init__(
        self,
        db_path: str,
        passphrase: str | bytes | None = None,
        cache: KeyFormatCache | None = None,
        driver: ModuleType | None = None,
        statement_timeout: float | None = DEFAULT_STATEMENT_TIMEOUT_SECONDS,
        count_mode: CountMode = CountMode.WRAP,
    ):
        self._db_path = db_path
        self._passphrase = passphrase
        self._cache = cache
        self._driver = driver
        self._statement_timeout = statement_timeout
        self._count_mode = count_mode

    @classmethod
    def from_session(
        cls,
        settings: Settings,
        db_name: str,
        session: SessionState,
        driver: ModuleType | None = None,
    ) -> "DatabaseBrowser":
        """
        Build a browser for a database selected by name within a session.

        The session's passphrase and key-format cache are used, and the
        selection is remembered as the session's last database.
        """
        db_path = resolve_database_path(settings.db_dir, db_name)
        session.select_database(db_name)
        return cls(
            db_path,
            passphrase=session.passphrase,
            cache=session.key_format_cache,
            driver=driver or load_driver(settings.driver),
            statement_timeout=settings.statement_timeout,
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection for one operation."""
        with open_database(
            self._db_path, self._passphrase, cache=self._cache, driver=self._driver
        ) as conn:
            yield conn

    def check(self) -> None:
        """Open and close the database, raising if it cannot be used."""
        with self.connection():
            pass

    def tables(self, include_internal: bool = False) -> list[str]:
        with self.connection() as conn:
            return list_tables(conn, include_internal=include_internal)

    def info(self) -> DatabaseInfo:
        with self.connection() as conn:
            return get_database_info(conn, self._db_path)

    def schema(self, table_name: str) -> TableSchema:
        with self.connection() as conn:
            return get_table_schema(conn, table_name)

    def primary_key(self, table_name: str) -> str | None:
        with self.connection() as conn:
            return get_primary_key(conn, table_name)

    def browse(self, table_name: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        with self.connection() as conn:
            return browse_table(
                conn, table_name, page, page_size,
                timeout=self._statement_timeout, mode=self._count_mode,
            )

    def query(
        self,
        sql: str,
        page: int | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page | ResultSet | NoResult:
        """
        Run a free-text statement.

        With a page number, paginable statements return a Page; any
        other statement returns a ResultSet or NoResult.
        """
        with self.connection() as conn:
            if page is not None and is_paginable(sql):
                return paginate(
                    conn, sql, page, page_size,
                    timeout=self._statement_timeout, mode=self._count_mode,
                )
            return execute(conn, sql, timeout=self._statement_timeout)

    def count(self, sql: str) -> int:
        with self.connection() as conn:
            return count_total(conn, sql, mode=self._count_mode, timeout=self._statement_timeout)

    def insert(self, table_name: str, values: Mapping[str, Any]) -> MutationResult:
        with self.connection() as conn:
            return insert_row(conn, table_name, values)

    def update(
        self, table_name: str, pk_column: str, pk_value: Any, values: Mapping[str, Any]
    ) -> MutationResult:
        with self.connection() as conn:
            return update_fields(conn, table_name, pk_column, pk_value, values)

    def update_row(self, table_name: str, pk_value: Any, values: Mapping[str, Any]) -> MutationResult:
        with self.connection() as conn:
            return update_row(conn, table_name, pk_value, values)

    def delete(
        self, table_name: str, pk_values: Sequence[Any], pk_column: str | None = None
    ) -> MutationResult:
        with self.connection() as conn:
            return delete_rows(conn, table_name, pk_values, pk_column=pk_column)

    def drop_table(self, table_name: str) -> MutationResult:
        with self.connection() as conn:
            return drop_table(conn, table_name)

    def apply(self, mutation: PendingMutation) -> MutationResult:
        with self.connection() as conn:
            return apply_mutation(conn, mutation)

    def export(
        self,
        sql: str,
        fmt: str | ExportFormat,
        table_name: str | None = None,
    ) -> bytes:
        """
        Run a statement without pagination and serialize every row.

        A SQL export writes INSERT lines for ``table_name``, or for the
        table the statement reads from; either must exist in the catalog.

        Raises:
            ValidationError: If the statement returns no rows, or a SQL
                export has no recognisable target table
            SchemaError: If ``table_name`` is not a table of the database
        """
        fmt = parse_format(fmt)
        with self.connection() as conn:
            result = execute(conn, sql, timeout=self._statement_timeout)
            if isinstance(result, NoResult):
                raise ValidationError("No data to export")
            if fmt is ExportFormat.SQL:
                table_name = self._export_target(conn, result, table_name)
        return serialize(result, fmt, table_name=table_name, source_query=sql)

    @staticmethod
    def _export_target(conn: sqlite3.Connection, result: ResultSet, table_name: str | None) -> str:
        if table_name:
            return require_table(conn, table_name)
        if result.source_table and table_exists(conn, result.source_table):
            return result.source_table
        raise ValidationError(
            "SQL export needs a target table name", field="table_name", value=result.source_table
        )
