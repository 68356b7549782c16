"""
errors.py - Domain-specific exceptions for sqlite_browser.

All exceptions inherit from BrowserError for unified handling.
Each exception type represents a distinct failure mode.
"""

from typing import Any


class BrowserError(Exception):
    """Base exception for all sqlite_browser errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class FileError(BrowserError):
    """
    Raised when a database file cannot be used.

    This includes missing or unreadable files, files too short to
    carry a header, and paths containing traversal segments.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        context = {}
        if path is not None:
            context["path"] = path
        super().__init__(message, context=context)
        self.path = path


class DatabaseConnectionError(BrowserError):
    """
    Raised when a connection cannot be opened or unlocked.

    Covers driver failures, a missing passphrase for an encrypted file,
    and exhausting every key-establishment strategy.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        context = {}
        if path is not None:
            context["path"] = path
        super().__init__(message, context=context)
        self.path = path


class DriverUnavailableError(DatabaseConnectionError):
    """
    Raised when the configured DB-API driver cannot be imported.

    This is a deployment fault, not a problem with the file or the
    passphrase.
    """

    def __init__(self, message: str, driver: str | None = None) -> None:
        super().__init__(message)
        if driver is not None:
            self.context["driver"] = driver
        self.driver = driver


class SchemaError(BrowserError):
    """
    Raised when a table or column is unknown or introspection fails.

    Identifiers are checked against the live catalog before they are
    embedded in any statement; a failed check raises this error.
    """

    def __init__(
        self, message: str, table_name: str | None = None, column_name: str | None = None
    ) -> None:
        context = {}
        if table_name is not None:
            context["table_name"] = table_name
        if column_name is not None:
            context["column_name"] = column_name
        super().__init__(message, context=context)
        self.table_name = table_name
        self.column_name = column_name


class QueryError(BrowserError):
    """
    Raised when a statement fails to prepare or execute.

    Wraps SQLite errors with the statement that was being run.
    """

    def __init__(self, message: str, sql: str | None = None) -> None:
        context = {}
        if sql is not None:
            # Truncate long SQL for readability
            context["sql"] = sql[:200] + "..." if len(sql) > 200 else sql
        super().__init__(message, context=context)
        self.sql = sql


class ConstraintError(BrowserError):
    """
    Raised when a mutation needs a primary key the table does not have.

    No partial work is performed before this error is raised.
    """

    def __init__(self, message: str, table_name: str | None = None) -> None:
        context = {}
        if table_name is not None:
            context["table_name"] = table_name
        super().__init__(message, context=context)
        self.table_name = table_name


class ValidationError(BrowserError):
    """
    Raised when input validation fails.

    This includes empty insert or update field sets, empty exports,
    unsupported export formats and invalid pagination values.
    """

    def __init__(
        self, message: str, field: str | None = None, value: Any = None
    ) -> None:
        context = {}
        if field is not None:
            context["field"] = field
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(message, context=context)
        self.field = field
        self.value = value
