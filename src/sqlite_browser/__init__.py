"""
sqlite_browser - Browse, query and edit SQLite databases.

Core engine for a database browser: encrypted-connection negotiation
with key-format memoization, schema introspection, paginated queries,
primary-key driven mutations and result export.
"""

from sqlite_browser.engine import DatabaseBrowser
from sqlite_browser.errors import (
    BrowserError,
    ConstraintError,
    DatabaseConnectionError,
    DriverUnavailableError,
    FileError,
    QueryError,
    SchemaError,
    ValidationError,
)
from sqlite_browser.db.keys import MemoryKeyFormatCache
from sqlite_browser.query import Cell, CellType, NoResult, Page, ResultSet
from sqlite_browser.session import SessionState

__version__ = "0.1.0"
__all__ = [
    # Core
    "DatabaseBrowser",
    "SessionState",
    "MemoryKeyFormatCache",
    # Results
    "Cell",
    "CellType",
    "NoResult",
    "Page",
    "ResultSet",
    # Errors
    "BrowserError",
    "ConstraintError",
    "DatabaseConnectionError",
    "DriverUnavailableError",
    "FileError",
    "QueryError",
    "SchemaError",
    "ValidationError",
]
