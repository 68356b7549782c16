"""
config.py - Configuration for sqlite_browser.

Engine constants are immutable and defined at module level.
Deployment settings are read once from the environment into a
frozen Settings object; nothing here is mutable global state.
"""

import os
from dataclasses import dataclass
from typing import Final

from sqlite_browser.errors import ValidationError

# First 16 bytes of every unencrypted SQLite 3 database file
SQLITE_MAGIC_HEADER: Final[bytes] = b"SQLite format 3\x00"

# Files shorter than the header cannot be databases
MIN_DATABASE_FILE_SIZE: Final[int] = 16

# Side-effect-free read used to prove a connection is usable
CANARY_QUERY: Final[str] = "SELECT 1 FROM sqlite_master LIMIT 1"

# Applied after every successful open, encrypted or not
PERFORMANCE_PRAGMAS: Final[dict[str, str]] = {
    "synchronous": "NORMAL",
    "cache_size": "10000",
    "temp_store": "MEMORY",
}

# Tables owned by the storage engine itself
RESERVED_TABLE_PREFIX: Final[str] = "sqlite_"

# Statement keywords that return rows
ROW_RETURNING_KEYWORDS: Final[frozenset[str]] = frozenset(
    {"SELECT", "WITH", "VALUES", "PRAGMA", "EXPLAIN"}
)

# Row-returning keywords that accept a LIMIT/OFFSET suffix
PAGINABLE_KEYWORDS: Final[frozenset[str]] = frozenset({"SELECT", "WITH", "VALUES"})

# Session state limits
QUERY_HISTORY_LIMIT: Final[int] = 20
MAX_SERVER_SESSIONS: Final[int] = 1000
DEFAULT_PAGE_SIZE: Final[int] = 10

# Busy/locked handling
DRIVER_BUSY_TIMEOUT_SECONDS: Final[float] = 5.0
BUSY_RETRY_ATTEMPTS: Final[int] = 3
BUSY_RETRY_BASE_DELAY_SECONDS: Final[float] = 0.05

# Upper bound for a single free-text statement
DEFAULT_STATEMENT_TIMEOUT_SECONDS: Final[float] = 30.0

# Progress handler granularity (VM instructions between deadline checks)
PROGRESS_HANDLER_STEPS: Final[int] = 10_000

# File extensions offered when listing a database directory
DATABASE_EXTENSIONS: Final[tuple[str, ...]] = (".sqlite", ".db", ".sqlite3")

DEFAULT_DRIVER: Final[str] = "sqlite3"

# Environment variable names
ENV_DB_DIR: Final[str] = "SQLITE_BROWSER_DB_DIR"
ENV_PAGE_SIZE: Final[str] = "SQLITE_BROWSER_PAGE_SIZE"
ENV_STATEMENT_TIMEOUT: Final[str] = "SQLITE_BROWSER_STATEMENT_TIMEOUT"
ENV_SESSION_FILE: Final[str] = "SQLITE_BROWSER_SESSION_FILE"
ENV_DRIVER: Final[str] = "SQLITE_BROWSER_DRIVER"
ENV_LOG_LEVEL: Final[str] = "SQLITE_BROWSER_LOG_LEVEL"

DEFAULT_SESSION_FILE: Final[str] = ".sqlite_browser_session.json"


@dataclass(frozen=True)
class Settings:
    """Deployment settings shared by the CLI and the HTTP server."""

    db_dir: str = "."
    page_size: int = DEFAULT_PAGE_SIZE
    statement_timeout: float = DEFAULT_STATEMENT_TIMEOUT_SECONDS
    session_file: str = DEFAULT_SESSION_FILE
    driver: str = DEFAULT_DRIVER
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ValidationError: If a numeric variable is malformed or out of range
        """
        env = os.environ if environ is None else environ

        page_size = _parse_number(env, ENV_PAGE_SIZE, int, DEFAULT_PAGE_SIZE)
        if page_size < 1:
            raise ValidationError("Page size must be at least 1", field=ENV_PAGE_SIZE, value=page_size)

        timeout = _parse_number(env, ENV_STATEMENT_TIMEOUT, float, DEFAULT_STATEMENT_TIMEOUT_SECONDS)
        if timeout <= 0:
            raise ValidationError("Statement timeout must be positive", field=ENV_STATEMENT_TIMEOUT, value=timeout)

        return cls(
            db_dir=env.get(ENV_DB_DIR, "."),
            page_size=page_size,
            statement_timeout=timeout,
            session_file=env.get(ENV_SESSION_FILE, DEFAULT_SESSION_FILE),
            driver=env.get(ENV_DRIVER, DEFAULT_DRIVER),
            log_level=env.get(ENV_LOG_LEVEL, "INFO"),
        )


def _parse_number(env, name: str, kind: type, default):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return kind(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid value for {name}", field=name, value=raw) from e
