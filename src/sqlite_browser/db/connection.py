"""
connection.py - SQLite database connection management.

Handles file validation, passphrase negotiation for encrypted
databases, PRAGMA configuration, busy retries and statement timeouts.

Every logical operation opens its own connection and closes it
afterwards; connections are never pooled or shared across requests.
"""

import importlib
import logging
import os
import re
import sqlite3
import time
from contextlib import contextmanager
from types import ModuleType
from typing import Any, Callable, Iterator, TypeVar

from sqlite_browser.config import (
    BUSY_RETRY_ATTEMPTS,
    BUSY_RETRY_BASE_DELAY_SECONDS,
    CANARY_QUERY,
    DATABASE_EXTENSIONS,
    DEFAULT_DRIVER,
    DRIVER_BUSY_TIMEOUT_SECONDS,
    MIN_DATABASE_FILE_SIZE,
    PERFORMANCE_PRAGMAS,
    PROGRESS_HANDLER_STEPS,
    SQLITE_MAGIC_HEADER,
)
from sqlite_browser.db.keys import KEY_STRATEGIES, KeyFormatCache, KeyStrategy, candidate_commands
from sqlite_browser.errors import DatabaseConnectionError, DriverUnavailableError, FileError
from sqlite_browser.utils.hashing import key_format_cache_key

logger = logging.getLogger("sqlite_browser.db")

T = TypeVar("T")

_SEGMENT_SPLIT = re.compile(r"[\\/]")


def has_traversal(path: str) -> bool:
    """Return True if any path segment is a parent-directory reference."""
    return any(segment == ".." for segment in _SEGMENT_SPLIT.split(path))


def resolve_database_path(base_dir: str, name: str) -> str:
    """
    Join a caller-supplied database name onto the configured directory.

    Args:
        base_dir: Directory holding the databases
        name: Database file name as selected by the user

    Returns:
        Path to the database file

    Raises:
        FileError: If the name is empty, absolute or contains traversal
    """
    if not name:
        raise FileError("No database selected")
    if has_traversal(name) or os.path.isabs(name):
        raise FileError("Invalid database selected", path=name)
    return os.path.join(base_dir, name)


def list_databases(base_dir: str) -> list[str]:
    """
    List database file names in a directory, sorted by name.

    Only regular files with a known database extension are returned;
    their headers are not inspected.

    Raises:
        FileError: If the directory cannot be read
    """
    try:
        entries = os.listdir(base_dir)
    except OSError as e:
        raise FileError(f"Cannot read database directory: {e}", path=base_dir) from e
    return sorted(
        name for name in entries
        if name.lower().endswith(DATABASE_EXTENSIONS)
        and os.path.isfile(os.path.join(base_dir, name))
    )


def read_header(db_path: str) -> bytes:
    """
    Validate a database file and return its leading 16 bytes.

    Raises:
        FileError: If the path has traversal segments, is missing,
            unreadable or shorter than a database header
    """
    if has_traversal(db_path):
        raise FileError("Invalid database path", path=db_path)
    if not os.path.isfile(db_path):
        raise FileError("Database file does not exist", path=db_path)
    try:
        size = os.path.getsize(db_path)
        if size < MIN_DATABASE_FILE_SIZE:
            raise FileError(
                f"File is too small to be a database ({size} bytes)", path=db_path
            )
        with open(db_path, "rb") as f:
            return f.read(MIN_DATABASE_FILE_SIZE)
    except OSError as e:
        raise FileError(f"Database file is not readable: {e}", path=db_path) from e


def is_sqlite_database(db_path: str) -> bool:
    """Return True if the file carries the unencrypted SQLite header."""
    try:
        return read_header(db_path) == SQLITE_MAGIC_HEADER
    except FileError:
        return False


def load_driver(name: str = DEFAULT_DRIVER) -> ModuleType:
    """
    Import the DB-API module used to open connections.

    Raises:
        DriverUnavailableError: If the driver is not installed
    """
    try:
        return importlib.import_module(name)
    except ImportError as e:
        raise DriverUnavailableError(f"Database driver '{name}' is not available: {e}", driver=name) from e


def create_connection(
    db_path: str,
    passphrase: str | bytes | None = None,
    cache: KeyFormatCache | None = None,
    driver: ModuleType | None = None,
    strategies: tuple[KeyStrategy, ...] = KEY_STRATEGIES,
) -> sqlite3.Connection:
    """
    Open a database file, unlocking it with a passphrase when needed.

    Without a passphrase the file must carry the plain SQLite header.
    With one, a memoized establishment command is tried first; if its
    canary read fails the cache entry is dropped and every strategy is
    tried in order. The winning command is memoized in ``cache``.

    Performance PRAGMAs are applied to every connection returned.

    Args:
        db_path: Path to SQLite database file
        passphrase: Optional encryption passphrase (text or bytes)
        cache: Optional key-format cache shared across calls
        driver: DB-API module; defaults to the standard sqlite3
        strategies: Establishment strategy table, in trial order

    Returns:
        Configured connection

    Raises:
        FileError: If the file is missing, unreadable or too small
        DatabaseConnectionError: If the file cannot be opened or unlocked
    """
    header = read_header(db_path)
    driver = driver or sqlite3

    if not passphrase:
        if header != SQLITE_MAGIC_HEADER:
            raise DatabaseConnectionError(
                "Database appears to be encrypted, passphrase required", path=db_path
            )
        conn = _open_raw(driver, db_path)
    elif header == SQLITE_MAGIC_HEADER:
        logger.debug("Plain database header, ignoring passphrase", extra={"db_path": db_path})
        conn = _open_raw(driver, db_path)
    else:
        conn = _open_encrypted(driver, db_path, passphrase, cache, strategies)

    try:
        _apply_pragmas(conn, driver)
    except DatabaseConnectionError:
        conn.close()
        raise
    return conn


def close_connection(conn: sqlite3.Connection | None) -> None:
    """Close a connection. Safe to call repeatedly or with None."""
    if conn is not None:
        conn.close()


@contextmanager
def open_database(
    db_path: str,
    passphrase: str | bytes | None = None,
    cache: KeyFormatCache | None = None,
    driver: ModuleType | None = None,
) -> Iterator[sqlite3.Connection]:
    """Open a connection for the duration of one logical operation."""
    conn = create_connection(db_path, passphrase, cache=cache, driver=driver)
    try:
        yield conn
    finally:
        close_connection(conn)


def _open_raw(driver: ModuleType, db_path: str) -> sqlite3.Connection:
    try:
        return driver.connect(
            db_path,
            timeout=DRIVER_BUSY_TIMEOUT_SECONDS,
            isolation_level=None,  # Autocommit; one statement per operation
            check_same_thread=False,
        )
    except driver.Error as e:
        raise DatabaseConnectionError(
            f"Failed to connect to database: {e}", path=db_path
        ) from e


def _open_encrypted(
    driver: ModuleType,
    db_path: str,
    passphrase: str | bytes,
    cache: KeyFormatCache | None,
    strategies: tuple[KeyStrategy, ...],
) -> sqlite3.Connection:
    cache_key = key_format_cache_key(db_path, passphrase)

    if cache is not None:
        cached_command = cache.get(cache_key)
        if cached_command is not None:
            conn = _try_establish(driver, db_path, cached_command)
            if conn is not None:
                logger.debug("Key format cache hit", extra={"db_path": db_path})
                return conn
            cache.invalidate(cache_key)
            logger.info("Cached key format failed canary check, retrying all formats",
                        extra={"db_path": db_path})

    for index, (name, command) in enumerate(candidate_commands(passphrase, strategies)):
        conn = _try_establish(driver, db_path, command)
        if conn is not None:
            if cache is not None:
                cache.set(cache_key, command)
            logger.debug(
                f"Unlocked database with key strategy '{name}'",
                extra={"db_path": db_path, "strategy": name, "attempt": index + 1},
            )
            return conn

    raise DatabaseConnectionError(
        "Invalid encryption key or unsupported encryption format", path=db_path
    )


def _try_establish(
    driver: ModuleType, db_path: str, command: str
) -> sqlite3.Connection | None:
    """Apply one establishment command on a fresh connection and canary-test it."""
    conn = _open_raw(driver, db_path)
    try:
        conn.execute(command)
        conn.execute(CANARY_QUERY).fetchone()
    except driver.Error:
        conn.close()
        return None
    return conn


def _apply_pragmas(conn: sqlite3.Connection, driver: ModuleType) -> None:
    """
    Apply the fixed performance PRAGMA settings.

    Args:
        conn: SQLite connection
        driver: DB-API module that opened the connection
    """
    for pragma, value in PERFORMANCE_PRAGMAS.items():
        try:
            conn.execute(f"PRAGMA {pragma} = {value}")
        except driver.Error as e:
            raise DatabaseConnectionError(f"Failed to set PRAGMA {pragma}: {e}") from e


def is_busy_error(error: BaseException) -> bool:
    """Return True for driver errors caused by a locked or busy database."""
    if type(error).__name__ != "OperationalError":
        return False
    message = str(error).lower()
    return "locked" in message or "busy" in message


def with_busy_retry(
    operation: Callable[[], T],
    attempts: int = BUSY_RETRY_ATTEMPTS,
    base_delay: float = BUSY_RETRY_BASE_DELAY_SECONDS,
) -> T:
    """
    Run an operation, retrying when the database is locked or busy.

    Retries up to ``attempts`` times with exponential backoff. Any other
    error, or a busy error on the last attempt, propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_busy_error(e) or attempt >= attempts:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"Database busy, retrying in {delay:.3f}s",
                extra={"attempt": attempt + 1, "max_attempts": attempts},
            )
            time.sleep(delay)
            attempt += 1


class Deadline:
    """Tracks whether a statement ran past its time budget."""

    def __init__(self, seconds: float | None) -> None:
        self.seconds = seconds
        self.expires_at = None if not seconds else time.monotonic() + seconds
        self.expired = False

    def check(self) -> int:
        # Non-zero return aborts the running statement
        if self.expires_at is not None and time.monotonic() > self.expires_at:
            self.expired = True
            return 1
        return 0


@contextmanager
def statement_timeout(conn: Any, seconds: float | None) -> Iterator[Deadline]:
    """
    Interrupt statements that run longer than ``seconds``.

    Yields a Deadline whose ``expired`` flag tells the caller that an
    interrupted-statement error came from the timeout.
    """
    deadline = Deadline(seconds)
    if deadline.expires_at is None:
        yield deadline
        return
    conn.set_progress_handler(deadline.check, PROGRESS_HANDLER_STEPS)
    try:
        yield deadline
    finally:
        conn.set_progress_handler(None, PROGRESS_HANDLER_STEPS)
