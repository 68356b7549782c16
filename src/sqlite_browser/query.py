"""
query.py - Statement execution, pagination and row counting.

Free-text statements are executed verbatim: running arbitrary SQL is
what the tool is for. Only identifiers the engine builds itself (table
names for browsing) go through the schema whitelist.

Row-returning statements produce a ResultSet whose cells are tagged
with SQLite's storage classes; everything else produces NoResult.
"""

import logging
import math
import re
import sqlite3
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from sqlite_browser.config import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_STATEMENT_TIMEOUT_SECONDS,
    PAGINABLE_KEYWORDS,
    ROW_RETURNING_KEYWORDS,
)
from sqlite_browser.db.connection import statement_timeout, with_busy_retry
from sqlite_browser.db.schema import quote_identifier, require_table
from sqlite_browser.errors import QueryError, ValidationError

logger = logging.getLogger("sqlite_browser.query")


class CellType(Enum):
    """SQLite storage classes."""
    NULL = "null"
    INTEGER = "integer"
    REAL = "real"
    TEXT = "text"
    BLOB = "blob"


@dataclass(frozen=True)
class Cell:
    """A single value tagged with its storage class."""
    type: CellType
    value: None | int | float | str | bytes

    @classmethod
    def from_value(cls, value: Any) -> "Cell":
        if value is None:
            return cls(CellType.NULL, None)
        if isinstance(value, bool):
            return cls(CellType.INTEGER, int(value))
        if isinstance(value, int):
            return cls(CellType.INTEGER, value)
        if isinstance(value, float):
            return cls(CellType.REAL, value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls(CellType.BLOB, bytes(value))
        return cls(CellType.TEXT, str(value))

    @property
    def is_null(self) -> bool:
        return self.type is CellType.NULL

    def to_json(self) -> None | int | float | str:
        """JSON-safe value; blobs become lowercase hex."""
        if self.type is CellType.BLOB:
            return self.value.hex()
        return self.value

    def to_text(self) -> str | None:
        """Text rendering used by CSV and SQL exports; None for NULL."""
        if self.type is CellType.NULL:
            return None
        if self.type is CellType.BLOB:
            return self.value.hex()
        return str(self.value)


@dataclass(frozen=True)
class ResultSet:
    """
    Rows returned by one statement.

    Column names are unique within a result; each row maps every
    column name to a Cell. ``source_table`` names the table the rows
    came from when that is known.
    """
    columns: tuple[str, ...]
    rows: tuple[dict[str, Cell], ...]
    source_table: str | None = None

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def plain_rows(self) -> list[dict[str, Any]]:
        """Rows as plain Python values (blobs stay bytes)."""
        return [{col: row[col].value for col in self.columns} for row in self.rows]

    def to_dict(self) -> dict[str, Any]:
        return {
            "columns": list(self.columns),
            "rows": [{col: row[col].to_json() for col in self.columns} for row in self.rows],
        }


@dataclass(frozen=True)
class NoResult:
    """Outcome of a statement that returns no rows."""
    changes: int = 0


@dataclass(frozen=True)
class QuerySpec:
    """Statement text plus optional pagination."""
    sql: str
    limit: int | None = None
    offset: int | None = None

    @classmethod
    def for_page(cls, sql: str, page: int, page_size: int = DEFAULT_PAGE_SIZE) -> "QuerySpec":
        return cls(sql=sql, limit=page_size, offset=page_offset(page, page_size))


@dataclass(frozen=True)
class Page:
    """One page of a row-returning statement plus its total row count."""
    result: ResultSet
    total_rows: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_rows / self.page_size)

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


class CountMode(Enum):
    """How a row-returning statement is turned into a count query."""
    WRAP = "wrap"
    LEGACY = "legacy"


_LEADING_COMMENTS = re.compile(r"^(?:\s|--[^\n]*(?:\n|$)|/\*.*?\*/)*", re.S)
_FIRST_WORD = re.compile(r"[A-Za-z]+")
_TRAILING_SEMICOLONS = re.compile(r"[\s;]+$")

# Legacy rewrite: one pass, no awareness of subqueries or string literals
_LEGACY_SELECT = re.compile(r"^SELECT\s+.*?\s+FROM", re.I)
_LEGACY_ORDER_BY = re.compile(r"\s+ORDER\s+BY\s+.*$", re.I)
_LEGACY_LIMIT = re.compile(r"\s+LIMIT\s+.*$", re.I)

# A trailing LIMIT that is not inside parentheses or a string literal
_TRAILING_LIMIT = re.compile(r"\s+LIMIT\s+[^()'\"]*$", re.I)

# One lexical token of a statement; unterminated quotes fall through to "other"
_TOKEN = re.compile(
    r"""
    (?P<space>\s+)
    | (?P<comment>--[^\n]*|/\*.*?(?:\*/|$))
    | (?P<string>'(?:[^']|'')*')
    | (?P<ident>"(?:[^"]|"")*"|`[^`]*`|\[[^\]]*\]|[A-Za-z_][\w$]*)
    | (?P<other>.)
    """,
    re.S | re.X,
)


def statement_keyword(sql: str) -> str:
    """Return the first keyword of a statement, upper-cased, skipping comments."""
    body = _LEADING_COMMENTS.sub("", sql, count=1)
    match = _FIRST_WORD.match(body)
    return match.group(0).upper() if match else ""


def is_select_like(sql: str) -> bool:
    """True if the statement is expected to return rows."""
    return statement_keyword(sql) in ROW_RETURNING_KEYWORDS


def is_paginable(sql: str) -> bool:
    """True if the statement accepts a LIMIT/OFFSET suffix."""
    return statement_keyword(sql) in PAGINABLE_KEYWORDS


def page_offset(page: int, page_size: int) -> int:
    """
    Offset of a 1-based page.

    Raises:
        ValidationError: If page < 1 or page_size < 1
    """
    if not isinstance(page, int) or isinstance(page, bool) or page < 1:
        raise ValidationError("Page must be an integer >= 1", field="page", value=page)
    if not isinstance(page_size, int) or isinstance(page_size, bool) or page_size < 1:
        raise ValidationError("Page size must be an integer >= 1", field="page_size", value=page_size)
    return (page - 1) * page_size


def _non_negative(value: Any, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer", field=name, value=value)
    return value


def apply_pagination(sql: str, limit: int | None, offset: int | None) -> str:
    """
    Append ``LIMIT n OFFSET m`` to a paginable statement.

    The suffix is added only when both values are given and the
    statement accepts it; other statements are returned unchanged.

    Raises:
        ValidationError: If limit or offset is not a non-negative integer
    """
    if limit is None or offset is None or not is_paginable(sql):
        return sql
    limit = _non_negative(limit, "limit")
    offset = _non_negative(offset, "offset")
    body = _TRAILING_SEMICOLONS.sub("", sql)
    # Newline keeps a trailing line comment from swallowing the suffix
    return f"{body}\nLIMIT {limit} OFFSET {offset}"


def _tokens(sql: str) -> list[re.Match]:
    """Significant tokens of a statement, without whitespace and comments."""
    return [
        match for match in _TOKEN.finditer(sql)
        if match.lastgroup not in ("space", "comment")
    ]


def _is_keyword(token: re.Match, keyword: str) -> bool:
    return token.lastgroup == "ident" and token.group(0).upper() == keyword


def _unquote_identifier(text: str) -> str:
    if text[0] == '"':
        return text[1:-1].replace('""', '"')
    if text[0] in "`[":
        return text[1:-1]
    return text


def strip_trailing_comments(sql: str) -> str:
    """Drop whitespace and comments after the last token of a statement."""
    tokens = _tokens(sql)
    if not tokens:
        return ""
    return sql[:tokens[-1].end()]


def extract_table_name(sql: str) -> str | None:
    """
    Best-effort source table of a ``SELECT ... FROM name`` statement.

    Only a FROM outside parentheses counts, so scalar subqueries in the
    column list are skipped. A schema-qualified target yields its last
    segment. Returns None when no FROM target can be recognised.
    """
    tokens = _tokens(sql)
    if not tokens or not _is_keyword(tokens[0], "SELECT"):
        return None

    depth = 0
    for index, token in enumerate(tokens):
        text = token.group(0)
        if text == "(":
            depth += 1
        elif text == ")":
            depth -= 1
        elif depth == 0 and _is_keyword(token, "FROM"):
            break
    else:
        return None

    name = None
    position = index + 1
    while position < len(tokens) and tokens[position].lastgroup == "ident":
        name = _unquote_identifier(tokens[position].group(0))
        if position + 1 < len(tokens) and tokens[position + 1].group(0) == ".":
            position += 2
            continue
        break
    return name or None


def _unique_columns(names: list[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    unique = []
    for name in names:
        candidate = name
        suffix = 2
        while candidate in seen:
            candidate = f"{name}:{suffix}"
            suffix += 1
        seen.add(candidate)
        unique.append(candidate)
    return tuple(unique)


def execute(
    conn: sqlite3.Connection,
    sql: str,
    limit: int | None = None,
    offset: int | None = None,
    timeout: float | None = DEFAULT_STATEMENT_TIMEOUT_SECONDS,
) -> ResultSet | NoResult:
    """
    Execute a statement.

    Row-returning statements are paginated when both ``limit`` and
    ``offset`` are given and return a ResultSet. Any other statement
    (DDL, DML, multiple statements) runs as a script and returns
    NoResult with the number of rows it changed.

    Args:
        conn: SQLite connection
        sql: Statement text, executed verbatim
        limit: Page size
        offset: Rows to skip
        timeout: Seconds before the statement is interrupted

    Raises:
        ValidationError: If the statement is empty or pagination is invalid
        QueryError: If the statement fails or times out
    """
    text = sql.strip() if sql else ""
    if not text:
        raise ValidationError("Empty statement", field="sql")

    if is_select_like(text):
        statement = apply_pagination(text, limit, offset)
        return _run_rows(conn, statement, timeout, extract_table_name(text))
    return _run_script(conn, text, timeout)


def execute_spec(
    conn: sqlite3.Connection,
    spec: QuerySpec,
    timeout: float | None = DEFAULT_STATEMENT_TIMEOUT_SECONDS,
) -> ResultSet | NoResult:
    return execute(conn, spec.sql, spec.limit, spec.offset, timeout=timeout)


def _run_rows(
    conn: sqlite3.Connection,
    statement: str,
    timeout: float | None,
    source_table: str | None,
) -> ResultSet:
    def fetch():
        cursor = conn.execute(statement)
        names = [d[0] for d in cursor.description or ()]
        return names, cursor.fetchall()

    with statement_timeout(conn, timeout) as deadline:
        try:
            names, raw_rows = with_busy_retry(fetch)
        except (conn.Error, conn.Warning) as e:
            raise _query_error(e, statement, deadline) from e

    columns = _unique_columns(names)
    rows = tuple(
        {col: Cell.from_value(value) for col, value in zip(columns, raw)}
        for raw in raw_rows
    )
    return ResultSet(columns=columns, rows=rows, source_table=source_table)


def _run_script(conn: sqlite3.Connection, script: str, timeout: float | None) -> NoResult:
    # Scripts are not retried on busy: earlier statements may already be committed
    before = conn.total_changes
    with statement_timeout(conn, timeout) as deadline:
        try:
            conn.executescript(script)
        except (conn.Error, conn.Warning) as e:
            raise _query_error(e, script, deadline) from e
    changes = conn.total_changes - before
    logger.debug(f"Statement executed, {changes} row(s) changed", extra={"changes": changes})
    return NoResult(changes=changes)


def _query_error(error: Exception, sql: str, deadline) -> QueryError:
    if deadline.expired:
        logger.warning("Statement interrupted by timeout", extra={"timeout": deadline.seconds})
        return QueryError(f"Statement timed out after {deadline.seconds}s", sql=sql)
    return QueryError(f"Query execution failed: {error}", sql=sql)


def legacy_count_query(sql: str) -> str:
    """
    Rewrite a SELECT into a count with the original text heuristic.

    Replaces the first ``SELECT ... FROM`` with ``SELECT COUNT(*) FROM``
    and strips a trailing ORDER BY and a trailing LIMIT. Statements
    with nested SELECTs, ORDER BY inside string literals or unusual
    formatting can be mis-transformed.
    """
    count_sql = _LEGACY_SELECT.sub("SELECT COUNT(*) FROM", sql, count=1)
    count_sql = _LEGACY_ORDER_BY.sub("", count_sql, count=1)
    count_sql = _LEGACY_LIMIT.sub("", count_sql, count=1)
    return count_sql


def wrapped_count_query(sql: str) -> str:
    """
    Count the rows of a statement by wrapping it as a subquery.

    Trailing comments and a trailing top-level LIMIT/OFFSET are removed
    first so the count covers every row, not just one page.
    """
    body = _TRAILING_SEMICOLONS.sub("", strip_trailing_comments(sql))
    body = _TRAILING_LIMIT.sub("", strip_trailing_comments(body))
    # Newlines keep a trailing line comment from swallowing the ")"
    return f"SELECT COUNT(*) FROM (\n{body}\n) AS _t"


def derive_count_query(sql: str, mode: CountMode = CountMode.WRAP) -> str:
    if mode is CountMode.LEGACY:
        return legacy_count_query(sql.strip())
    return wrapped_count_query(sql)


def count_total(
    conn: sqlite3.Connection,
    sql: str,
    mode: CountMode = CountMode.WRAP,
    timeout: float | None = DEFAULT_STATEMENT_TIMEOUT_SECONDS,
) -> int:
    """
    Total number of rows a statement returns, ignoring any trailing LIMIT.

    Raises:
        QueryError: If the statement cannot be paginated or the count fails
    """
    if not is_paginable(sql or ""):
        raise QueryError("Row count requires a SELECT, WITH or VALUES statement", sql=sql)
    count_sql = derive_count_query(sql, mode)

    def fetch():
        return conn.execute(count_sql).fetchone()

    with statement_timeout(conn, timeout) as deadline:
        try:
            row = with_busy_retry(fetch)
        except (conn.Error, conn.Warning) as e:
            raise _query_error(e, count_sql, deadline) from e
    if row is None or row[0] is None:
        return 0
    return int(row[0])


def paginate(
    conn: sqlite3.Connection,
    sql: str,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    timeout: float | None = DEFAULT_STATEMENT_TIMEOUT_SECONDS,
    mode: CountMode = CountMode.WRAP,
) -> Page:
    """
    Fetch one page of a row-returning statement together with its total.

    Raises:
        ValidationError: If page or page_size is invalid
        QueryError: If the statement is not paginable or fails
    """
    spec = QuerySpec.for_page(sql, page, page_size)
    if not is_paginable(sql):
        raise QueryError("Only SELECT, WITH or VALUES statements can be paginated", sql=sql)
    result = execute_spec(conn, spec, timeout=timeout)
    total = count_total(conn, sql, mode=mode, timeout=timeout)
    return Page(result=result, total_rows=total, page=page, page_size=page_size)


def browse_table(
    conn: sqlite3.Connection,
    table_name: str,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    timeout: float | None = DEFAULT_STATEMENT_TIMEOUT_SECONDS,
    mode: CountMode = CountMode.WRAP,
) -> Page:
    """
    Page through every row of a table.

    Raises:
        SchemaError: If the table does not exist
    """
    require_table(conn, table_name)
    sql = f"SELECT * FROM {quote_identifier(table_name)}"
    page_result = paginate(conn, sql, page, page_size, timeout=timeout, mode=mode)
    return replace(page_result, result=replace(page_result.result, source_table=table_name))
