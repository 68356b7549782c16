"""
test_query.py - Tests for statement execution, pagination and counting.
"""

import pytest

from sqlite_browser.errors import QueryError, SchemaError, ValidationError
from sqlite_browser.query import (
    CellType,
    CountMode,
    NoResult,
    QuerySpec,
    ResultSet,
    apply_pagination,
    browse_table,
    count_total,
    derive_count_query,
    execute,
    execute_spec,
    extract_table_name,
    is_paginable,
    is_select_like,
    legacy_count_query,
    page_offset,
    paginate,
    statement_keyword,
    wrapped_count_query,
)


class TestStatementClassification:
    """Tests for keyword detection."""

    @pytest.mark.parametrize("sql, keyword", [
        ("SELECT 1", "SELECT"),
        ("  select 1", "SELECT"),
        ("-- comment\nSELECT 1", "SELECT"),
        ("/* block */ WITH t AS (SELECT 1) SELECT * FROM t", "WITH"),
        ("update users set age = 1", "UPDATE"),
        ("", ""),
    ])
    def test_statement_keyword(self, sql, keyword):
        assert statement_keyword(sql) == keyword

    def test_row_returning(self):
        assert is_select_like("PRAGMA table_info(users)")
        assert is_select_like("EXPLAIN SELECT 1")
        assert not is_select_like("DELETE FROM users")

    def test_paginable(self):
        assert is_paginable("VALUES (1), (2)")
        assert not is_paginable("PRAGMA table_info(users)")


class TestPagination:
    """Tests for LIMIT/OFFSET handling."""

    def test_page_offset(self):
        assert page_offset(1, 10) == 0
        assert page_offset(3, 5) == 10

    @pytest.mark.parametrize("page, page_size", [(0, 10), (-1, 10), (1, 0), ("2", 10)])
    def test_page_offset_rejects_bad_values(self, page, page_size):
        with pytest.raises(ValidationError):
            page_offset(page, page_size)

    def test_suffix_appended(self):
        assert apply_pagination("SELECT * FROM users;", 10, 20) == "SELECT * FROM users\nLIMIT 10 OFFSET 20"

    def test_suffix_needs_both_values(self):
        assert apply_pagination("SELECT * FROM users", 10, None) == "SELECT * FROM users"
        assert apply_pagination("SELECT * FROM users", None, 0) == "SELECT * FROM users"

    def test_non_select_unchanged(self):
        assert apply_pagination("DELETE FROM users", 10, 0) == "DELETE FROM users"

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            apply_pagination("SELECT 1", -1, 0)

    def test_query_spec_for_page(self):
        spec = QuerySpec.for_page("SELECT 1", page=2, page_size=25)
        assert (spec.limit, spec.offset) == (25, 25)


class TestExecute:
    """Tests for running statements."""

    def test_select_returns_typed_cells(self, conn):
        result = execute(conn, "SELECT 1 AS i, 1.5 AS r, 'x' AS t, NULL AS n, X'0102' AS b")
        row = result.rows[0]
        assert result.columns == ("i", "r", "t", "n", "b")
        assert [row[c].type for c in result.columns] == [
            CellType.INTEGER, CellType.REAL, CellType.TEXT, CellType.NULL, CellType.BLOB,
        ]
        assert row["b"].value == b"\x01\x02"
        assert result.to_dict()["rows"] == [{"i": 1, "r": 1.5, "t": "x", "n": None, "b": "0102"}]

    def test_select_with_pagination(self, conn):
        result = execute(conn, "SELECT id FROM users ORDER BY id", limit=3, offset=3)
        assert [r["id"] for r in result.plain_rows()] == [4, 5, 6]

    def test_source_table_recorded(self, conn):
        assert execute(conn, "SELECT * FROM users").source_table == "users"
        assert execute(conn, "SELECT 1").source_table is None

    def test_duplicate_columns_made_unique(self, conn):
        result = execute(conn, "SELECT 1 AS a, 2 AS a, 3 AS a")
        assert result.columns == ("a", "a:2", "a:3")
        assert result.plain_rows() == [{"a": 1, "a:2": 2, "a:3": 3}]

    def test_empty_select(self, conn):
        result = execute(conn, "SELECT * FROM users WHERE id < 0")
        assert isinstance(result, ResultSet)
        assert result.is_empty
        assert result.columns == ("id", "name", "age", "status")

    def test_pragma_not_paginated(self, conn):
        result = execute(conn, "PRAGMA table_info(users)", limit=1, offset=0)
        assert len(result) == 4

    def test_update_returns_no_result(self, conn):
        result = execute(conn, "UPDATE users SET age = age + 1 WHERE id <= 3")
        assert result == NoResult(changes=3)
        assert conn.execute("SELECT age FROM users WHERE id = 1").fetchone()[0] == 22

    def test_multiple_statements(self, conn):
        result = execute(conn, "CREATE TABLE t (x); INSERT INTO t VALUES (1); INSERT INTO t VALUES (2);")
        assert isinstance(result, NoResult)
        assert result.changes == 2

    def test_empty_statement(self, conn):
        with pytest.raises(ValidationError):
            execute(conn, "   ")

    def test_syntax_error(self, conn):
        with pytest.raises(QueryError, match="Query execution failed") as exc_info:
            execute(conn, "SELECT FROM WHERE")
        assert exc_info.value.sql == "SELECT FROM WHERE"

    def test_failing_script(self, conn):
        with pytest.raises(QueryError):
            execute(conn, "DELETE FROM missing_table")

    def test_statement_timeout(self, conn):
        endless = (
            "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) "
            "SELECT COUNT(*) FROM c"
        )
        with pytest.raises(QueryError, match="timed out"):
            execute(conn, endless, timeout=0.05)

    def test_execute_spec(self, conn):
        result = execute_spec(conn, QuerySpec("SELECT id FROM users ORDER BY id", limit=2, offset=10))
        assert [r["id"] for r in result.plain_rows()] == [11, 12]


class TestTableNameExtraction:
    """Tests for source table inference."""

    @pytest.mark.parametrize("sql, table", [
        ("SELECT * FROM users", "users"),
        ("select id from users where id = 1", "users"),
        ('SELECT * FROM "my ""odd"" table"', 'my "odd" table'),
        ("SELECT * FROM [bracketed]", "bracketed"),
        ("SELECT * FROM `ticked`", "ticked"),
        ("SELECT 1", None),
        ("DELETE FROM users", None),
        ("SELECT * FROM main.users", "users"),
        ('SELECT * FROM "main"."users" AS u', "users"),
        ("SELECT id, (SELECT COUNT(*) FROM memberships m WHERE m.user_id = u.id) AS n FROM users u", "users"),
        ("SELECT 'a FROM b' AS s FROM users", "users"),
        ("SELECT * FROM (SELECT * FROM users)", None),
        ("WITH recent AS (SELECT * FROM users) SELECT * FROM recent", None),
    ])
    def test_extract(self, sql, table):
        assert extract_table_name(sql) == table


class TestCounting:
    """Tests for total row counts."""

    def test_wrapped_count_strips_limit(self):
        assert wrapped_count_query("SELECT * FROM users LIMIT 5;") == (
            "SELECT COUNT(*) FROM (\nSELECT * FROM users\n) AS _t"
        )

    def test_wrapped_count_keeps_inner_limit(self):
        sql = "SELECT * FROM (SELECT * FROM users LIMIT 3)"
        assert "LIMIT 3" in wrapped_count_query(sql)

    def test_legacy_count(self):
        sql = "SELECT id, name FROM users WHERE age > 21 ORDER BY name LIMIT 5"
        assert legacy_count_query(sql) == "SELECT COUNT(*) FROM users WHERE age > 21"

    def test_legacy_count_strips_limit(self):
        assert legacy_count_query("SELECT * FROM users LIMIT 5") == "SELECT COUNT(*) FROM users"

    def test_derive_count_query_modes(self):
        sql = "SELECT * FROM users"
        assert derive_count_query(sql, CountMode.LEGACY) == "SELECT COUNT(*) FROM users"
        assert derive_count_query(sql).startswith("SELECT COUNT(*) FROM (")

    def test_count_ignores_limit(self, conn):
        assert count_total(conn, "SELECT * FROM users LIMIT 5") == 12

    @pytest.mark.parametrize("sql", [
        "SELECT * FROM users LIMIT 5 -- first (page)",
        "SELECT * FROM users LIMIT 5; /* don't count 'this' */",
        "SELECT * FROM users LIMIT 5 -- one\n-- two (2)\n",
    ])
    def test_count_ignores_limit_before_trailing_comment(self, conn, sql):
        assert count_total(conn, sql) == 12

    def test_wrapped_count_drops_trailing_comment(self):
        assert wrapped_count_query("SELECT * FROM users LIMIT 5 -- first (page)") == (
            "SELECT COUNT(*) FROM (\nSELECT * FROM users\n) AS _t"
        )

    def test_count_with_filter(self, conn):
        assert count_total(conn, "SELECT * FROM users WHERE age > 30") == 2

    def test_count_handles_subqueries(self, conn):
        sql = "SELECT name FROM users WHERE id IN (SELECT id FROM users WHERE age < 24) ORDER BY name"
        assert count_total(conn, sql) == 3

    def test_legacy_count_on_database(self, conn):
        assert count_total(conn, "SELECT * FROM users ORDER BY id LIMIT 2", mode=CountMode.LEGACY) == 12

    def test_count_rejects_non_select(self, conn):
        with pytest.raises(QueryError):
            count_total(conn, "DELETE FROM users")


class TestPages:
    """Tests for paginated results."""

    def test_last_page(self, conn):
        page = paginate(conn, "SELECT * FROM users ORDER BY id", page=3, page_size=5)
        assert len(page.result) == 2
        assert page.total_rows == 12
        assert page.total_pages == 3
        assert page.has_previous
        assert not page.has_next

    def test_first_page(self, conn):
        page = paginate(conn, "SELECT * FROM users ORDER BY id", page=1, page_size=5)
        assert [r["id"] for r in page.result.plain_rows()] == [1, 2, 3, 4, 5]
        assert not page.has_previous
        assert page.has_next

    def test_page_past_end(self, conn):
        page = paginate(conn, "SELECT * FROM users", page=10, page_size=5)
        assert page.result.is_empty
        assert page.total_rows == 12

    def test_paginate_uses_count_mode(self, conn):
        sql = "SELECT (SELECT COUNT(*) FROM tags) AS n FROM users"
        assert paginate(conn, sql, page=1, page_size=5).total_rows == 12
        with pytest.raises(QueryError):
            paginate(conn, sql, page=1, page_size=5, mode=CountMode.LEGACY)

    def test_paginate_rejects_non_select(self, conn):
        with pytest.raises(QueryError):
            paginate(conn, "PRAGMA table_info(users)")

    def test_browse_table(self, conn):
        page = browse_table(conn, "users", page=2, page_size=10)
        assert page.result.source_table == "users"
        assert len(page.result) == 2
        assert page.total_pages == 2

    def test_browse_unknown_table(self, conn):
        with pytest.raises(SchemaError):
            browse_table(conn, "missing")
