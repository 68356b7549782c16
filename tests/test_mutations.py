"""
test_mutations.py - Tests for insert, update, delete and drop-table.
"""

import pytest

from sqlite_browser.errors import ConstraintError, QueryError, SchemaError, ValidationError
from sqlite_browser.mutations import (
    DeleteBatch,
    DropTable,
    Insert,
    UpdateFields,
    apply_mutation,
    delete_rows,
    drop_table,
    insert_row,
    update_fields,
    update_row,
)


def fetch_user(conn, user_id):
    return conn.execute(
        "SELECT name, age, status FROM users WHERE id = ?", (user_id,)
    ).fetchone()


class TestInsert:
    """Tests for row inserts."""

    def test_insert_with_default(self, conn):
        result = insert_row(conn, "users", {"name": "zoe", "age": 40})
        assert result.affected == 1
        assert result.last_row_id == 13
        assert fetch_user(conn, 13) == ("zoe", 40, "active")

    def test_empty_strings_treated_as_missing(self, conn):
        result = insert_row(conn, "users", {"id": "", "name": "yan", "age": "", "status": ""})
        assert fetch_user(conn, result.last_row_id) == ("yan", None, "active")

    def test_explicit_value_overrides_default(self, conn):
        result = insert_row(conn, "users", {"name": "xi", "status": "banned"})
        assert fetch_user(conn, result.last_row_id)[2] == "banned"

    def test_unknown_keys_ignored(self, conn):
        result = insert_row(conn, "users", {"name": "wu", "email": "wu@example.com"})
        assert fetch_user(conn, result.last_row_id)[0] == "wu"

    def test_no_data_to_insert(self, conn):
        with pytest.raises(ValidationError, match="No data to insert"):
            insert_row(conn, "tags", {"name": None, "label": ""})

    def test_constraint_violation(self, conn):
        # Only the status default lands in the statement; name is NOT NULL
        with pytest.raises(QueryError):
            insert_row(conn, "users", {})

    def test_unknown_table(self, conn):
        with pytest.raises(SchemaError):
            insert_row(conn, "missing", {"a": 1})


class TestUpdate:
    """Tests for primary-key driven updates."""

    def test_update_fields(self, conn):
        result = update_fields(conn, "users", "id", 1, {"name": "alice", "age": 99})
        assert result.affected == 1
        assert fetch_user(conn, 1) == ("alice", 99, "active")

    def test_primary_key_not_updated(self, conn):
        update_fields(conn, "users", "id", 2, {"id": 500, "age": 1})
        assert fetch_user(conn, 2)[1] == 1
        assert fetch_user(conn, 500) is None

    def test_no_fields_fails_before_database_access(self, conn):
        with pytest.raises(ValidationError, match="No fields to update"):
            update_fields(conn, "missing", "id", 1, {})
        with pytest.raises(ValidationError):
            update_fields(conn, "users", "id", 1, {"id": 3})

    def test_wrong_key_column(self, conn):
        with pytest.raises(SchemaError):
            update_fields(conn, "users", "name", "user01", {"age": 1})

    def test_unknown_column(self, conn):
        with pytest.raises(SchemaError):
            update_fields(conn, "users", "id", 1, {"email": "x"})

    def test_table_without_primary_key(self, conn):
        with pytest.raises(ConstraintError):
            update_fields(conn, "tags", "name", "red", {"label": "x"})

    def test_composite_key_rejected(self, conn):
        with pytest.raises(ConstraintError):
            update_row(conn, "memberships", 1, {"group_id": 3})

    def test_update_row_discovers_key(self, conn):
        update_row(conn, "users", 3, {"status": "away"})
        assert fetch_user(conn, 3)[2] == "away"

    def test_missing_row_affects_nothing(self, conn):
        assert update_row(conn, "users", 999, {"age": 1}).affected == 0


class TestDelete:
    """Tests for batch deletes."""

    def test_delete_rows(self, conn):
        result = delete_rows(conn, "users", [1, 2, 3])
        assert result.affected == 3
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 9

    def test_reports_requested_count(self, conn):
        result = delete_rows(conn, "users", [1, 1000])
        assert result.affected == 2
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 11

    def test_string_ids(self, conn):
        delete_rows(conn, "users", ["4"])
        assert fetch_user(conn, 4) is None

    def test_table_without_primary_key(self, conn):
        with pytest.raises(ConstraintError, match="Deletion is not supported"):
            delete_rows(conn, "tags", ["red"])
        assert conn.execute("SELECT COUNT(*) FROM tags").fetchone()[0] == 2

    def test_key_column_must_match(self, conn):
        with pytest.raises(SchemaError):
            delete_rows(conn, "users", [1], pk_column="name")
        assert fetch_user(conn, 1) is not None

    def test_empty_selection(self, conn):
        with pytest.raises(ValidationError):
            delete_rows(conn, "users", [])


class TestDropTable:
    """Tests for dropping tables."""

    def test_drop_user_table(self, conn):
        result = drop_table(conn, "tags")
        assert "deleted successfully" in result.message
        assert conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE name = 'tags'"
        ).fetchone()[0] == 0

    def test_drop_unknown_table(self, conn):
        with pytest.raises(SchemaError):
            drop_table(conn, "missing")

    def test_drop_system_table(self, conn):
        conn.execute("CREATE TABLE counters (id INTEGER PRIMARY KEY AUTOINCREMENT, n INTEGER)")
        conn.execute("INSERT INTO counters (n) VALUES (1)")
        with pytest.raises(ValidationError, match="system tables"):
            drop_table(conn, "sqlite_sequence")


class TestPendingMutations:
    """Tests for applying mutation values."""

    def test_apply_each_kind(self, conn):
        inserted = apply_mutation(conn, Insert("users", {"name": "new"}))
        apply_mutation(conn, UpdateFields("users", "id", inserted.last_row_id, {"age": 7}))
        assert fetch_user(conn, inserted.last_row_id) == ("new", 7, "active")

        apply_mutation(conn, DeleteBatch("users", "id", (inserted.last_row_id,)))
        assert fetch_user(conn, inserted.last_row_id) is None

        apply_mutation(conn, DropTable("memberships"))
        assert conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE name = 'memberships'"
        ).fetchone()[0] == 0

    def test_unsupported_mutation(self, conn):
        with pytest.raises(ValidationError):
            apply_mutation(conn, "DROP TABLE users")
