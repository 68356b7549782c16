"""
conftest.py - pytest fixtures for sqlite_browser tests.
"""

import os
import sqlite3
import tempfile

import pytest

from sqlite_browser.db.connection import create_connection

USER_COUNT = 12


def seed_database(db_path: str) -> None:
    """Create the sample schema used across the suite."""
    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            age INTEGER,
            status TEXT DEFAULT 'active'
        );
        CREATE TABLE tags (
            name TEXT,
            label TEXT
        );
        CREATE TABLE memberships (
            user_id INTEGER,
            group_id INTEGER,
            PRIMARY KEY (user_id, group_id)
        );
        INSERT INTO tags (name, label) VALUES ('red', 'Red'), ('blue', NULL);
        INSERT INTO memberships (user_id, group_id) VALUES (1, 1), (1, 2);
    """)
    conn.executemany(
        "INSERT INTO users (id, name, age) VALUES (?, ?, ?)",
        [(i, f"user{i:02d}", 20 + i) for i in range(1, USER_COUNT + 1)],
    )
    conn.commit()
    conn.close()


class FakeCipherConnection:
    """
    Connection that refuses reads until one specific key command runs.

    Wraps a real plaintext connection, so once unlocked everything
    behaves like SQLite.
    """

    def __init__(self, conn, accepted_command, attempts):
        self._conn = conn
        self._accepted_command = accepted_command
        self._attempts = attempts
        self._unlocked = False

    def execute(self, sql, params=()):
        if sql.startswith("PRAGMA key") or sql.startswith("PRAGMA hexkey"):
            self._attempts.append(sql)
            if sql == self._accepted_command:
                self._unlocked = True
            return self._conn.execute("SELECT 1")
        if not self._unlocked:
            raise sqlite3.DatabaseError("file is not a database")
        return self._conn.execute(sql, params)

    def executescript(self, script):
        if not self._unlocked:
            raise sqlite3.DatabaseError("file is not a database")
        return self._conn.executescript(script)

    def __getattr__(self, name):
        return getattr(self._conn, name)


class FakeCipherDriver:
    """DB-API driver stand-in whose files unlock with a single command."""

    Error = sqlite3.Error
    Warning = sqlite3.Warning
    DatabaseError = sqlite3.DatabaseError
    OperationalError = sqlite3.OperationalError

    def __init__(self, plain_path, accepted_command):
        self.plain_path = plain_path
        self.accepted_command = accepted_command
        self.attempts = []
        self.connections = 0

    def connect(self, db_path, **kwargs):
        self.connections += 1
        conn = sqlite3.connect(self.plain_path, **kwargs)
        return FakeCipherConnection(conn, self.accepted_command, self.attempts)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test databases."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def db_path(temp_dir):
    """Path of a seeded plaintext database."""
    path = os.path.join(temp_dir, "test.db")
    seed_database(path)
    return path


@pytest.fixture
def conn(db_path):
    """Open connection to the seeded database."""
    connection = create_connection(db_path)
    yield connection
    connection.close()


@pytest.fixture
def encrypted_path(temp_dir):
    """A file whose header is not the plaintext SQLite header."""
    path = os.path.join(temp_dir, "secret.db")
    with open(path, "wb") as f:
        f.write(bytes(range(256)) * 16)
    return path


@pytest.fixture
def cipher_driver(db_path):
    """Factory for fake cipher drivers backed by the seeded database."""
    def _make(accepted_command):
        return FakeCipherDriver(db_path, accepted_command)
    return _make
