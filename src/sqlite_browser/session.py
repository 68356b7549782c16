"""
session.py - Per-user session state.

The browser keeps a little state between requests: the active
passphrase, the last selected database, the current query, a capped
query history, favorites and the key-format cache. All of it lives in
a caller-owned key-value store (any MutableMapping), so the same code
serves an in-memory server session and a JSON file used by the CLI.

Nested values are always written back as a whole so stores that
persist on assignment see every change.
"""

import json
import os
import tempfile
import threading
from collections import OrderedDict
from collections.abc import Iterator, MutableMapping
from typing import Any

from sqlite_browser.config import MAX_SERVER_SESSIONS, QUERY_HISTORY_LIMIT
from sqlite_browser.errors import ValidationError

HISTORY_KEY = "query_history"
FAVORITES_KEY = "query_favorites"
PASSPHRASE_KEY = "pragma_key"
LAST_DB_KEY = "last_db"
CURRENT_QUERY_KEY = "current_query"
KEY_FORMATS_KEY = "key_formats"


class SessionKeyFormatCache:
    """Key-format cache stored inside a session."""

    def __init__(self, store: MutableMapping[str, Any]) -> None:
        self._store = store

    def _entries(self) -> dict[str, str]:
        return dict(self._store.get(KEY_FORMATS_KEY) or {})

    def get(self, key: str) -> str | None:
        return self._entries().get(key)

    def set(self, key: str, command: str) -> None:
        entries = self._entries()
        entries[key] = command
        self._store[KEY_FORMATS_KEY] = entries

    def invalidate(self, key: str) -> None:
        entries = self._entries()
        if entries.pop(key, None) is not None:
            self._store[KEY_FORMATS_KEY] = entries

    def __len__(self) -> int:
        return len(self._entries())


class SessionState:
    """Typed access to one user's session store."""

    def __init__(
        self,
        store: MutableMapping[str, Any] | None = None,
        history_limit: int = QUERY_HISTORY_LIMIT,
    ) -> None:
        self._store = {} if store is None else store
        self._history_limit = history_limit

    @property
    def store(self) -> MutableMapping[str, Any]:
        return self._store

    @property
    def key_format_cache(self) -> SessionKeyFormatCache:
        return SessionKeyFormatCache(self._store)

    @property
    def passphrase(self) -> str | None:
        return self._store.get(PASSPHRASE_KEY) or None

    @passphrase.setter
    def passphrase(self, value: str | None) -> None:
        self._store[PASSPHRASE_KEY] = value or ""

    @property
    def current_query(self) -> str | None:
        return self._store.get(CURRENT_QUERY_KEY)

    @current_query.setter
    def current_query(self, sql: str | None) -> None:
        if sql:
            self._store[CURRENT_QUERY_KEY] = sql
        elif CURRENT_QUERY_KEY in self._store:
            del self._store[CURRENT_QUERY_KEY]

    @property
    def last_database(self) -> str | None:
        return self._store.get(LAST_DB_KEY)

    def select_database(self, name: str) -> None:
        """
        Remember the selected database.

        Switching to a different database clears the current query; the
        passphrase is kept since several files often share one key.
        """
        previous = self.last_database
        if previous is not None and previous != name:
            self.current_query = None
        self._store[LAST_DB_KEY] = name

    @property
    def history(self) -> list[str]:
        return list(self._store.get(HISTORY_KEY) or [])

    def record_query(self, sql: str) -> None:
        """Append a statement to the history, evicting the oldest past the cap."""
        sql = sql.strip() if sql else ""
        if not sql:
            return
        history = self.history
        history.append(sql)
        self._store[HISTORY_KEY] = history[-self._history_limit:]

    def clear_history(self) -> None:
        self._store[HISTORY_KEY] = []

    @property
    def favorites(self) -> list[str]:
        return list(self._store.get(FAVORITES_KEY) or [])

    def add_favorite(self, sql: str) -> bool:
        """Add a favorite statement. Returns False if it was already saved."""
        sql = sql.strip() if sql else ""
        if not sql:
            raise ValidationError("Cannot save an empty query as favorite", field="sql")
        favorites = self.favorites
        if sql in favorites:
            return False
        favorites.append(sql)
        self._store[FAVORITES_KEY] = favorites
        return True

    def remove_favorite(self, sql: str) -> bool:
        favorites = self.favorites
        if sql not in favorites:
            return False
        favorites.remove(sql)
        self._store[FAVORITES_KEY] = favorites
        return True


class JsonFileSessionStore(MutableMapping[str, Any]):
    """
    Session store persisted to a JSON file.

    The file is rewritten atomically on every change.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._data: dict[str, Any] = {}
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                try:
                    self._data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ValidationError(f"Session file is not valid JSON: {e}", field="path", value=path) from e

    def _flush(self) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._flush()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


class SessionRegistry:
    """
    In-process sessions keyed by an opaque session id.

    At most ``max_sessions`` are kept; creating one more evicts the
    session that was used least recently.
    """

    def __init__(self, max_sessions: int = MAX_SERVER_SESSIONS) -> None:
        if max_sessions < 1:
            raise ValidationError("Session cap must be at least 1", field="max_sessions", value=max_sessions)
        self._sessions: OrderedDict[str, SessionState] = OrderedDict()
        self._max_sessions = max_sessions
        self._lock = threading.Lock()

    def get(self, session_id: str) -> SessionState:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is not None:
                self._sessions.move_to_end(session_id)
                return state
            state = SessionState({})
            self._sessions[session_id] = state
            while len(self._sessions) > self._max_sessions:
                self._sessions.popitem(last=False)
            return state

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def drop(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
