"""
keys.py - Passphrase establishment strategies and the key-format cache.

An encrypted database is unlocked by a driver-specific PRAGMA. Which
spelling works depends on how the file was keyed, so the connection
manager tries a fixed table of strategies and memoizes the command
that succeeded for each (path, passphrase) pair.

The cache is an optimization only. Its storage belongs to the caller
(usually a per-user session), so it is injected as a small protocol.
"""

from dataclasses import dataclass
from typing import Callable, MutableMapping, Protocol

from sqlite_browser.utils.hashing import passphrase_bytes


class KeyFormatCache(Protocol):
    """Get/set/invalidate access to memoized establishment commands."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, command: str) -> None: ...

    def invalidate(self, key: str) -> None: ...


class MemoryKeyFormatCache:
    """Key-format cache held in a plain mapping."""

    def __init__(self, store: MutableMapping[str, str] | None = None) -> None:
        self._store = {} if store is None else store

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def set(self, key: str, command: str) -> None:
        self._store[key] = command

    def invalidate(self, key: str) -> None:
        self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return key in self._store


@dataclass(frozen=True)
class KeyStrategy:
    """One way of spelling the establishment command."""

    name: str
    build: Callable[[str | bytes], str]


def _escape_literal(text: str) -> str:
    return text.replace("'", "''")


def literal_key_command(passphrase: str | bytes) -> str:
    """PRAGMA key with the passphrase as a quoted text literal."""
    if isinstance(passphrase, bytes):
        passphrase = passphrase.decode("utf-8", errors="replace")
    return f"PRAGMA key = '{_escape_literal(passphrase)}'"


def hex_key_command(passphrase: str | bytes) -> str:
    """PRAGMA hexkey with the passphrase bytes hex-encoded."""
    return f"PRAGMA hexkey = '{passphrase_bytes(passphrase).hex()}'"


def _terminated(build: Callable[[str | bytes], str]) -> Callable[[str | bytes], str]:
    def _build(passphrase: str | bytes) -> str:
        return build(passphrase) + ";"

    return _build


# Tried in this order; the first one whose canary read succeeds wins
KEY_STRATEGIES: tuple[KeyStrategy, ...] = (
    KeyStrategy("literal", literal_key_command),
    KeyStrategy("hex", hex_key_command),
    KeyStrategy("literal_terminated", _terminated(literal_key_command)),
    KeyStrategy("hex_terminated", _terminated(hex_key_command)),
)


def candidate_commands(
    passphrase: str | bytes,
    strategies: tuple[KeyStrategy, ...] = KEY_STRATEGIES,
) -> list[tuple[str, str]]:
    """
    Build the (strategy name, command) candidates for a passphrase.

    Args:
        passphrase: Passphrase text or bytes
        strategies: Strategy table, in trial order

    Returns:
        List of (name, command) pairs in trial order
    """
    return [(strategy.name, strategy.build(passphrase)) for strategy in strategies]
