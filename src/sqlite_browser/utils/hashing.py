"""
hashing.py - Hashing utilities.

SHA-256 is used to derive key-format cache keys, so the session
store never holds a passphrase in its keys.

All hashing is deterministic: same input = same output.
"""

import hashlib


def sha256_hex(data: bytes) -> str:
    """
    Compute SHA-256 hash and return as hex string.

    Args:
        data: Bytes to hash

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(data).hexdigest()


def passphrase_bytes(passphrase: str | bytes) -> bytes:
    """Return the passphrase as raw bytes (UTF-8 for text)."""
    if isinstance(passphrase, bytes):
        return passphrase
    return passphrase.encode("utf-8")


def key_format_cache_key(db_path: str, passphrase: str | bytes) -> str:
    """
    Derive the cache key for a (database path, passphrase) pair.

    The path and passphrase are length-prefixed before hashing so that
    ("ab", "c") and ("a", "bc") never collide.

    Args:
        db_path: Path of the database file as given by the caller
        passphrase: Passphrase text or bytes

    Returns:
        Cache key string, prefixed for readability in session dumps
    """
    path_bytes = db_path.encode("utf-8")
    key_bytes = passphrase_bytes(passphrase)
    payload = (
        len(path_bytes).to_bytes(4, "big") + path_bytes
        + len(key_bytes).to_bytes(4, "big") + key_bytes
    )
    return "key_format_" + sha256_hex(payload)
