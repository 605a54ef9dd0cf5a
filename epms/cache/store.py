"""
Persistent string key/value stores backing the cache.

The cache only needs four synchronous operations from its store:
get, set (which may fail when the store is full), remove, and a
snapshot of all keys for prefix scans. Two implementations are provided:

- MemoryStorage: in-process dict, used by tests and ephemeral runs
- SqliteStorage: single-file durable store shared by every process
  that opens the same path
"""
import sqlite3
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from .core import CacheError
from .sizing import byte_size

logger = logging.getLogger("cache.store")


class StorageError(CacheError):
    """The underlying store failed to complete an operation."""


class QuotaExceededError(StorageError):
    """The store has no room left for a write."""


class StorageBackend(ABC):
    """Synchronous, quota-limited string key/value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Store value under key, replacing any previous value.

        Raises:
            QuotaExceededError: If the write would exceed the store's capacity
        """

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key. Removing a missing key is a no-op."""

    @abstractmethod
    def keys(self) -> List[str]:
        """Snapshot of every key currently present."""

    @abstractmethod
    def usage_bytes(self) -> int:
        """Bytes used by all keys and values."""

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self.keys())


class MemoryStorage(StorageBackend):
    """
    Dict-backed store with an optional byte quota.

    Usage is counted as UTF-8 bytes of every key plus its value. A write that
    would push usage over the quota raises QuotaExceededError and leaves the
    store untouched.
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.quota_bytes is not None:
                used = self._usage_unlocked()
                previous = self._data.get(key)
                if previous is not None:
                    used -= byte_size(key) + byte_size(previous)
                needed = byte_size(key) + byte_size(value)
                if used + needed > self.quota_bytes:
                    raise QuotaExceededError(
                        f"Writing {needed} bytes for {key} exceeds quota "
                        f"({used}/{self.quota_bytes} bytes used)"
                    )
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def usage_bytes(self) -> int:
        with self._lock:
            return self._usage_unlocked()

    def _usage_unlocked(self) -> int:
        return sum(byte_size(k) + byte_size(v) for k, v in self._data.items())


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SqliteStorage(StorageBackend):
    """
    SQLite-backed durable store.

    Every operation opens its own connection, so one instance can be shared
    between the foreground and background refresh threads. Several processes
    may open the same file; writes from them interleave with last-write-wins
    semantics.
    """

    def __init__(self, db_path: Path, quota_bytes: Optional[int] = None):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        try:
            with self._get_connection() as conn:
                if self.quota_bytes is not None:
                    used = self._usage(conn, exclude_key=key)
                    needed = byte_size(key) + byte_size(value)
                    if used + needed > self.quota_bytes:
                        raise QuotaExceededError(
                            f"Writing {needed} bytes for {key} exceeds quota "
                            f"({used}/{self.quota_bytes} bytes used)"
                        )
                conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                    (key, value),
                )
                conn.commit()
        except sqlite3.OperationalError as e:
            if "full" in str(e).lower():
                raise QuotaExceededError(f"Store full while writing {key}: {e}") from e
            raise StorageError(f"Failed to write {key}: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to remove {key}: {e}") from e

    def keys(self) -> List[str]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT key FROM kv_store").fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}") from e
        return [row[0] for row in rows]

    def usage_bytes(self) -> int:
        try:
            with self._get_connection() as conn:
                return self._usage(conn)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to compute usage: {e}") from e

    @staticmethod
    def _usage(conn: sqlite3.Connection, exclude_key: Optional[str] = None) -> int:
        # LENGTH of a BLOB cast counts bytes, not characters
        query = (
            "SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + "
            "LENGTH(CAST(value AS BLOB))), 0) FROM kv_store"
        )
        params: tuple = ()
        if exclude_key is not None:
            query += " WHERE key != ?"
            params = (exclude_key,)
        return conn.execute(query, params).fetchone()[0]


def create_storage(settings) -> StorageBackend:
    """Build the store selected by settings.cache_backend."""
    backend = settings.cache_backend.lower()
    if backend == "memory":
        return MemoryStorage(quota_bytes=settings.cache_quota_bytes)
    if backend == "sqlite":
        logger.info(f"Using SQLite cache store at {settings.cache_db_path}")
        return SqliteStorage(settings.cache_db_path, quota_bytes=settings.cache_quota_bytes)
    raise ValueError(f"Unknown cache backend: {settings.cache_backend!r}")
