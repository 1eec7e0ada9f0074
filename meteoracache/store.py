"""Namespace-scoped cache storage for response snapshots.

Two backends are provided:
- MemoryCacheStore: process-local dictionaries, used by default and in tests.
- SqliteCacheStore: persistent storage so cached data survives restarts.

All operations are single-key operations guarded by a lock; there are no
cross-key transactions.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from .models import CacheEntry, Response


class CacheStoreError(Exception):
    """Raised when a cache storage operation fails."""

    pass


class CacheStore(ABC):
    """Named key/value partitions holding CacheEntry values unique by key."""

    @abstractmethod
    def open(self, namespace: str) -> None:
        """Create the namespace if it does not exist yet."""

    @abstractmethod
    def namespaces(self) -> list[str]:
        """Return all namespace names in creation order."""

    @abstractmethod
    def delete_namespace(self, namespace: str) -> bool:
        """Delete a namespace and every entry in it.

        Returns:
            True if the namespace existed.
        """

    @abstractmethod
    def get(self, namespace: str, key: str) -> CacheEntry | None:
        """Return the entry stored under key, or None."""

    @abstractmethod
    def put(self, namespace: str, entry: CacheEntry) -> None:
        """Store an entry, replacing any entry with the same key.

        The namespace is created when missing.
        """

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        """Delete a single entry.

        Returns:
            True if an entry was removed.
        """

    @abstractmethod
    def keys(self, namespace: str) -> list[str]:
        """Return the keys stored in a namespace (empty if it does not exist)."""

    def has_namespace(self, namespace: str) -> bool:
        return namespace in self.namespaces()

    def match(self, key: str) -> CacheEntry | None:
        """Look a key up across all namespaces, oldest namespace first."""
        for namespace in self.namespaces():
            entry = self.get(namespace, key)
            if entry is not None:
                return entry
        return None

    def close(self) -> None:
        """Release any resources held by the store."""


class MemoryCacheStore(CacheStore):
    """Thread-safe in-memory store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, CacheEntry]] = {}

    def open(self, namespace: str) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})

    def namespaces(self) -> list[str]:
        with self._lock:
            return list(self._data)

    def delete_namespace(self, namespace: str) -> bool:
        with self._lock:
            return self._data.pop(namespace, None) is not None

    def get(self, namespace: str, key: str) -> CacheEntry | None:
        with self._lock:
            return self._data.get(namespace, {}).get(key)

    def put(self, namespace: str, entry: CacheEntry) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})[entry.key] = entry

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            entries = self._data.get(namespace)
            if entries is None or key not in entries:
                return False
            del entries[key]
            return True

    def keys(self, namespace: str) -> list[str]:
        with self._lock:
            return list(self._data.get(namespace, {}))


class SqliteCacheStore(CacheStore):
    """SQLite-backed store.

    One connection is shared by the HTTP handler threads and the expiry
    timers, so every statement runs under the store lock.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        self._conn = self._connect(db_path)

    @staticmethod
    def _connect(db_path: str) -> sqlite3.Connection:
        try:
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row

            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS namespaces (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    url TEXT NOT NULL,
                    method TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    status_text TEXT NOT NULL,
                    headers TEXT NOT NULL,
                    body BLOB NOT NULL,
                    stored_at REAL NOT NULL,
                    ttl REAL,
                    PRIMARY KEY (namespace, key)
                )
            """)
            conn.commit()
            return conn

        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to initialize cache database: {e}")
        except OSError as e:
            raise CacheStoreError(f"Failed to create cache database directory: {e}")

    def open(self, namespace: str) -> None:
        try:
            with self._lock:
                self._conn.execute("INSERT OR IGNORE INTO namespaces (name) VALUES (?)", (namespace,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to open namespace {namespace}: {e}")

    def namespaces(self) -> list[str]:
        try:
            with self._lock:
                cursor = self._conn.execute("SELECT name FROM namespaces ORDER BY id")
                return [row["name"] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to list namespaces: {e}")

    def delete_namespace(self, namespace: str) -> bool:
        try:
            with self._lock:
                self._conn.execute("DELETE FROM entries WHERE namespace = ?", (namespace,))
                cursor = self._conn.execute("DELETE FROM namespaces WHERE name = ?", (namespace,))
                self._conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to delete namespace {namespace}: {e}")

    def get(self, namespace: str, key: str) -> CacheEntry | None:
        try:
            with self._lock:
                cursor = self._conn.execute(
                    """
                    SELECT key, url, method, status, status_text, headers, body, stored_at, ttl
                    FROM entries WHERE namespace = ? AND key = ?
                    """,
                    (namespace, key),
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to read cache entry: {e}")

        if row is None:
            return None
        return CacheEntry(
            key=row["key"],
            url=row["url"],
            method=row["method"],
            response=Response(
                status=row["status"],
                body=bytes(row["body"]),
                headers=json.loads(row["headers"]),
                status_text=row["status_text"],
            ),
            stored_at=row["stored_at"],
            ttl=row["ttl"],
        )

    def put(self, namespace: str, entry: CacheEntry) -> None:
        response = entry.response
        try:
            with self._lock:
                self._conn.execute("INSERT OR IGNORE INTO namespaces (name) VALUES (?)", (namespace,))
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO entries
                    (namespace, key, url, method, status, status_text, headers, body, stored_at, ttl)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        namespace,
                        entry.key,
                        entry.url,
                        entry.method,
                        response.status,
                        response.status_text,
                        json.dumps(response.headers),
                        sqlite3.Binary(response.body),
                        entry.stored_at,
                        entry.ttl,
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to write cache entry: {e}")

    def delete(self, namespace: str, key: str) -> bool:
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM entries WHERE namespace = ? AND key = ?",
                    (namespace, key),
                )
                self._conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to delete cache entry: {e}")

    def keys(self, namespace: str) -> list[str]:
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "SELECT key FROM entries WHERE namespace = ? ORDER BY rowid",
                    (namespace,),
                )
                return [row["key"] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to list cache keys: {e}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()
