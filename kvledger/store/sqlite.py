"""
SQLite key-value store for kvledger.

This module keeps the whole key space in one SQLite file with two tables,
one for JSON values and one for set members.

Invariants:
    - Each public operation runs as a single statement in autocommit mode,
      so it is atomic for its key and nothing wider
    - A set key exists exactly while it has at least one member row
    - sqlite3 errors are surfaced as StoreUnavailableError

How to change safely:
    - Table changes go through a new schema_version row
    - Do not wrap several operations in one SQLite transaction; callers
      are written against single-key atomicity

Table schema:
    kv:
        - key TEXT PRIMARY KEY
        - value TEXT (JSON)

    kv_sets:
        - key TEXT
        - member TEXT
        - PRIMARY KEY (key, member)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from .base import StoreUnavailableError

logger = logging.getLogger(__name__)

# SQLite limits host parameters per statement
_MAX_PARAMS = 500


class SqliteKvStore:
    """Single-file SQLite implementation of KvStore.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteKvStore("/var/lib/kvledger")
        >>> await store.connect()
        >>> await store.set("data:site:site-1", {"id": "site-1", "name": "Home"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "kvledger.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._connected = False

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Yields:
            SQLite connection in autocommit mode

        Raises:
            StoreUnavailableError: If the store is closed or SQLite fails
        """
        if not self._connected:
            raise StoreUnavailableError("Not connected")

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open {self.db_path}: {e}") from e

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"SQLite operation failed: {e}") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS kv_sets (
                key TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (key, member)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._connected = True
        try:
            with self._get_connection() as conn:
                self._create_schema(conn)
        except StoreUnavailableError:
            self._connected = False
            raise
        logger.info("SQLite store ready", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False

    async def get(self, key: str) -> Any | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else json.loads(row[0])

    async def mget(self, keys: Iterable[str]) -> list[Any | None]:
        keys = list(keys)
        found: dict[str, Any] = {}
        with self._get_connection() as conn:
            for start in range(0, len(keys), _MAX_PARAMS):
                chunk = keys[start : start + _MAX_PARAMS]
                placeholders = ",".join("?" * len(chunk))
                rows = conn.execute(
                    f"SELECT key, value FROM kv WHERE key IN ({placeholders})", chunk
                ).fetchall()
                for key, value in rows:
                    found[key] = json.loads(value)
        return [found.get(key) for key in keys]

    async def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, sort_keys=True)
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, raw),
            )

    async def delete(self, key: str) -> bool:
        with self._get_connection() as conn:
            removed = conn.execute("DELETE FROM kv WHERE key = ?", (key,)).rowcount
            removed += conn.execute("DELETE FROM kv_sets WHERE key = ?", (key,)).rowcount
        return removed > 0

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with self._get_connection() as conn:
            cursor = conn.executemany(
                "INSERT OR IGNORE INTO kv_sets (key, member) VALUES (?, ?)",
                [(key, m) for m in dict.fromkeys(members)],
            )
            return cursor.rowcount

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with self._get_connection() as conn:
            cursor = conn.executemany(
                "DELETE FROM kv_sets WHERE key = ? AND member = ?",
                [(key, m) for m in dict.fromkeys(members)],
            )
            return cursor.rowcount

    async def smembers(self, key: str) -> set[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT member FROM kv_sets WHERE key = ?", (key,)).fetchall()
        return {row[0] for row in rows}

    async def scan_prefix(self, prefix: str) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? "
                "UNION SELECT DISTINCT key FROM kv_sets WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix, len(prefix), prefix),
            ).fetchall()
        return sorted(row[0] for row in rows)
