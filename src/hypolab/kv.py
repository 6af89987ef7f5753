"""Key/value backends for session records.

The engine only needs three async calls (`get`, `set`, `keys`), so any
shared namespace can stand in: a dict for tests, SQLite for local use.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def keys(self) -> list[str]: ...


class MemoryKeyValueStore:
    """Process-local store, used by tests and the `memory` backend."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def keys(self) -> list[str]:
        return list(self._data)

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class SqliteKeyValueStore:
    """SQLite-backed store with one connection per thread.

    Blocking calls run through `asyncio.to_thread` so the event loop never
    waits on disk.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._local = threading.local()
        self._migrated = False
        self._migrate_lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """Open or return this thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=5.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._local.conn = conn
        self._migrate(conn)
        return conn

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _migrate(self, conn: sqlite3.Connection) -> None:
        with self._migrate_lock:
            if self._migrated:
                return
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_records (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()
            self._migrated = True

    def get_sync(self, key: str) -> str | None:
        row = self.connect().execute("SELECT value FROM kv_records WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_sync(self, key: str, value: str) -> None:
        now = datetime.now(UTC).isoformat()
        conn = self.connect()
        conn.execute(
            """
            INSERT INTO kv_records (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, now),
        )
        conn.commit()

    def keys_sync(self) -> list[str]:
        rows = self.connect().execute("SELECT key FROM kv_records ORDER BY key ASC").fetchall()
        return [str(row["key"]) for row in rows]

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self.get_sync, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self.set_sync, key, value)

    async def keys(self) -> list[str]:
        return await asyncio.to_thread(self.keys_sync)
