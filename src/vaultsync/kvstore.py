"""SQLite-backed durable key/value store with a byte quota.

Plays the role a browser's per-origin key/value storage plays for a web
client: string keys and values, enumerable keys, and a hard size quota that
surfaces as ``QuotaExceededError``. Database errors are re-raised as
``StorageError`` so callers depend on the store contract, not on aiosqlite.
"""

from __future__ import annotations

import aiosqlite
import structlog

from vaultsync.errors import QuotaExceededError, StorageError

log = structlog.get_logger()

_CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""


def _entry_bytes(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class SqliteKeyValueStore:
    """Durable store implementing KeyValueStore."""

    def __init__(self, db: aiosqlite.Connection, max_bytes: int) -> None:
        self._db = db
        self._max_bytes = max_bytes

    async def init_db(self) -> None:
        """Create the table. Called once at startup."""
        await self._db.execute(_CREATE_KV_TABLE)
        await self._db.commit()

    async def get(self, key: str) -> str | None:
        try:
            cursor = await self._db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(f"Read failed for {key!r}: {exc}") from exc
        return None if row is None else row[0]

    async def set(self, key: str, value: str) -> None:
        try:
            cursor = await self._db.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0) "
                "FROM kv_store WHERE key != ?",
                (key,),
            )
            row = await cursor.fetchone()
            used = row[0] if row is not None else 0
            needed = _entry_bytes(key, value)
            if used + needed > self._max_bytes:
                raise QuotaExceededError(
                    f"Writing {key!r} ({needed} bytes) exceeds quota "
                    f"({used}/{self._max_bytes} bytes used)"
                )
            await self._db.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)", (key, value)
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Write failed for {key!r}: {exc}") from exc

    async def remove(self, key: str) -> None:
        try:
            await self._db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Delete failed for {key!r}: {exc}") from exc

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            cursor = await self._db.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(f"Key scan failed: {exc}") from exc
        return [row[0] for row in rows]
