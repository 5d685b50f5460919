"""Two-level image cache: in-process front cache over a durable SQLite store.

``get`` returns an ``ImageHandle`` pointing at a local file materialized from
the cached bytes, or ``None`` when the image is not cacheable or could not be
downloaded. ``None`` means "use the original URL"; it is never an error.

The durable store is bounded by entry count and total bytes. Bounds are
enforced by a maintenance pass that runs once in ``init``; between passes
the store may temporarily exceed them.
"""

from __future__ import annotations

import asyncio
import hashlib
import mimetypes
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import aiosqlite
import httpx
import structlog

from vaultsync.models.cache import ImageRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

    from vaultsync.config import ImageSettings

log = structlog.get_logger()

SCHEMA_VERSION = 1

MAX_ENTRIES = 200
MAX_CACHE_BYTES = 50 * 1024 * 1024
# Byte eviction frees space down to this fraction of MAX_CACHE_BYTES
EVICTION_TARGET_RATIO = 0.8
MAX_MEMORY_ENTRIES = 30
DEFAULT_TTL = timedelta(days=7)
PRELOAD_BATCH_SIZE = 5

_LOCAL_SCHEMES = ("data:", "blob:", "file:")

_CREATE_IMAGES_TABLE = """
CREATE TABLE IF NOT EXISTS images (
    url           TEXT PRIMARY KEY,
    blob          BLOB NOT NULL,
    size          INTEGER NOT NULL,
    content_type  TEXT NOT NULL DEFAULT '',
    cached_at     TEXT NOT NULL,
    last_accessed TEXT NOT NULL
)
"""

_CREATE_CACHED_AT_INDEX = "CREATE INDEX IF NOT EXISTS idx_images_cached_at ON images(cached_at)"
_CREATE_LAST_ACCESSED_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_images_last_accessed ON images(last_accessed)"
)


def _timestamp(value: datetime) -> str:
    # Fixed-width so lexical order in the index matches chronological order
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def build_http_client(settings: ImageSettings) -> httpx.AsyncClient:
    """Create the shared httpx client for image downloads. Called once per session."""
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(settings.download_timeout_seconds),
        headers={"User-Agent": "vaultsync/1.0"},
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


@dataclass
class ImageHandle:
    """A local, materialized copy of a cached image."""

    url: str
    path: Path
    content_type: str
    size: int

    @property
    def uri(self) -> str:
        return self.path.as_uri()

    def release(self) -> None:
        self.path.unlink(missing_ok=True)


@dataclass
class _FrontEntry:
    handle: ImageHandle
    cached_at: datetime


class ImageCache:
    def __init__(
        self,
        db: aiosqlite.Connection | None,
        client: httpx.AsyncClient,
        handle_dir: Path,
        *,
        max_entries: int = MAX_ENTRIES,
        max_bytes: int = MAX_CACHE_BYTES,
        max_memory_entries: int = MAX_MEMORY_ENTRIES,
        ttl: timedelta = DEFAULT_TTL,
        no_cache_hosts: Iterable[str] = (),
    ) -> None:
        self._db = db
        self._db_ready = False
        self._client = client
        self._handle_dir = handle_dir
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._max_memory_entries = max_memory_entries
        self._ttl = ttl
        self._no_cache_hosts = tuple(host.lower() for host in no_cache_hosts)
        self._front: dict[str, _FrontEntry] = {}
        self._pending: dict[str, asyncio.Task[ImageHandle | None]] = {}

    @classmethod
    def from_settings(
        cls,
        db: aiosqlite.Connection | None,
        client: httpx.AsyncClient,
        settings: ImageSettings,
    ) -> ImageCache:
        return cls(
            db,
            client,
            Path(settings.handle_dir).expanduser(),
            max_entries=settings.max_entries,
            max_bytes=settings.max_bytes,
            max_memory_entries=settings.memory_entries,
            ttl=timedelta(seconds=settings.ttl_seconds),
            no_cache_hosts=settings.no_cache_hosts,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> bool:
        """Create the schema and run the maintenance pass. Called once at startup.

        Returns False when the durable store is unavailable; the cache then
        still downloads and serves images from the front cache only.
        """
        self._handle_dir.mkdir(parents=True, exist_ok=True)
        if self._db is None:
            log.warning("image_store_unavailable")
            return False
        try:
            cursor = await self._db.execute("PRAGMA user_version")
            row = await cursor.fetchone()
            version = row[0] if row is not None else 0
            if version < SCHEMA_VERSION:
                await self._db.execute(_CREATE_IMAGES_TABLE)
                await self._db.execute(_CREATE_CACHED_AT_INDEX)
                await self._db.execute(_CREATE_LAST_ACCESSED_INDEX)
                await self._db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                await self._db.commit()
        except aiosqlite.Error:
            log.error("image_store_init_error", exc_info=True)
            return False

        self._db_ready = True
        log.info("image_cache_initialised")
        await self.run_maintenance()
        return True

    async def run_maintenance(self) -> int:
        """Evict oldest-accessed images until count and byte bounds hold.

        Count bound: keep at most ``max_entries``. Byte bound: if the total
        exceeds ``max_bytes``, free space down to 80% of it. Both deletion sets
        are applied in one batch. Returns the number of deleted rows.
        """
        if not self._db_ready or self._db is None:
            return 0
        try:
            cursor = await self._db.execute(
                "SELECT url, size FROM images ORDER BY last_accessed ASC"
            )
            rows = [(row[0], int(row[1] or 0)) for row in await cursor.fetchall()]

            to_delete: set[str] = set()
            total = sum(size for _, size in rows)

            if len(rows) > self._max_entries:
                for url, size in rows[: len(rows) - self._max_entries]:
                    to_delete.add(url)
                    total -= size

            if sum(size for _, size in rows) > self._max_bytes:
                target = self._max_bytes * EVICTION_TARGET_RATIO
                for url, size in rows:
                    if total <= target:
                        break
                    if url not in to_delete:
                        to_delete.add(url)
                        total -= size

            if to_delete:
                await self._db.executemany(
                    "DELETE FROM images WHERE url = ?", [(url,) for url in to_delete]
                )
                await self._db.commit()
                log.info(
                    "image_cache_maintenance",
                    deleted=len(to_delete),
                    remaining=len(rows) - len(to_delete),
                )
            return len(to_delete)
        except aiosqlite.Error:
            log.warning("image_cache_maintenance_error", exc_info=True)
            return 0

    async def clear_all(self) -> None:
        """Release every front-cache handle, then empty the durable store."""
        for entry in self._front.values():
            entry.handle.release()
        self._front.clear()
        if not self._db_ready or self._db is None:
            return
        try:
            await self._db.execute("DELETE FROM images")
            await self._db.commit()
            log.info("image_cache_cleared")
        except aiosqlite.Error:
            log.error("image_cache_clear_error", exc_info=True)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def is_cacheable(self, url: str) -> bool:
        if not url or url.startswith(_LOCAL_SCHEMES):
            return False
        try:
            hostname = (urlparse(url).hostname or "").lower()
        except ValueError:
            log.debug("image_url_malformed", url=url[:80])
            return False
        return not any(
            hostname == host or hostname.endswith("." + host) for host in self._no_cache_hosts
        )

    async def get(
        self,
        url: str,
        *,
        ttl: timedelta | None = None,
        skip_cache: bool = False,
    ) -> ImageHandle | None:
        """Return a local handle for ``url``, downloading it if needed."""
        if not self.is_cacheable(url):
            return None
        ttl = ttl if ttl is not None else self._ttl

        if not skip_cache:
            front = self._front.get(url)
            if front is not None:
                if datetime.now(UTC) - front.cached_at < ttl:
                    return front.handle
                del self._front[url]
                front.handle.release()

        task = self._pending.get(url)
        if task is None:
            task = asyncio.create_task(self._load(url, ttl, skip_cache))
            self._pending[url] = task
            task.add_done_callback(lambda _: self._pending.pop(url, None))
        # Cancelling one caller leaves the shared download running
        return await asyncio.shield(task)

    async def preload(self, urls: Iterable[str]) -> None:
        valid = [url for url in urls if self.is_cacheable(url)]
        for start in range(0, len(valid), PRELOAD_BATCH_SIZE):
            batch = valid[start : start + PRELOAD_BATCH_SIZE]
            await asyncio.gather(*(self.get(url) for url in batch))
        log.info("images_preloaded", count=len(valid))

    async def _load(self, url: str, ttl: timedelta, skip_cache: bool) -> ImageHandle | None:
        if not skip_cache:
            record = await self._read_record(url)
            if record is not None and datetime.now(UTC) - record.cached_at < ttl:
                await self._touch(url)
                handle = self._materialize(url, record.blob, record.content_type)
                if handle is not None:
                    self._remember(url, handle, record.cached_at)
                return handle

        downloaded = await self._download(url)
        if downloaded is None:
            return None
        blob, content_type = downloaded

        now = datetime.now(UTC)
        await self._save_record(
            ImageRecord(
                url=url,
                blob=blob,
                size=len(blob),
                content_type=content_type,
                cached_at=now,
                last_accessed=now,
            )
        )
        handle = self._materialize(url, blob, content_type)
        if handle is not None:
            self._remember(url, handle, now)
        return handle

    # ------------------------------------------------------------------
    # Front cache
    # ------------------------------------------------------------------

    def _remember(self, url: str, handle: ImageHandle, cached_at: datetime) -> None:
        previous = self._front.pop(url, None)
        if previous is not None and previous.handle.path != handle.path:
            previous.handle.release()
        if len(self._front) >= self._max_memory_entries:
            oldest_url = min(self._front, key=lambda key: self._front[key].cached_at)
            self._front.pop(oldest_url).handle.release()
        self._front[url] = _FrontEntry(handle=handle, cached_at=cached_at)

    def _materialize(self, url: str, blob: bytes, content_type: str) -> ImageHandle | None:
        suffix = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ""
        path = self._handle_dir / (hashlib.sha256(url.encode()).hexdigest() + suffix)
        try:
            path.write_bytes(blob)
        except OSError:
            log.warning("image_handle_write_error", url=url[:80], exc_info=True)
            return None
        return ImageHandle(url=url, path=path, content_type=content_type, size=len(blob))

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def _download(self, url: str) -> tuple[bytes, str] | None:
        """Strict attempt first, then one lenient redirect-following attempt."""
        try:
            response = await self._client.get(url, headers={"Accept": "image/*"})
            response.raise_for_status()
            return response.content, response.headers.get("content-type", "")
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.debug("image_download_strict_failed", url=url[:80], error=str(exc))

        try:
            response = await self._client.get(url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.warning("image_download_failed", url=url[:80], error=str(exc))
            return None
        if not response.is_success:
            log.warning("image_download_failed", url=url[:80], status_code=response.status_code)
            return None
        return response.content, response.headers.get("content-type", "")

    # ------------------------------------------------------------------
    # Durable store
    # ------------------------------------------------------------------

    async def _read_record(self, url: str) -> ImageRecord | None:
        if not self._db_ready or self._db is None:
            return None
        try:
            cursor = await self._db.execute(
                "SELECT url, blob, size, content_type, cached_at, last_accessed "
                "FROM images WHERE url = ?",
                (url,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            return ImageRecord(
                url=row[0],
                blob=row[1],
                size=row[2],
                content_type=row[3],
                cached_at=datetime.fromisoformat(row[4]),
                last_accessed=datetime.fromisoformat(row[5]),
            )
        except (aiosqlite.Error, ValueError):
            log.warning("image_store_read_error", url=url[:80], exc_info=True)
            return None

    async def _save_record(self, record: ImageRecord) -> None:
        if not self._db_ready or self._db is None:
            return
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO images "
                "(url, blob, size, content_type, cached_at, last_accessed) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.url,
                    record.blob,
                    record.size,
                    record.content_type,
                    _timestamp(record.cached_at),
                    _timestamp(record.last_accessed),
                ),
            )
            await self._db.commit()
            log.debug("image_cached", url=record.url[:80], size=record.size)
        except aiosqlite.Error:
            log.warning("image_store_write_error", url=record.url[:80], exc_info=True)

    async def _touch(self, url: str) -> None:
        if not self._db_ready or self._db is None:
            return
        try:
            await self._db.execute(
                "UPDATE images SET last_accessed = ? WHERE url = ?",
                (_timestamp(datetime.now(UTC)), url),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.debug("image_store_touch_error", url=url[:80], exc_info=True)
