"""Per-client durable caches for raw content blocks and page metadata.

Both caches sit on a KeyValueStore and never raise to their callers:
- a value that fails to parse or validate is a cache miss, and is purged
- a quota failure on write is reported once through a ``StorageLimitReached``
  event, and reported again only after a later write has succeeded
- any other store failure is logged and ignored
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from vaultsync.errors import QuotaExceededError, VaultSyncError
from vaultsync.events import StorageLimitReached
from vaultsync.models.cache import CacheEntry, PageInfoEntry

if TYPE_CHECKING:
    from vaultsync.events import EventBus
    from vaultsync.protocols import KeyValueStore

log = structlog.get_logger()

BLOCKS_PREFIX = "blocks:"
PAGE_INFO_PREFIX = "page-info:"


class _StoreBackedCache:
    name: str = ""
    prefix: str = ""
    write_context: str = ""

    def __init__(self, store: KeyValueStore, events: EventBus | None = None) -> None:
        self._store = store
        self._events = events
        self._limit_notified = False

    def _key(self, page_id: str) -> str:
        return self.prefix + page_id

    async def _read_raw(self, page_id: str) -> str | None:
        try:
            return await self._store.get(self._key(page_id))
        except VaultSyncError:
            log.warning("cache_read_error", cache=self.name, key=page_id, exc_info=True)
            return None

    async def _purge(self, page_id: str) -> None:
        log.info("cache_entry_corrupt", cache=self.name, key=page_id)
        try:
            await self._store.remove(self._key(page_id))
        except VaultSyncError:
            log.debug("cache_purge_error", cache=self.name, key=page_id, exc_info=True)

    async def _write_raw(self, page_id: str, value: str) -> bool:
        try:
            await self._store.set(self._key(page_id), value)
        except QuotaExceededError:
            log.warning("cache_quota_exceeded", cache=self.name, key=page_id)
            if not self._limit_notified:
                self._limit_notified = True
                if self._events is not None:
                    self._events.emit(
                        StorageLimitReached(cache=self.name, context=self.write_context)
                    )
            return False
        except VaultSyncError:
            log.warning("cache_write_error", cache=self.name, key=page_id, exc_info=True)
            return False
        self._limit_notified = False
        return True

    async def remove(self, page_id: str) -> None:
        try:
            await self._store.remove(self._key(page_id))
        except VaultSyncError:
            log.warning("cache_delete_error", cache=self.name, key=page_id, exc_info=True)

    async def clear_all(self) -> None:
        """Remove every entry under this cache's prefix."""
        try:
            keys = await self._store.keys(self.prefix)
            for key in keys:
                await self._store.remove(key)
        except VaultSyncError:
            log.warning("cache_clear_error", cache=self.name, exc_info=True)
            return
        log.info("cache_cleared", cache=self.name, removed=len(keys))


class LocalBlockCache(_StoreBackedCache):
    """Raw content blocks keyed by page id."""

    name = "blocks"
    prefix = BLOCKS_PREFIX
    write_context = "caching page content"

    async def get(self, page_id: str) -> list[Any] | None:
        """Return cached blocks, or ``None`` on miss, corruption or read failure."""
        raw = await self._read_raw(page_id)
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            await self._purge(page_id)
            return None
        if not isinstance(entry.payload, list):
            await self._purge(page_id)
            return None
        log.debug("cache_hit", cache=self.name, key=page_id)
        return entry.payload

    async def set(self, page_id: str, blocks: list[Any]) -> bool:
        """Store blocks. Returns False if the write was dropped; never raises."""
        entry = CacheEntry(key=page_id, payload=blocks, saved_at=datetime.now(UTC))
        try:
            raw = entry.model_dump_json(by_alias=True)
        except (TypeError, ValueError):
            log.warning("cache_serialise_error", cache=self.name, key=page_id, exc_info=True)
            return False
        return await self._write_raw(page_id, raw)


class PageInfoCache(_StoreBackedCache):
    """Page metadata (icon, cover, properties, last edited time) keyed by page id."""

    name = "page_info"
    prefix = PAGE_INFO_PREFIX
    write_context = "caching page info"

    async def get(self, page_id: str) -> PageInfoEntry | None:
        raw = await self._read_raw(page_id)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if isinstance(data, dict) and isinstance(data.get("pageInfo"), dict):
                # Older layout: {"pageInfo": {...}, "savedAt": ...}
                data = data["pageInfo"]
            return PageInfoEntry.model_validate(data)
        except (ValueError, ValidationError):
            await self._purge(page_id)
            return None

    async def set(self, page_id: str, info: PageInfoEntry | dict[str, Any]) -> bool:
        try:
            entry = info if isinstance(info, PageInfoEntry) else PageInfoEntry.model_validate(info)
            entry = entry.model_copy(update={"cached_at": datetime.now(UTC)})
            raw = entry.model_dump_json(by_alias=True)
        except (TypeError, ValueError):
            log.warning("cache_serialise_error", cache=self.name, key=page_id, exc_info=True)
            return False
        return await self._write_raw(page_id, raw)


async def clear_page(page_id: str, blocks: LocalBlockCache, page_info: PageInfoCache) -> None:
    """Drop every durable entry held for one page."""
    await blocks.remove(page_id)
    await page_info.remove(page_id)
