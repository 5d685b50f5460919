"""Host-owned mirror of recently viewed content inside the shared document.

The shared document is small (16 KiB) and visible to every client, so the
mirror is bounded twice: by entry count (10) and by the serialized size of the
whole document. When the new entry does not fit, the oldest entries are
evicted one at a time; if even an empty mirror cannot hold it the write is
abandoned and the document left untouched. Viewers then get that page through
the on-demand broadcast protocol instead.

Only the authoritative session writes. Reads are passive lookups in the
client's local mirror of the document.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from vaultsync.authority import check_authority
from vaultsync.errors import SizeLimitExceededError, VaultSyncError
from vaultsync.keys import CONTENT_CACHE_KEY, VISIBLE_TREE_KEY
from vaultsync.models.cache import CacheEntry
from vaultsync.sizing import SHARED_DOCUMENT_SAFE_LIMIT, check_document_size

if TYPE_CHECKING:
    from vaultsync.protocols import HostTransport, RoleOracle
    from vaultsync.sizing import SizeCheck

log = structlog.get_logger()

MAX_SHARED_ENTRIES = 10
EVICT_ON_FULL = 3

_EPOCH = datetime.min.replace(tzinfo=UTC)


def _saved_at(raw: Any) -> datetime:
    """Best-effort ``savedAt`` of a raw mirror entry; malformed entries sort first."""
    if isinstance(raw, dict):
        value = raw.get("savedAt")
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value)
            except ValueError:
                return _EPOCH
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return _EPOCH


def _oldest_first(entries: dict[str, Any]) -> list[str]:
    return sorted(entries, key=lambda key: _saved_at(entries[key]))


class SharedRoomCache:
    def __init__(
        self,
        transport: HostTransport | None,
        roles: RoleOracle | None,
        *,
        safe_limit: int = SHARED_DOCUMENT_SAFE_LIMIT,
    ) -> None:
        self._transport = transport
        self._roles = roles
        self._safe_limit = safe_limit

    async def _read_document(self) -> dict[str, Any] | None:
        if self._transport is None:
            return None
        try:
            document = await self._transport.get_metadata()
        except VaultSyncError:
            log.warning("shared_document_read_error", exc_info=True)
            return None
        return document if isinstance(document, dict) else {}

    @staticmethod
    def _content_map(document: dict[str, Any]) -> dict[str, Any]:
        cache = document.get(CONTENT_CACHE_KEY)
        return dict(cache) if isinstance(cache, dict) else {}

    async def _commit(self, key: str, value: Any, **log_fields: Any) -> bool:
        if self._transport is None:
            return False
        try:
            await self._transport.set_metadata({key: value})
        except SizeLimitExceededError as exc:
            log.info("shared_document_size_rejected", key=key, size=exc.size, **log_fields)
            return False
        except VaultSyncError:
            log.warning("shared_document_write_error", key=key, exc_info=True, **log_fields)
            return False
        return True

    def _check_with(
        self,
        cache: dict[str, Any],
        page_id: str,
        new_entry: dict[str, Any],
        document: dict[str, Any],
    ) -> SizeCheck:
        return check_document_size(
            CONTENT_CACHE_KEY, {**cache, page_id: new_entry}, document, self._safe_limit
        )

    # ------------------------------------------------------------------
    # Content mirror
    # ------------------------------------------------------------------

    async def put(self, page_id: str, blocks: list[Any]) -> bool:
        """Mirror ``blocks`` for ``page_id``. Returns False if nothing was written."""
        if not await check_authority(self._roles):
            return False
        document = await self._read_document()
        if document is None:
            return False

        cache = self._content_map(document)
        entry = CacheEntry(key=page_id, payload=blocks, saved_at=datetime.now(UTC))
        new_entry = entry.model_dump(mode="json", by_alias=True)

        if page_id not in cache and len(cache) >= MAX_SHARED_ENTRIES:
            for key in _oldest_first(cache)[:EVICT_ON_FULL]:
                del cache[key]
            log.debug("shared_cache_count_evicted", removed=EVICT_ON_FULL)

        cache.pop(page_id, None)
        check = self._check_with(cache, page_id, new_entry, document)

        if not check.fits:
            evicted = 0
            for key in _oldest_first(cache):
                del cache[key]
                evicted += 1
                check = self._check_with(cache, page_id, new_entry, document)
                if check.fits:
                    log.debug("shared_cache_size_evicted", removed=evicted)
                    break

        if not check.fits:
            log.info(
                "shared_cache_write_abandoned",
                page_id=page_id,
                size=check.size,
                limit=check.limit,
            )
            return False

        cache[page_id] = new_entry
        if not await self._commit(CONTENT_CACHE_KEY, cache, page_id=page_id):
            return False
        log.info(
            "shared_cache_saved",
            page_id=page_id,
            entries=len(cache),
            percent_of_limit=check.percentage,
        )
        return True

    async def get(self, page_id: str) -> list[Any] | None:
        """Passive read from the local mirror. ``None`` on miss or malformed entry."""
        document = await self._read_document()
        if document is None:
            return None
        raw = self._content_map(document).get(page_id)
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate(raw)
        except ValidationError:
            log.debug("shared_cache_entry_malformed", page_id=page_id)
            return None
        return entry.payload if isinstance(entry.payload, list) else None

    async def entries(self) -> dict[str, CacheEntry]:
        """All well-formed mirror entries."""
        document = await self._read_document()
        if document is None:
            return {}
        result: dict[str, CacheEntry] = {}
        for key, raw in self._content_map(document).items():
            try:
                result[key] = CacheEntry.model_validate(raw)
            except ValidationError:
                continue
        return result

    async def remove(self, page_id: str) -> bool:
        if not await check_authority(self._roles):
            return False
        document = await self._read_document()
        if document is None:
            return False
        cache = self._content_map(document)
        if cache.pop(page_id, None) is None:
            return True
        return await self._commit(CONTENT_CACHE_KEY, cache, page_id=page_id)

    async def clear(self) -> bool:
        if not await check_authority(self._roles) or self._transport is None:
            return False
        cleared = await self._commit(CONTENT_CACHE_KEY, {})
        if cleared:
            log.info("shared_cache_cleared")
        return cleared

    # ------------------------------------------------------------------
    # Visible tree
    # ------------------------------------------------------------------

    async def set_visible_tree(self, tree: dict[str, Any]) -> bool:
        """Publish the viewer-visible subset of the vault tree, if it fits."""
        if not await check_authority(self._roles):
            return False
        document = await self._read_document()
        if document is None:
            return False
        check = check_document_size(VISIBLE_TREE_KEY, tree, document, self._safe_limit)
        if not check.fits:
            log.info("visible_tree_too_large", size=check.size, limit=check.limit)
            return False
        return await self._commit(VISIBLE_TREE_KEY, tree)

    async def get_visible_tree(self) -> dict[str, Any] | None:
        document = await self._read_document()
        if document is None:
            return None
        tree = document.get(VISIBLE_TREE_KEY)
        return tree if isinstance(tree, dict) else None
