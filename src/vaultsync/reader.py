"""Tiered read path used by every client to obtain a page's content.

Order: RenderCache → LocalBlockCache → SharedRoomCache → broadcast request to
the host. The first tier that answers wins; content obtained from a slower
tier is written back into the faster local tiers.

Force-refresh skips every local tier and goes straight to the host, which
re-fetches from the origin.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from vaultsync.local_cache import LocalBlockCache
    from vaultsync.render_cache import RenderCache
    from vaultsync.shared_cache import SharedRoomCache
    from vaultsync.sync import SyncProtocol


class ContentSource(StrEnum):
    RENDER = "render"
    LOCAL = "local"
    SHARED = "shared"
    HOST = "host"


@dataclass
class PageContent:
    page_id: str
    source: ContentSource
    blocks: list[Any] | None = None
    html: str | None = None


class ContentReader:
    def __init__(
        self,
        render_cache: RenderCache,
        blocks: LocalBlockCache,
        shared_cache: SharedRoomCache | None,
        sync: SyncProtocol | None,
    ) -> None:
        self._render_cache = render_cache
        self._blocks = blocks
        self._shared_cache = shared_cache
        self._sync = sync

    async def read(self, page_id: str, *, force_refresh: bool = False) -> PageContent | None:
        """Return the page's content, or ``None`` if no tier (and no host) has it."""
        log = structlog.get_logger().bind(page_id=page_id)

        if not force_refresh:
            html = self._render_cache.get(page_id)
            if html is not None:
                log.debug("read_hit", source=ContentSource.RENDER)
                return PageContent(page_id=page_id, source=ContentSource.RENDER, html=html)

            blocks = await self._blocks.get(page_id)
            if blocks is not None:
                log.debug("read_hit", source=ContentSource.LOCAL)
                return PageContent(page_id=page_id, source=ContentSource.LOCAL, blocks=blocks)

            if self._shared_cache is not None:
                blocks = await self._shared_cache.get(page_id)
                if blocks is not None:
                    log.info("read_hit", source=ContentSource.SHARED)
                    await self._blocks.set(page_id, blocks)
                    return PageContent(
                        page_id=page_id, source=ContentSource.SHARED, blocks=blocks
                    )

        if self._sync is None:
            log.info("read_miss", reason="no_sync")
            return None

        content = await self._sync.request_content(page_id, force_refresh=force_refresh)
        if content is None:
            log.info("read_miss", reason="no_answer")
            return None

        if content.blocks is not None:
            await self._blocks.set(page_id, content.blocks)
        if content.html is not None:
            self._render_cache.set(page_id, content.html)
        log.info("read_hit", source=ContentSource.HOST)
        return PageContent(
            page_id=page_id,
            source=ContentSource.HOST,
            blocks=content.blocks,
            html=content.html,
        )

    def invalidate(self, page_id: str) -> None:
        """Drop the in-memory rendering so the next read consults slower tiers."""
        self._render_cache.remove(page_id)
