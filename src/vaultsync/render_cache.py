"""In-memory cache of fully rendered page content.

Lives for the client session only. Capacity is small and fixed, so eviction is
a linear scan for the oldest ``saved_at``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

import structlog

log = structlog.get_logger()

DEFAULT_RENDER_CAPACITY = 20


@dataclass
class RenderedPage:
    html: str
    saved_at: float


class RenderCache:
    def __init__(self, capacity: int = DEFAULT_RENDER_CAPACITY) -> None:
        self._capacity = capacity
        self._entries: dict[str, RenderedPage] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, page_id: object) -> bool:
        return page_id in self._entries

    def get(self, page_id: str) -> str | None:
        entry = self._entries.get(page_id)
        return entry.html if entry is not None else None

    def set(self, page_id: str, html: str) -> None:
        if page_id in self._entries:
            del self._entries[page_id]
        elif len(self._entries) >= self._capacity:
            self._evict_oldest()
        self._entries[page_id] = RenderedPage(html=html, saved_at=time.time())

    def remove(self, page_id: str) -> None:
        self._entries.pop(page_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict_oldest(self) -> None:
        oldest_key: str | None = None
        oldest_time = float("inf")
        # Ties resolve to the earliest inserted key (dict order)
        for key, entry in self._entries.items():
            if entry.saved_at < oldest_time:
                oldest_time = entry.saved_at
                oldest_key = key
        if oldest_key is not None:
            del self._entries[oldest_key]
            log.debug("render_cache_evicted", key=oldest_key)
