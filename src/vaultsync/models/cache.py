from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CacheEntry(BaseModel):
    """Unit stored in the local block cache and the shared content mirror."""

    model_config = ConfigDict(populate_by_name=True)

    key: str  # Page id
    payload: Any  # Opaque content (block list)
    saved_at: datetime = Field(alias="savedAt")


class PageInfoEntry(BaseModel):
    """Lightweight page metadata. Unknown fields are kept as-is."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    icon: Any = None
    cover: Any = None
    properties: dict[str, Any] = {}
    # Freshness is decided by callers comparing this against the origin, not by TTL
    last_edited_time: str | None = Field(default=None, alias="lastEditedTime")
    cached_at: datetime | None = Field(default=None, alias="cachedAt")


class OwnerRecord(BaseModel):
    """Marks the host session currently authoritative for the vault."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    last_heartbeat: datetime = Field(alias="lastHeartbeat")

    def is_stale(self, stale_after: timedelta, now: datetime) -> bool:
        return now - self.last_heartbeat > stale_after


class ImageRecord(BaseModel):
    """Durable image store row."""

    url: str
    blob: bytes
    size: int
    content_type: str
    cached_at: datetime
    last_accessed: datetime
