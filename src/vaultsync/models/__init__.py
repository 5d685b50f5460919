from __future__ import annotations

from vaultsync.models.cache import CacheEntry, ImageRecord, OwnerRecord, PageInfoEntry
from vaultsync.models.sync import BroadcastEnvelope, ContentPayload, ContentRequest, SendResult

__all__ = [
    # cache
    "CacheEntry",
    "PageInfoEntry",
    "OwnerRecord",
    "ImageRecord",
    # sync
    "BroadcastEnvelope",
    "ContentRequest",
    "ContentPayload",
    "SendResult",
]
