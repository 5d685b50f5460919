from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    SIZE_LIMIT = "SIZE_LIMIT"
    SEND_FAILED = "SEND_FAILED"
    TRANSPORT_UNAVAILABLE = "TRANSPORT_UNAVAILABLE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"


class VaultSyncError(Exception):
    """Base class for failures raised by collaborators (transport, stores).

    Cache tiers and the sync protocol catch these at their boundary and
    convert them into structured results or events. They never propagate to
    the caller of a cache or protocol operation.
    """

    code: ErrorCode = ErrorCode.SEND_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SizeLimitExceededError(VaultSyncError):
    """Raised by a host transport when a message or document exceeds its ceiling."""

    code = ErrorCode.SIZE_LIMIT

    def __init__(self, message: str, size: int | None = None) -> None:
        super().__init__(message)
        self.size = size


class QuotaExceededError(VaultSyncError):
    """Raised by a durable key/value store when a write would exceed its quota."""

    code = ErrorCode.QUOTA_EXCEEDED


class StorageError(VaultSyncError):
    """Raised by a durable store for any non-quota read or write failure."""
