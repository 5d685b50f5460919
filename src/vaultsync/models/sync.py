from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from vaultsync.errors import ErrorCode


class BroadcastEnvelope(BaseModel):
    """Message body exchanged over a broadcast channel."""

    model_config = ConfigDict(populate_by_name=True)

    correlation_key: str | None = Field(default=None, alias="correlationKey")
    payload: dict[str, Any] = {}
    timestamp: datetime


class ContentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_id: str = Field(alias="pageId")
    force_refresh: bool = Field(default=False, alias="forceRefresh")


class ContentPayload(BaseModel):
    """Content response body. At least one of blocks/html is set."""

    model_config = ConfigDict(populate_by_name=True)

    page_id: str = Field(alias="pageId")
    blocks: list[Any] | None = None
    html: str | None = None


class SendResult(BaseModel):
    """Outcome of a broadcast send. Sends never raise."""

    ok: bool
    channel: str
    error: ErrorCode | None = None
    estimated_kb: int | None = None
    detail: str | None = None
