"""Vault owner record and heartbeat.

The owner record in the shared document names the host session currently
answering for the vault. It is written when a session starts hosting and its
``lastHeartbeat`` is refreshed on a fixed interval.

``OWNER_STALE_AFTER_SECONDS`` is exposed for callers that want to display
whether the owner looks idle. Nothing here evicts a stale owner or hands
authority to another session; authority is whatever the role oracle says.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from vaultsync.errors import VaultSyncError
from vaultsync.keys import VAULT_OWNER_KEY
from vaultsync.models.cache import OwnerRecord

if TYPE_CHECKING:
    from vaultsync.protocols import HostTransport

log = structlog.get_logger()

OWNER_HEARTBEAT_INTERVAL_SECONDS = 120
OWNER_STALE_AFTER_SECONDS = 15 * 60


class Presence:
    def __init__(self, transport: HostTransport | None) -> None:
        self._transport = transport

    async def get_owner(self) -> OwnerRecord | None:
        if self._transport is None:
            return None
        try:
            document = await self._transport.get_metadata()
        except VaultSyncError:
            log.warning("owner_read_error", exc_info=True)
            return None
        raw = document.get(VAULT_OWNER_KEY) if isinstance(document, dict) else None
        if raw is None:
            return None
        try:
            return OwnerRecord.model_validate(raw)
        except ValidationError:
            log.debug("owner_record_malformed")
            return None

    async def _write(self, record: OwnerRecord | None) -> bool:
        if self._transport is None:
            return False
        value = record.model_dump(mode="json", by_alias=True) if record is not None else None
        try:
            await self._transport.set_metadata({VAULT_OWNER_KEY: value})
        except VaultSyncError:
            log.warning("owner_write_error", exc_info=True)
            return False
        return True

    async def begin_hosting(self, owner_id: str, name: str) -> bool:
        """Claim the vault for this session by writing a fresh owner record."""
        record = OwnerRecord(id=owner_id, name=name, last_heartbeat=datetime.now(UTC))
        written = await self._write(record)
        if written:
            log.info("owner_record_written", owner_id=owner_id)
        return written

    async def heartbeat(self) -> bool:
        """Refresh ``lastHeartbeat`` on the existing record. No-op without one."""
        owner = await self.get_owner()
        if owner is None:
            return False
        return await self._write(owner.model_copy(update={"last_heartbeat": datetime.now(UTC)}))

    async def clear_owner(self) -> bool:
        return await self._write(None)

    async def is_owner_stale(self, now: datetime | None = None) -> bool | None:
        """Whether the recorded owner missed heartbeats. ``None`` when no owner is recorded."""
        owner = await self.get_owner()
        if owner is None:
            return None
        return owner.is_stale(
            timedelta(seconds=OWNER_STALE_AFTER_SECONDS), now or datetime.now(UTC)
        )

    async def run_heartbeat(
        self, interval_seconds: float = OWNER_HEARTBEAT_INTERVAL_SECONDS
    ) -> None:
        """Refresh the owner record forever. Cancelled at session teardown."""
        while True:
            await asyncio.sleep(interval_seconds)
            if not await self.heartbeat():
                log.debug("owner_heartbeat_skipped")
