"""Session state container.

VaultSession is created once per client session (inside ``open_session``) and
passed by reference to every consumer. Each cache tier is an explicit object
with session lifetime; nothing in the package keeps module-level cache state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncio

    import aiosqlite
    import httpx

    from vaultsync.config import Settings
    from vaultsync.events import EventBus
    from vaultsync.image_cache import ImageCache
    from vaultsync.local_cache import LocalBlockCache, PageInfoCache
    from vaultsync.presence import Presence
    from vaultsync.protocols import ContentFetcher, HostTransport, RoleOracle
    from vaultsync.reader import ContentReader
    from vaultsync.render_cache import RenderCache
    from vaultsync.shared_cache import SharedRoomCache
    from vaultsync.sync import ContentResponder, SyncProtocol


@dataclass
class VaultSession:
    """Holds every tier and protocol object for one client session."""

    settings: Settings
    events: EventBus

    # Collaborators
    transport: HostTransport | None
    roles: RoleOracle | None
    fetcher: ContentFetcher | None

    # Cache tiers
    render_cache: RenderCache
    blocks: LocalBlockCache
    page_info: PageInfoCache
    shared_cache: SharedRoomCache
    images: ImageCache

    # Protocol
    presence: Presence
    sync: SyncProtocol
    responder: ContentResponder
    reader: ContentReader

    # Owned resources
    store_db: aiosqlite.Connection | None = None
    image_db: aiosqlite.Connection | None = None
    http_client: httpx.AsyncClient | None = None
    heartbeat_task: asyncio.Task[None] | None = None
