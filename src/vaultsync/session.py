"""Session wiring.

Responsibilities (and nothing more):
- Configure structlog
- Create VaultSession via the ``open_session`` context manager
- Subscribe the host-side responders once per session
- Start the owner heartbeat when this session begins hosting
- Tear everything down
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from vaultsync import __version__
from vaultsync.authority import check_authority
from vaultsync.config import Settings
from vaultsync.events import EventBus
from vaultsync.image_cache import ImageCache, build_http_client
from vaultsync.kvstore import SqliteKeyValueStore
from vaultsync.local_cache import LocalBlockCache, PageInfoCache, clear_page
from vaultsync.presence import Presence
from vaultsync.reader import ContentReader
from vaultsync.render_cache import RenderCache
from vaultsync.shared_cache import SharedRoomCache
from vaultsync.state import VaultSession
from vaultsync.sync import Broadcaster, ContentResponder, SyncProtocol

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from vaultsync.models.sync import SendResult
    from vaultsync.protocols import ContentFetcher, HostTransport, RoleOracle

    TreeProvider = Callable[[], Awaitable[dict[str, Any] | None]]

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once per process before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


async def _connect(path: str) -> aiosqlite.Connection:
    if path != ":memory:":
        db_path = Path(path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        path = str(db_path)
    return await aiosqlite.connect(path)


@asynccontextmanager
async def open_session(
    transport: HostTransport | None,
    roles: RoleOracle | None,
    *,
    fetcher: ContentFetcher | None = None,
    settings: Settings | None = None,
    host_identity: tuple[str, str] | None = None,
    visible_tree_provider: TreeProvider | None = None,
    full_tree_provider: TreeProvider | None = None,
    configure_logging: bool = True,
) -> AsyncGenerator[VaultSession, None]:
    """Create and tear down every tier and subscription for one client session.

    ``host_identity`` is ``(id, name)`` of the local user; when given and the
    role oracle confirms authority at startup, the owner record is written and
    the heartbeat started. ``full_tree_provider`` lets this session answer
    full-vault requests; without it they go unanswered.
    """
    settings = settings or Settings()
    if configure_logging:
        setup_logging(settings)

    log.info("session_starting", version=__version__)

    events = EventBus()

    store_db = await _connect(settings.cache.store_path)
    store = SqliteKeyValueStore(store_db, settings.cache.store_max_bytes)
    await store.init_db()

    image_db = await _connect(settings.images.db_path)
    http_client = build_http_client(settings.images)
    images = ImageCache.from_settings(image_db, http_client, settings.images)
    await images.init()

    render_cache = RenderCache(settings.cache.render_capacity)
    blocks = LocalBlockCache(store, events)
    page_info = PageInfoCache(store, events)
    shared_cache = SharedRoomCache(transport, roles)
    presence = Presence(transport)

    sync = SyncProtocol(Broadcaster(transport, events), roles, settings.sync)
    responder = ContentResponder(render_cache, blocks, fetcher, shared_cache, page_info)
    reader = ContentReader(render_cache, blocks, shared_cache, sync)

    session = VaultSession(
        settings=settings,
        events=events,
        transport=transport,
        roles=roles,
        fetcher=fetcher,
        render_cache=render_cache,
        blocks=blocks,
        page_info=page_info,
        shared_cache=shared_cache,
        images=images,
        presence=presence,
        sync=sync,
        responder=responder,
        reader=reader,
        store_db=store_db,
        image_db=image_db,
        http_client=http_client,
    )

    # Responders check authority per request; a session promoted later
    # answers without re-subscribing.
    sync.serve_content(responder)
    sync.serve_visible_tree(visible_tree_provider or shared_cache.get_visible_tree)
    if full_tree_provider is not None:
        sync.serve_full_tree(full_tree_provider)

    is_host = await check_authority(roles)
    if is_host and host_identity is not None:
        owner_id, owner_name = host_identity
        await presence.begin_hosting(owner_id, owner_name)
        session.heartbeat_task = asyncio.create_task(
            presence.run_heartbeat(settings.presence.heartbeat_interval_seconds)
        )

    log.info("session_started", authoritative=is_host)

    try:
        yield session
    finally:
        if session.heartbeat_task is not None:
            session.heartbeat_task.cancel()
            with suppress(asyncio.CancelledError):
                await session.heartbeat_task
        sync.close()
        await http_client.aclose()
        await image_db.close()
        await store_db.close()
        log.info("session_stopping")


# ---------------------------------------------------------------------------
# Host operations
# ---------------------------------------------------------------------------


async def cache_page(
    session: VaultSession,
    page_id: str,
    blocks: list[Any],
    *,
    html: str | None = None,
    share: bool = True,
) -> None:
    """Store freshly fetched content in every local tier and, if allowed, the shared mirror.

    The shared write is a no-op for non-authoritative sessions and may be
    abandoned for size; viewers then fall back to the broadcast request.
    """
    await session.blocks.set(page_id, blocks)
    if html is not None:
        session.render_cache.set(page_id, html)
    if share:
        await session.shared_cache.put(page_id, blocks)


async def publish_visible_tree(session: VaultSession, tree: dict[str, Any]) -> SendResult:
    """Persist the visible tree in the shared document (if it fits) and push it to viewers."""
    await session.shared_cache.set_visible_tree(tree)
    return await session.sync.push_visible_tree(tree)


async def clear_page_caches(session: VaultSession, page_id: str) -> None:
    session.render_cache.remove(page_id)
    await clear_page(page_id, session.blocks, session.page_info)


async def clear_local_caches(session: VaultSession) -> None:
    """Drop everything this client cached locally. The shared document is untouched."""
    session.render_cache.clear()
    await session.blocks.clear_all()
    await session.page_info.clear_all()
    await session.images.clear_all()
    log.info("local_caches_cleared")
