"""Broadcast request/response protocol between the host and viewers.

The transport is best-effort publish/subscribe: no persistence, no delivery
guarantee, no ordering across channels. Request/response is layered on top:

- the requester attaches a response listener filtered by correlation key
  *before* publishing the request, then waits up to a deadline
- the first matching response resolves the request; anything later is ignored
  because the listener is already gone
- no answer within the deadline resolves to ``None``, which callers treat
  exactly like "no content"; nothing is retried

Request lifecycle: ``IDLE → SENT → RESOLVED | TIMED_OUT`` (``FAILED`` when the
request could not be published at all).

Every send goes through ``Broadcaster.send`` which never raises: oversized
messages come back as ``SendResult(error=SIZE_LIMIT, estimated_kb=...)`` and
emit a ``SizeLimitExceeded`` event.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from vaultsync.authority import check_authority
from vaultsync.errors import ErrorCode, SizeLimitExceededError, VaultSyncError
from vaultsync.events import SizeLimitExceeded
from vaultsync.keys import (
    CHANNEL_FULL_TREE,
    CHANNEL_REQUEST_CONTENT,
    CHANNEL_REQUEST_FULL_TREE,
    CHANNEL_REQUEST_VISIBLE_TREE,
    CHANNEL_RESPONSE_CONTENT,
    CHANNEL_SHOW_IMAGE,
    CHANNEL_VISIBLE_TREE,
)
from vaultsync.models.cache import PageInfoEntry
from vaultsync.models.sync import BroadcastEnvelope, ContentPayload, ContentRequest, SendResult
from vaultsync.sizing import BROADCAST_LIMIT, check_size

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from vaultsync.config import SyncSettings
    from vaultsync.events import EventBus
    from vaultsync.local_cache import LocalBlockCache, PageInfoCache
    from vaultsync.protocols import ContentFetcher, HostTransport, RoleOracle
    from vaultsync.render_cache import RenderCache
    from vaultsync.shared_cache import SharedRoomCache

    EnvelopeHandler = Callable[[BroadcastEnvelope], Awaitable[None]]

log = structlog.get_logger()

CONTENT_TIMEOUT_SECONDS = 5.0
FORCE_REFRESH_TIMEOUT_SECONDS = 10.0
VISIBLE_TREE_TIMEOUT_SECONDS = 5.0
FULL_TREE_TIMEOUT_SECONDS = 5.0


class RequestState(StrEnum):
    IDLE = "idle"
    SENT = "sent"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------


class Broadcaster:
    """Envelope-aware wrapper around the host transport's broadcast primitives."""

    def __init__(
        self,
        transport: HostTransport | None,
        events: EventBus | None = None,
        *,
        limit: int = BROADCAST_LIMIT,
    ) -> None:
        self._transport = transport
        self._events = events
        self._limit = limit

    @property
    def available(self) -> bool:
        return self._transport is not None

    @staticmethod
    def _encode(payload: dict[str, Any], correlation_key: str | None) -> dict[str, Any]:
        envelope = BroadcastEnvelope(
            correlation_key=correlation_key,
            payload=payload,
            timestamp=datetime.now(UTC),
        )
        return envelope.model_dump(mode="json", by_alias=True)

    def _size_failure(self, channel: str, estimated_kb: int) -> SendResult:
        log.warning("broadcast_size_limit_exceeded", channel=channel, estimated_kb=estimated_kb)
        if self._events is not None:
            self._events.emit(SizeLimitExceeded(channel=channel, estimated_kb=estimated_kb))
        return SendResult(
            ok=False,
            channel=channel,
            error=ErrorCode.SIZE_LIMIT,
            estimated_kb=estimated_kb,
        )

    async def send(
        self,
        channel: str,
        payload: dict[str, Any],
        *,
        correlation_key: str | None = None,
    ) -> SendResult:
        """Publish ``payload`` on ``channel``. Never raises."""
        if self._transport is None:
            log.warning("broadcast_transport_unavailable", channel=channel)
            return SendResult(ok=False, channel=channel, error=ErrorCode.TRANSPORT_UNAVAILABLE)

        try:
            message = self._encode(payload, correlation_key)
        except (TypeError, ValueError) as exc:
            log.warning("broadcast_serialise_error", channel=channel, exc_info=True)
            return SendResult(
                ok=False, channel=channel, error=ErrorCode.SEND_FAILED, detail=str(exc)
            )

        check = check_size(message, self._limit)
        if not check.fits:
            return self._size_failure(channel, check.kilobytes)

        try:
            await self._transport.send_message(channel, message)
        except SizeLimitExceededError:
            return self._size_failure(channel, check.kilobytes)
        except VaultSyncError as exc:
            log.warning("broadcast_send_error", channel=channel, error=exc.message)
            return SendResult(
                ok=False, channel=channel, error=ErrorCode.SEND_FAILED, detail=exc.message
            )

        log.debug("broadcast_sent", channel=channel, size=check.size)
        return SendResult(ok=True, channel=channel)

    def fits(self, payload: dict[str, Any], *, correlation_key: str | None = None) -> bool:
        """Whether ``payload`` would pass the size pre-check in ``send``."""
        try:
            message = self._encode(payload, correlation_key)
        except (TypeError, ValueError):
            return False
        return check_size(message, self._limit).fits

    def subscribe(self, channel: str, handler: EnvelopeHandler) -> Callable[[], None]:
        """Attach ``handler`` to ``channel``. Malformed messages are dropped."""
        if self._transport is None:
            return lambda: None

        async def on_message(message: dict[str, Any]) -> None:
            try:
                envelope = BroadcastEnvelope.model_validate(message)
            except ValidationError:
                log.debug("broadcast_message_malformed", channel=channel)
                return
            await handler(envelope)

        return self._transport.on_message(channel, on_message)


# ---------------------------------------------------------------------------
# Host-side content resolution
# ---------------------------------------------------------------------------


class ContentResponder:
    """Builds the host's answer to a content request from its own tiers.

    Without force-refresh: RenderCache and LocalBlockCache, then the fetch
    collaborator on a miss. With force-refresh: the host's own entries for the
    page are purged first, then the fetch collaborator is asked directly.
    """

    def __init__(
        self,
        render_cache: RenderCache,
        blocks: LocalBlockCache,
        fetcher: ContentFetcher | None,
        shared_cache: SharedRoomCache | None = None,
        page_info: PageInfoCache | None = None,
    ) -> None:
        self._render_cache = render_cache
        self._blocks = blocks
        self._fetcher = fetcher
        self._shared_cache = shared_cache
        self._page_info = page_info

    async def resolve(self, request: ContentRequest) -> ContentPayload | None:
        page_id = request.page_id
        html: str | None = None
        blocks: list[Any] | None = None

        if request.force_refresh:
            log.info("responder_force_refresh", page_id=page_id)
            self._render_cache.remove(page_id)
            await self._blocks.remove(page_id)
        else:
            html = self._render_cache.get(page_id)
            blocks = await self._blocks.get(page_id)

        if html is None and blocks is None:
            blocks = await self._fetch(page_id)
            if blocks is not None:
                await self._blocks.set(page_id, blocks)
                if self._shared_cache is not None:
                    await self._shared_cache.put(page_id, blocks)

        if html is None and blocks is None:
            return None
        return ContentPayload(page_id=page_id, blocks=blocks, html=html)

    async def _fetch(self, page_id: str) -> list[Any] | None:
        if self._fetcher is None:
            return None
        try:
            return await self._fetcher.fetch_blocks(page_id)
        except Exception:
            log.warning("content_fetch_error", page_id=page_id, exc_info=True)
            return None

    async def resolve_page_info(
        self, page_id: str, *, use_cache: bool = True
    ) -> PageInfoEntry | None:
        """Page metadata from PageInfoCache, falling back to the fetch collaborator.

        ``use_cache=False`` ignores the cached entry; a fresh answer still replaces it.
        """
        if use_cache and self._page_info is not None:
            cached = await self._page_info.get(page_id)
            if cached is not None:
                return cached

        if self._fetcher is None:
            return None
        try:
            raw = await self._fetcher.fetch_page_info(page_id)
        except Exception:
            log.warning("page_info_fetch_error", page_id=page_id, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            info = PageInfoEntry.model_validate(raw)
        except ValidationError:
            log.warning("page_info_malformed", page_id=page_id)
            return None

        if self._page_info is not None:
            await self._page_info.set(page_id, info)
        return info


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class _Waiter:
    """One outstanding request: a future plus its lifecycle state."""

    def __init__(self, correlation_key: str | None) -> None:
        self.correlation_key = correlation_key
        self.state = RequestState.IDLE
        self.future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

    def resolve(self, value: Any) -> None:
        if not self.future.done():
            self.state = RequestState.RESOLVED
            self.future.set_result(value)


class SyncProtocol:
    """Requester and responder halves of the content and tree exchanges."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        roles: RoleOracle | None = None,
        settings: SyncSettings | None = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._roles = roles
        self._content_timeout = (
            settings.content_timeout_seconds if settings else CONTENT_TIMEOUT_SECONDS
        )
        self._force_refresh_timeout = (
            settings.force_refresh_timeout_seconds if settings else FORCE_REFRESH_TIMEOUT_SECONDS
        )
        self._visible_tree_timeout = (
            settings.visible_tree_timeout_seconds if settings else VISIBLE_TREE_TIMEOUT_SECONDS
        )
        self._full_tree_timeout = (
            settings.full_tree_timeout_seconds if settings else FULL_TREE_TIMEOUT_SECONDS
        )
        self._subscriptions: list[Callable[[], None]] = []
        # State of the most recently finished request
        self.last_request_state = RequestState.IDLE

    async def _request(
        self,
        waiter: _Waiter,
        response_channel: str,
        handler: EnvelopeHandler,
        request_channel: str,
        payload: dict[str, Any],
        timeout: float,
    ) -> Any:
        # Listen first so a fast responder cannot answer before we subscribe
        unsubscribe = self._broadcaster.subscribe(response_channel, handler)
        try:
            result = await self._broadcaster.send(
                request_channel, payload, correlation_key=waiter.correlation_key
            )
            if not result.ok:
                waiter.state = RequestState.FAILED
                log.info("sync_request_not_sent", channel=request_channel, error=result.error)
                return None
            if not waiter.future.done():
                waiter.state = RequestState.SENT
            try:
                return await asyncio.wait_for(waiter.future, timeout=timeout)
            except TimeoutError:
                waiter.state = RequestState.TIMED_OUT
                log.info(
                    "sync_request_timeout",
                    channel=request_channel,
                    correlation_key=waiter.correlation_key,
                    timeout=timeout,
                )
                return None
        finally:
            unsubscribe()
            self.last_request_state = waiter.state

    # ------------------------------------------------------------------
    # Content on demand
    # ------------------------------------------------------------------

    async def request_content(
        self, page_id: str, *, force_refresh: bool = False
    ) -> ContentPayload | None:
        """Ask the authoritative host for a page. ``None`` if nobody answers in time."""
        if not self._broadcaster.available:
            return None
        waiter = _Waiter(page_id)

        async def on_response(envelope: BroadcastEnvelope) -> None:
            if envelope.correlation_key != page_id:
                return
            try:
                content = ContentPayload.model_validate(envelope.payload)
            except ValidationError:
                log.debug("content_response_malformed", page_id=page_id)
                return
            if content.blocks is None and content.html is None:
                return
            waiter.resolve(content)

        request = ContentRequest(page_id=page_id, force_refresh=force_refresh)
        timeout = self._force_refresh_timeout if force_refresh else self._content_timeout
        log.info("content_requested", page_id=page_id, force_refresh=force_refresh)
        content = await self._request(
            waiter,
            CHANNEL_RESPONSE_CONTENT,
            on_response,
            CHANNEL_REQUEST_CONTENT,
            request.model_dump(by_alias=True),
            timeout,
        )
        if content is not None:
            log.info("content_received", page_id=page_id)
        return content

    def serve_content(self, responder: ContentResponder) -> Callable[[], None]:
        """Answer content requests while this session is authoritative."""

        async def on_request(envelope: BroadcastEnvelope) -> None:
            # Re-checked per request: losing the role silently stops answers
            if not await check_authority(self._roles):
                return
            try:
                request = ContentRequest.model_validate(envelope.payload)
            except ValidationError:
                log.debug("content_request_malformed")
                return

            log.info(
                "content_request_received",
                page_id=request.page_id,
                force_refresh=request.force_refresh,
            )
            content = await responder.resolve(request)
            if content is None:
                log.info("content_unavailable", page_id=request.page_id)
                return

            payload = content.model_dump(by_alias=True, exclude_none=True)
            if content.html is not None and content.blocks is not None:
                # Blocks alone are enough for a viewer to render
                if not self._broadcaster.fits(payload, correlation_key=request.page_id):
                    payload.pop("html")
            await self._broadcaster.send(
                CHANNEL_RESPONSE_CONTENT, payload, correlation_key=request.page_id
            )

        return self._track(self._broadcaster.subscribe(CHANNEL_REQUEST_CONTENT, on_request))

    # ------------------------------------------------------------------
    # Visible tree
    # ------------------------------------------------------------------

    async def request_visible_tree(self) -> dict[str, Any] | None:
        if not self._broadcaster.available:
            return None
        waiter = _Waiter(None)

        async def on_tree(envelope: BroadcastEnvelope) -> None:
            tree = envelope.payload.get("tree")
            if isinstance(tree, dict):
                waiter.resolve(tree)

        log.info("visible_tree_requested")
        return await self._request(
            waiter,
            CHANNEL_VISIBLE_TREE,
            on_tree,
            CHANNEL_REQUEST_VISIBLE_TREE,
            {},
            self._visible_tree_timeout,
        )

    async def push_visible_tree(self, tree: dict[str, Any]) -> SendResult:
        """Broadcast the visible tree to every viewer. Fire-and-forget."""
        return await self._broadcaster.send(CHANNEL_VISIBLE_TREE, {"tree": tree})

    def serve_visible_tree(
        self, get_tree: Callable[[], Awaitable[dict[str, Any] | None]]
    ) -> Callable[[], None]:
        async def on_request(envelope: BroadcastEnvelope) -> None:
            if not await check_authority(self._roles):
                return
            try:
                tree = await get_tree()
            except Exception:
                log.warning("visible_tree_build_error", exc_info=True)
                return
            if tree is not None:
                await self.push_visible_tree(tree)

        return self._track(
            self._broadcaster.subscribe(CHANNEL_REQUEST_VISIBLE_TREE, on_request)
        )

    def listen_visible_tree(
        self, callback: Callable[[dict[str, Any]], None]
    ) -> Callable[[], None]:
        """Call ``callback`` with each pushed tree. Receivers replace their whole tree."""

        async def on_tree(envelope: BroadcastEnvelope) -> None:
            tree = envelope.payload.get("tree")
            if isinstance(tree, dict):
                callback(tree)

        return self._track(self._broadcaster.subscribe(CHANNEL_VISIBLE_TREE, on_tree))

    # ------------------------------------------------------------------
    # Full tree
    # ------------------------------------------------------------------

    async def request_full_tree(
        self, requester_id: str, requester_name: str | None = None
    ) -> dict[str, Any] | None:
        """Ask the host for the complete vault tree, e.g. right after gaining host rights.

        Only the response tagged with ``requester_id`` resolves the request.
        """
        if not self._broadcaster.available:
            return None
        waiter = _Waiter(requester_id)

        async def on_tree(envelope: BroadcastEnvelope) -> None:
            if envelope.correlation_key != requester_id:
                return
            tree = envelope.payload.get("tree")
            if isinstance(tree, dict):
                waiter.resolve(tree)

        payload: dict[str, Any] = {"requesterId": requester_id}
        if requester_name:
            payload["requesterName"] = requester_name
        log.info("full_tree_requested", requester_id=requester_id)
        return await self._request(
            waiter,
            CHANNEL_FULL_TREE,
            on_tree,
            CHANNEL_REQUEST_FULL_TREE,
            payload,
            self._full_tree_timeout,
        )

    def serve_full_tree(
        self, get_tree: Callable[[], Awaitable[dict[str, Any] | None]]
    ) -> Callable[[], None]:
        async def on_request(envelope: BroadcastEnvelope) -> None:
            requester_id = envelope.payload.get("requesterId")
            if not isinstance(requester_id, str) or not requester_id:
                return
            if not await check_authority(self._roles):
                return
            try:
                tree = await get_tree()
            except Exception:
                log.warning("full_tree_build_error", exc_info=True)
                return
            if tree is None:
                return
            log.info("full_tree_sent", requester_id=requester_id)
            await self._broadcaster.send(
                CHANNEL_FULL_TREE,
                {"requesterId": requester_id, "tree": tree},
                correlation_key=requester_id,
            )

        return self._track(self._broadcaster.subscribe(CHANNEL_REQUEST_FULL_TREE, on_request))

    # ------------------------------------------------------------------
    # Show image
    # ------------------------------------------------------------------

    async def show_image(self, url: str, caption: str | None = None) -> SendResult:
        payload: dict[str, Any] = {"url": url}
        if caption:
            payload["caption"] = caption
        return await self._broadcaster.send(CHANNEL_SHOW_IMAGE, payload)

    def on_show_image(self, callback: Callable[[str, str | None], None]) -> Callable[[], None]:
        async def on_image(envelope: BroadcastEnvelope) -> None:
            url = envelope.payload.get("url")
            if isinstance(url, str) and url:
                caption = envelope.payload.get("caption")
                callback(url, caption if isinstance(caption, str) else None)

        return self._track(self._broadcaster.subscribe(CHANNEL_SHOW_IMAGE, on_image))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _track(self, unsubscribe: Callable[[], None]) -> Callable[[], None]:
        self._subscriptions.append(unsubscribe)
        return unsubscribe

    def close(self) -> None:
        """Remove every long-lived subscription this protocol registered."""
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        log.debug("sync_subscriptions_cleared")
