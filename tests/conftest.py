"""Shared test fixtures for the vaultsync test suite.

The host SDK is replaced by ``FakeRoom``: one shared document plus a set of
broadcast channels, with one ``FakeTransport`` per connected client. Limits
are enforced the way the real host enforces them, by raising
``SizeLimitExceededError``.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from typing import TYPE_CHECKING, Any

import aiosqlite
import pytest

from vaultsync.errors import SizeLimitExceededError, StorageError
from vaultsync.events import EventBus
from vaultsync.kvstore import SqliteKeyValueStore
from vaultsync.sizing import BROADCAST_LIMIT, SHARED_DOCUMENT_LIMIT, json_size

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


# ---------------------------------------------------------------------------
# Host transport fakes
# ---------------------------------------------------------------------------


class FakeRoom:
    """Shared state visible to every FakeTransport connected to it."""

    def __init__(
        self,
        *,
        document_limit: int = SHARED_DOCUMENT_LIMIT,
        message_limit: int = BROADCAST_LIMIT,
    ) -> None:
        self.document: dict[str, Any] = {}
        self.document_limit = document_limit
        self.message_limit = message_limit
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.metadata_writes = 0
        self._handlers: dict[str, list[tuple[FakeTransport, MessageHandler]]] = defaultdict(list)
        self._tasks: set[asyncio.Task[None]] = set()

    def connect(self) -> FakeTransport:
        return FakeTransport(self)

    def handler_count(self, channel: str) -> int:
        return len(self._handlers[channel])

    async def drain(self) -> None:
        """Wait until every in-flight delivery has been handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _deliver(self, sender: FakeTransport, channel: str, payload: dict[str, Any]) -> None:
        for client, handler in list(self._handlers[channel]):
            # Broadcasts reach remote clients only
            if client is sender:
                continue
            task = asyncio.create_task(handler(copy.deepcopy(payload)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


class FakeTransport:
    def __init__(self, room: FakeRoom) -> None:
        self.room = room
        self.fail_reads = False
        self.fail_writes = False

    async def get_metadata(self) -> dict[str, Any]:
        if self.fail_reads:
            raise StorageError("metadata unavailable")
        return copy.deepcopy(self.room.document)

    async def set_metadata(self, patch: dict[str, Any]) -> None:
        if self.fail_writes:
            raise StorageError("metadata write rejected")
        candidate = {**self.room.document, **copy.deepcopy(patch)}
        size = json_size(candidate)
        if size > self.room.document_limit:
            raise SizeLimitExceededError("shared document too large", size=size)
        self.room.document = candidate
        self.room.metadata_writes += 1

    async def send_message(self, channel: str, payload: dict[str, Any]) -> None:
        size = json_size(payload)
        if size > self.room.message_limit:
            raise SizeLimitExceededError("message too large", size=size)
        self.room.sent.append((channel, payload))
        self.room._deliver(self, channel, payload)

    def on_message(self, channel: str, handler: MessageHandler) -> Callable[[], None]:
        registration = (self, handler)
        self.room._handlers[channel].append(registration)

        def unsubscribe() -> None:
            if registration in self.room._handlers[channel]:
                self.room._handlers[channel].remove(registration)

        return unsubscribe


class FakeRoleOracle:
    def __init__(self, authoritative: bool = False) -> None:
        self.authoritative = authoritative
        self.fail = False

    async def is_authoritative(self) -> bool:
        if self.fail:
            raise RuntimeError("role lookup failed")
        return self.authoritative


class FakeFetcher:
    """Origin content keyed by page id. Records every fetch."""

    def __init__(self, pages: dict[str, list[Any]] | None = None) -> None:
        self.pages = pages or {}
        self.page_info: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.info_calls: list[str] = []
        self.fail = False

    async def fetch_blocks(self, page_id: str) -> list[Any] | None:
        self.calls.append(page_id)
        if self.fail:
            raise RuntimeError("origin unavailable")
        return self.pages.get(page_id)

    async def fetch_page_info(self, page_id: str) -> dict[str, Any] | None:
        self.info_calls.append(page_id)
        if self.fail:
            raise RuntimeError("origin unavailable")
        return self.page_info.get(page_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def room() -> FakeRoom:
    return FakeRoom()


@pytest.fixture()
def host_roles() -> FakeRoleOracle:
    return FakeRoleOracle(authoritative=True)


@pytest.fixture()
def viewer_roles() -> FakeRoleOracle:
    return FakeRoleOracle(authoritative=False)


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
async def store_db() -> AsyncGenerator[aiosqlite.Connection, None]:
    async with aiosqlite.connect(":memory:") as db:
        yield db


@pytest.fixture()
async def kv_store(store_db: aiosqlite.Connection) -> SqliteKeyValueStore:
    store = SqliteKeyValueStore(store_db, max_bytes=256 * 1024)
    await store.init_db()
    return store


def _make_blocks(count: int, text_size: int = 40) -> list[dict[str, Any]]:
    return [
        {"id": f"block-{i}", "type": "paragraph", "text": "x" * text_size}
        for i in range(count)
    ]


@pytest.fixture()
def make_blocks() -> Callable[..., list[dict[str, Any]]]:
    """Factory for block lists whose serialized size grows with ``count * text_size``."""
    return _make_blocks


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()
