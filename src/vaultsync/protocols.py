"""Protocol interfaces for the external collaborators.

Cache tiers and the sync protocol reference these protocols, never a concrete
host SDK. This allows:
- Tests to use lightweight in-memory fakes
- Different hosts (browser bridge, desktop shell) to plug in without touching
  cache or protocol code
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


class HostTransport(Protocol):
    """Shared document and broadcast primitives provided by the host SDK.

    ``get_metadata`` reads the client's local mirror of the shared document;
    it does not cost a network round trip. ``set_metadata`` merges ``patch``
    into the document (last write wins per top-level key). ``send_message``
    raises ``SizeLimitExceededError`` when the message exceeds the transport
    ceiling. ``on_message`` returns a callable that removes the handler.
    """

    async def get_metadata(self) -> dict[str, Any]: ...

    async def set_metadata(self, patch: dict[str, Any]) -> None: ...

    async def send_message(self, channel: str, payload: dict[str, Any]) -> None: ...

    def on_message(self, channel: str, handler: MessageHandler) -> Callable[[], None]: ...


class RoleOracle(Protocol):
    """Answers whether this session is the authoritative host."""

    async def is_authoritative(self) -> bool: ...


class ContentFetcher(Protocol):
    """Remote content client that turns a page id into blocks or metadata."""

    async def fetch_blocks(self, page_id: str) -> list[Any] | None: ...

    async def fetch_page_info(self, page_id: str) -> dict[str, Any] | None: ...


class KeyValueStore(Protocol):
    """Durable string key/value store. ``set`` may raise ``QuotaExceededError``."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...
