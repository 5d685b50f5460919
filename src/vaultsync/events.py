"""Typed notifications emitted by cache tiers and the broadcaster.

Components emit events instead of calling into presentation code; the UI layer
subscribes to the types it cares about (e.g. to show a "storage full" notice).
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable

log = structlog.get_logger()

E = TypeVar("E")


@dataclass(frozen=True)
class StorageLimitReached:
    """A durable store rejected a write because its quota is exhausted."""

    cache: str  # "blocks" | "page_info"
    context: str  # What the write was for, e.g. "caching page content"


@dataclass(frozen=True)
class SizeLimitExceeded:
    """A broadcast was rejected because it exceeds the per-message ceiling."""

    channel: str
    estimated_kb: int


class EventBus:
    """Synchronous fan-out of typed events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``. Returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: object) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                # Observer failures never reach the emitting component
                log.warning("event_handler_error", event_type=type(event).__name__, exc_info=True)
