"""Serialized-size checks shared by every tier that must decide "does this fit".

Sizes are measured as the UTF-8 byte length of compact JSON, which is what the
host transport counts against its ceilings.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

SHARED_DOCUMENT_LIMIT = 16 * 1024
SHARED_DOCUMENT_SAFE_LIMIT = SHARED_DOCUMENT_LIMIT - 1024
BROADCAST_LIMIT = 64 * 1024


@dataclass(frozen=True)
class SizeCheck:
    fits: bool
    size: int
    limit: int

    @property
    def percentage(self) -> float:
        return round(self.size / self.limit * 100, 1) if self.limit else 0.0

    @property
    def kilobytes(self) -> int:
        return round(self.size / 1024)


def dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def json_size(obj: Any) -> int:
    """Byte size of ``obj`` serialized as compact JSON.

    Raises ``TypeError``/``ValueError`` for values that cannot be serialized;
    ``check_size`` converts that into a non-fitting result.
    """
    return len(dumps_compact(obj).encode("utf-8"))


def check_size(obj: Any, limit: int) -> SizeCheck:
    try:
        size = json_size(obj)
    except (TypeError, ValueError):
        return SizeCheck(fits=False, size=limit + 1, limit=limit)
    return SizeCheck(fits=size <= limit, size=size, limit=limit)


def check_document_size(
    key: str,
    value: Any,
    document: dict[str, Any],
    limit: int = SHARED_DOCUMENT_SAFE_LIMIT,
) -> SizeCheck:
    """Check the size of the whole shared document with ``key`` set to ``value``."""
    candidate = {**document, key: value}
    return check_size(candidate, limit)
