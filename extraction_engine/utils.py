from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence, TypeVar

T = TypeVar("T")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def stable_json_dumps(obj: Any) -> str:
    """Deterministic JSON serialization (stable key order)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def truncate(text: str | None, limit: int = 500) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit]


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    size = max(size, 1)
    for i in range(0, len(items), size):
        yield items[i:i + size]
