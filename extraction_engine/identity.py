"""Stable external identifiers for remote records.

Each extractor either returns an identifier or ``None``; the first non-empty
answer wins. Entities that declare their identifier fields get those tried
first.
"""
from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Sequence

from .models import Document
from .utils import sha256_hex, stable_json_dumps

Extractor = Callable[[Document], Optional[str]]

DEFAULT_ID_FIELDS = ("id", "uuid", "order_id", "order_number", "uid", "code", "slug")
HASH_PREFIX = "sha256:"
HASH_LENGTH = 32


def field_extractor(name: str) -> Extractor:
    def extract(record: Document) -> Optional[str]:
        value = record.get(name)
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    extract.__name__ = f"field_{name}"
    return extract


def content_hash(record: Document) -> str:
    return HASH_PREFIX + sha256_hex(stable_json_dumps(record).encode("utf-8"))[:HASH_LENGTH]


def build_chain(declared: Iterable[str] = ()) -> List[Extractor]:
    fields: List[str] = []
    for name in (*declared, *DEFAULT_ID_FIELDS):
        if name not in fields:
            fields.append(name)
    return [field_extractor(name) for name in fields]


class IdentityStrategy:
    def __init__(self, declared_fields: Sequence[str] = ()) -> None:
        self.chain = build_chain(declared_fields)

    def find(self, record: Document) -> Optional[str]:
        for extract in self.chain:
            value = extract(record)
            if value:
                return value
        return None

    def external_id(self, record: Document) -> str:
        return self.find(record) or content_hash(record)
