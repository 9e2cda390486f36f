from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Set

from ..logging import get_logger
from .fetch import RowFetcher, StoreQuery

logger = get_logger("chatvault.store.schema")

# (table, column) for every optional column the reader knows how to use.
OPTIONAL_COLUMNS: Dict[str, tuple[str, str]] = {
    "attributed_body": ("message", "attributedBody"),
    "cache_has_attachments": ("message", "cache_has_attachments"),
    "service": ("message", "service"),
    "account": ("message", "account"),
    "subject": ("message", "subject"),
    "associated_message_type": ("message", "associated_message_type"),
    "associated_message_guid": ("message", "associated_message_guid"),
    "expressive_send_style_id": ("message", "expressive_send_style_id"),
    "thread_originator_guid": ("message", "thread_originator_guid"),
    "reply_to_guid": ("message", "reply_to_guid"),
    "item_type": ("message", "item_type"),
    "person_centric_id": ("handle", "person_centric_id"),
    "uncanonicalized_id": ("handle", "uncanonicalized_id"),
}

PROBED_TABLES = ("message", "handle")


@dataclass(frozen=True)
class SchemaCapabilities:
    """Which optional columns exist in one store. Absent means unsupported."""

    attributed_body: bool = False
    cache_has_attachments: bool = False
    service: bool = False
    account: bool = False
    subject: bool = False
    associated_message_type: bool = False
    associated_message_guid: bool = False
    expressive_send_style_id: bool = False
    thread_originator_guid: bool = False
    reply_to_guid: bool = False
    item_type: bool = False
    person_centric_id: bool = False
    uncanonicalized_id: bool = False

    @classmethod
    def from_columns(cls, columns: Dict[str, Set[str]]) -> "SchemaCapabilities":
        flags = {
            name: column in columns.get(table, set())
            for name, (table, column) in OPTIONAL_COLUMNS.items()
        }
        return cls(**flags)

    def supports(self, name: str) -> bool:
        return bool(getattr(self, name, False))

    def supported(self) -> list[str]:
        return [item.name for item in fields(self) if getattr(self, item.name)]


def _store_key(store_path: str) -> str:
    return str(Path(store_path).expanduser().resolve())


class SchemaCache:
    """Computes capabilities at most once per store path.

    Probe failures propagate as ``StoreUnavailable`` and are not cached.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, SchemaCapabilities] = {}

    async def capabilities(self, store_path: str, fetch: RowFetcher) -> SchemaCapabilities:
        key = _store_key(store_path)
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        columns: Dict[str, Set[str]] = {}
        for table in PROBED_TABLES:
            rows = await fetch(StoreQuery(f"PRAGMA table_info({table})", (), f"schema_probe_{table}"), store_path)
            columns[table] = {str(row.get("name")) for row in rows if row.get("name")}

        capabilities = SchemaCapabilities.from_columns(columns)
        # Concurrent first probes may race here; both computed the same value.
        self._entries.setdefault(key, capabilities)
        logger.info("schema_probed", store_path=key, supported=capabilities.supported())
        return self._entries[key]

    def reset(self, store_path: str | None = None) -> None:
        if store_path is None:
            self._entries.clear()
        else:
            self._entries.pop(_store_key(store_path), None)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["OPTIONAL_COLUMNS", "SchemaCache", "SchemaCapabilities"]
