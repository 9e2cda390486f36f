from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..config import ChatVaultSettings, get_settings
from ..errors import ScopeRequired
from ..logging import ensure_logging, get_logger
from ..models import (
    AttachmentRecord,
    ChatSummary,
    ContextResult,
    HandleSet,
    MessageList,
    NormalizedMessage,
    SearchRequest,
    SearchResult,
)
from ..pipeline.decoder import DecodeCache, build_decoder
from ..store.fetch import RowFetcher, SqliteRowFetcher
from ..store.identity import IdentityResolver
from ..store.schema import SchemaCache
from ..store.timestamps import ScaleCache, iso_utc, to_canonical_ms
from . import queries
from .queries import Scope
from .search import SearchEngine, message_sort_key

logger = get_logger("chatvault.services.messages")

ATTACHMENTS_ROOT = Path.home() / "Library" / "Messages" / "Attachments"


def resolve_attachment_path(raw: Optional[str], base: Path = ATTACHMENTS_ROOT) -> Optional[Path]:
    if not raw:
        return None

    try:
        candidate = Path(str(raw)).expanduser()
    except TypeError:
        return None

    if candidate.is_absolute():
        return candidate
    return (base / candidate).expanduser()


def _split_participants(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


def _unique_ids(values: Iterable[int]) -> List[int]:
    seen: Dict[int, None] = {}
    for value in values:
        seen.setdefault(int(value), None)
    return list(seen)


class MessageService:
    """Typed read operations over one message store."""

    def __init__(
        self,
        settings: ChatVaultSettings | None = None,
        *,
        fetch: RowFetcher | None = None,
        schema_cache: SchemaCache | None = None,
        scale_cache: ScaleCache | None = None,
        decode_cache: DecodeCache | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        ensure_logging(self._settings.log_level)
        self._fetch = fetch or SqliteRowFetcher(timeout=self._settings.query_timeout_seconds)
        self._schema_cache = schema_cache or SchemaCache()
        self._scale_cache = scale_cache or ScaleCache()
        self._decode_cache = decode_cache or DecodeCache()
        self._resolver = IdentityResolver(
            self._fetch,
            self._schema_cache,
            substring_cap=self._settings.handle_substring_cap,
            default_region=self._settings.default_region,
        )
        self._engine = SearchEngine(
            self._fetch,
            schema_cache=self._schema_cache,
            scale_cache=self._scale_cache,
            resolver=self._resolver,
            decoder=build_decoder(self._settings, self._decode_cache),
            settings=self._settings,
        )

    @property
    def store_path(self) -> str:
        return self._settings.chat_db_path

    def reset_caches(self) -> None:
        self._schema_cache.reset()
        self._scale_cache.reset()
        self._decode_cache.reset()

    async def list_chats(self, limit: int | None = None) -> List[ChatSummary]:
        rows = await self._fetch(queries.list_chats(self._settings.clamp_limit(limit)), self.store_path)
        chats: List[ChatSummary] = []
        for row in rows:
            last_ms = to_canonical_ms(row.get("last_message_date"))
            chats.append(
                ChatSummary(
                    chat_id=int(row["chat_id"]),
                    guid=str(row.get("guid") or ""),
                    display_name=row.get("display_name") or None,
                    participants=_split_participants(row.get("participants")),
                    last_message_unix_ms=last_ms,
                    last_message_iso_utc=iso_utc(last_ms),
                )
            )
        return chats

    async def resolve_handles(self, participant: str) -> HandleSet:
        return await self._resolver.resolve_handles(participant, self.store_path)

    async def get_messages(
        self,
        *,
        chat_id: int | None = None,
        participant: str | None = None,
        limit: int | None = None,
    ) -> MessageList:
        """Newest ``limit`` messages of a chat or participant, oldest first."""
        if chat_id is None and not (participant and participant.strip()):
            raise ScopeRequired("get_messages requires chat_id or participant")

        capabilities = await self._schema_cache.capabilities(self.store_path, self._fetch)
        handles: Optional[HandleSet] = None
        if participant and participant.strip():
            handles = await self.resolve_handles(participant)

        scope = Scope(chat_id=chat_id, handles=tuple(handles.handles) if handles else ())
        rows = await self._fetch(
            queries.select_messages(
                capabilities,
                queries.scope_filters(scope, capabilities),
                limit=self._settings.clamp_limit(limit),
                label="get_messages",
            ),
            self.store_path,
        )
        messages = await self._engine.normalize_rows(rows)
        return MessageList(messages=sorted(messages, key=message_sort_key), handles=handles)

    async def search(self, request: SearchRequest) -> SearchResult:
        return await self._engine.search(request, self.store_path)

    async def context_around_message(self, message_rowid: int, before: int = 5, after: int = 5) -> ContextResult:
        before = max(0, min(self._settings.max_limit, int(before)))
        after = max(0, min(self._settings.max_limit, int(after)))

        capabilities = await self._schema_cache.capabilities(self.store_path, self._fetch)
        anchor_rows = await self._fetch(queries.select_anchor(capabilities, message_rowid), self.store_path)
        if not anchor_rows:
            logger.info("context_anchor_missing", message_rowid=message_rowid)
            return ContextResult(anchor_rowid=message_rowid)

        anchor = anchor_rows[0]
        chat_id = anchor.get("chat_id")
        earlier = []
        later = []
        # One extra row per side tells whether the window cut anything off.
        if before:
            earlier = await self._fetch(
                queries.context_window(
                    capabilities,
                    chat_id=chat_id,
                    date=anchor.get("date"),
                    rowid=message_rowid,
                    count=before + 1,
                    before=True,
                ),
                self.store_path,
            )
        if after:
            later = await self._fetch(
                queries.context_window(
                    capabilities,
                    chat_id=chat_id,
                    date=anchor.get("date"),
                    rowid=message_rowid,
                    count=after + 1,
                    before=False,
                ),
                self.store_path,
            )

        truncated = len(earlier) > before or len(later) > after
        window = [*reversed(earlier[:before]), anchor, *later[:after]]
        messages: List[NormalizedMessage] = await self._engine.normalize_rows(window)
        return ContextResult(
            anchor_rowid=message_rowid,
            chat_id=chat_id,
            messages=messages,
            total_considered=len(earlier) + 1 + len(later),
            truncated=truncated,
        )

    async def get_attachments(
        self, message_rowids: Iterable[int], per_row_cap: int | None = None
    ) -> Dict[int, List[AttachmentRecord]]:
        rowids = _unique_ids(message_rowids)
        grouped: Dict[int, List[AttachmentRecord]] = {rowid: [] for rowid in rowids}
        if not rowids:
            return grouped

        cap = per_row_cap if per_row_cap is not None else self._settings.attachment_row_cap
        cap = max(1, int(cap))
        rows = await self._fetch(queries.select_attachments(rowids), self.store_path)
        for row in rows:
            bucket = grouped.setdefault(int(row["message_rowid"]), [])
            if len(bucket) >= cap:
                continue
            path = resolve_attachment_path(row.get("filename")) or resolve_attachment_path(row.get("transfer_name"))
            total_bytes = row.get("total_bytes")
            bucket.append(
                AttachmentRecord(
                    attachment_rowid=int(row["attachment_rowid"]),
                    message_rowid=int(row["message_rowid"]),
                    guid=row.get("guid"),
                    filename=row.get("filename"),
                    transfer_name=row.get("transfer_name"),
                    mime_type=row.get("mime_type"),
                    uti=row.get("uti"),
                    total_bytes=int(total_bytes) if total_bytes is not None else None,
                    path=str(path) if path is not None else None,
                )
            )
        return grouped


__all__ = ["MessageService", "resolve_attachment_path"]
