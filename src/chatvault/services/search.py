from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from ..config import ChatVaultSettings, get_settings
from ..errors import QueryTimeout, ScopeRequired
from ..logging import get_logger
from ..models import DecodedPayload, HandleSet, NormalizedMessage, SearchRequest, SearchResult
from ..pipeline.decoder import RichTextDecoder
from ..pipeline.normalizer import MessageNormalizer
from ..store.fetch import RawRow, RowFetcher
from ..store.identity import IdentityResolver
from ..store.schema import SchemaCache, SchemaCapabilities
from ..store.timestamps import ScaleCache, datetime_to_ms, to_raw_units
from . import queries
from .queries import Scope

logger = get_logger("chatvault.services.search")


def message_sort_key(message: NormalizedMessage) -> Tuple[int, int]:
    return (message.unix_ms if message.unix_ms is not None else -1, message.message_rowid)


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle.casefold() in haystack.casefold()


class SearchEngine:
    """Scoped, bounded two-phase search.

    Phase 1 matches plain text in the store. Phase 2 only runs when phase 1
    came up short: it pulls rich-text-only rows from the same scope in
    batches, decodes them and keeps the ones whose recovered text matches.
    """

    def __init__(
        self,
        fetch: RowFetcher,
        *,
        schema_cache: SchemaCache,
        scale_cache: ScaleCache,
        resolver: IdentityResolver,
        decoder: RichTextDecoder,
        settings: ChatVaultSettings | None = None,
    ) -> None:
        self._fetch = fetch
        self._schema_cache = schema_cache
        self._scale_cache = scale_cache
        self._resolver = resolver
        self._decoder = decoder
        self._normalizer = MessageNormalizer(decoder)
        self._settings = settings or get_settings()

    async def search(self, request: SearchRequest, store_path: str | None = None) -> SearchResult:
        if not request.has_scope():
            raise ScopeRequired("search requires chat_id, participant, since or until")

        store_path = store_path or self._settings.chat_db_path
        limit = self._settings.clamp_limit(request.limit)
        needle = request.needle

        capabilities = await self._schema_cache.capabilities(store_path, self._fetch)
        scope, handles = await self.build_scope(request, store_path)
        base = queries.scope_filters(scope, capabilities)

        # Both phases rank the first offset + limit rows; the page is sliced after the merge.
        window = request.offset + limit
        primary_ctx = queries.text_match(base, needle) if needle else base
        primary_rows = await self._fetch(
            queries.select_messages(capabilities, primary_ctx, limit=window, label="search_primary"),
            store_path,
        )
        primary = await self.normalize_rows(primary_rows)
        logger.info(
            "search_phase_completed",
            phase="primary",
            matches=len(primary),
            limit=limit,
            offset=request.offset,
        )

        fallback: List[NormalizedMessage] = []
        scanned = 0
        pool_exhausted = False
        if needle and capabilities.attributed_body and len(primary) < window:
            fallback, scanned, pool_exhausted = await self._fallback(
                capabilities,
                base,
                needle,
                primary=primary,
                window=window,
                store_path=store_path,
            )

        fallback_ids = {message.message_rowid for message in fallback}
        merged: Dict[int, NormalizedMessage] = {}
        for message in (*primary, *fallback):
            merged.setdefault(message.message_rowid, message)
        ordered = sorted(merged.values(), key=message_sort_key, reverse=True)
        results = ordered[request.offset : window]

        return SearchResult(
            query=needle,
            results=results,
            total_considered=len(primary_rows) + scanned,
            truncated=len(ordered) > window or len(primary_rows) >= window or pool_exhausted,
            fallback_matches=sum(1 for message in results if message.message_rowid in fallback_ids),
            handles=handles,
        )

    async def build_scope(
        self, request: SearchRequest, store_path: str
    ) -> Tuple[Scope, Optional[HandleSet]]:
        handles: Optional[HandleSet] = None
        if request.participant and request.participant.strip():
            handles = await self._resolver.resolve_handles(request.participant, store_path)

        since_raw = until_raw = None
        if request.since is not None or request.until is not None:
            scale = await self._scale_cache.scale(store_path, self._fetch)
            if request.since is not None:
                since_raw = to_raw_units(datetime_to_ms(request.since), scale)
            if request.until is not None:
                until_raw = to_raw_units(datetime_to_ms(request.until), scale)

        scope = Scope(
            chat_id=request.chat_id,
            handles=tuple(handles.handles) if handles else (),
            since_raw=since_raw,
            until_raw=until_raw,
            from_me=request.from_me,
            has_attachments=request.has_attachments,
        )
        return scope, handles

    async def normalize_rows(self, rows: Sequence[RawRow]) -> List[NormalizedMessage]:
        """Normalize rows, decoding the payloads that need it off the event loop."""
        pending = [index for index, row in enumerate(rows) if self._normalizer.needs_decode(row)]
        decoded: Dict[int, Optional[DecodedPayload]] = {}
        if pending:
            payloads = await self._decoder.decode_many([rows[index].get("attributed_body") for index in pending])
            decoded = dict(zip(pending, payloads))
        return [self._normalizer.normalize(row, decoded.get(index)) for index, row in enumerate(rows)]

    async def _fallback(
        self,
        capabilities: SchemaCapabilities,
        base: queries.FilterContext,
        needle: str,
        *,
        primary: Sequence[NormalizedMessage],
        window: int,
        store_path: str,
    ) -> Tuple[List[NormalizedMessage], int, bool]:
        """Collect rich-text matches until the merged window is settled.

        Candidates arrive newest first, so once a match has ``window`` rows at
        or above it across both phases no later candidate can enter the window.
        """
        need = window - len(primary)
        primary_keys = [message_sort_key(message) for message in primary]
        exclude = [message.message_rowid for message in primary]
        pool = min(need * self._settings.fallback_multiplier, self._settings.fallback_cap)
        batch_size = max(1, self._settings.fallback_batch_size)
        ctx = queries.exclude_rowids(queries.rich_text_only(base), exclude)

        matches: List[NormalizedMessage] = []
        scanned = 0
        last_batch_full = False
        settled = False
        while scanned < pool and not settled:
            size = min(batch_size, pool - scanned)
            try:
                rows = await self._fetch(
                    queries.select_messages(
                        capabilities, ctx, limit=size, offset=scanned, label="search_fallback"
                    ),
                    store_path,
                )
            except QueryTimeout as exc:
                logger.warning("search_fallback_timeout", scanned=scanned, matches=len(matches), error=exc.message)
                break

            scanned += len(rows)
            last_batch_full = len(rows) == size
            payloads = await self._decoder.decode_many([row.get("attributed_body") for row in rows])
            for row, payload in zip(rows, payloads):
                if payload is None or not _contains(payload.text, needle):
                    continue
                message = self._normalizer.normalize(row, payload)
                matches.append(message)
                key = message_sort_key(message)
                if len(matches) + sum(1 for other in primary_keys if other > key) >= window:
                    settled = True
                    break
            if not last_batch_full:
                break

        pool_exhausted = scanned >= pool and last_batch_full and not settled
        logger.info(
            "search_phase_completed",
            phase="fallback",
            matches=len(matches),
            scanned=scanned,
            pool=pool,
            pool_exhausted=pool_exhausted,
        )
        return matches, scanned, pool_exhausted


__all__ = ["SearchEngine", "message_sort_key"]
