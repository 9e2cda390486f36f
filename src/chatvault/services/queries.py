from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence

from ..store.fetch import StoreQuery
from ..store.identity import LIKE_ESCAPE, ascii_lower, escape_like
from ..store.schema import SchemaCapabilities

OPTIONAL_PASSTHROUGH = (
    "service",
    "account",
    "subject",
    "associated_message_type",
    "associated_message_guid",
    "expressive_send_style_id",
    "thread_originator_guid",
    "reply_to_guid",
    "item_type",
)

MESSAGE_FROM = """
FROM message m
JOIN chat_message_join cmj ON cmj.message_id = m.ROWID
LEFT JOIN handle h ON h.ROWID = m.handle_id
""".strip()


@dataclass
class Scope:
    """Resolved scope and filters for one message query."""

    chat_id: Optional[int] = None
    handles: Sequence[str] = ()
    since_raw: Optional[int] = None
    until_raw: Optional[int] = None
    from_me: Optional[bool] = None
    has_attachments: Optional[bool] = None


@dataclass
class FilterContext:
    sql_clauses: List[str] = field(default_factory=list)
    sql_params: List[Any] = field(default_factory=list)

    def extend(self, clause: str, *params: Any) -> "FilterContext":
        return FilterContext([*self.sql_clauses, clause], [*self.sql_params, *params])

    def where(self) -> str:
        if not self.sql_clauses:
            return ""
        return "WHERE " + "\n  AND ".join(self.sql_clauses)


def placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def attachment_expression(capabilities: SchemaCapabilities) -> str:
    if capabilities.cache_has_attachments:
        return "COALESCE(m.cache_has_attachments, 0)"
    return "EXISTS (SELECT 1 FROM message_attachment_join maj WHERE maj.message_id = m.ROWID)"


def message_columns(capabilities: SchemaCapabilities) -> str:
    columns = [
        "m.ROWID AS message_rowid",
        "cmj.chat_id AS chat_id",
        "m.guid AS guid",
        "m.is_from_me AS is_from_me",
        "m.text AS text",
        "m.date AS date",
        "h.id AS sender",
        f"{'m.attributedBody' if capabilities.attributed_body else 'NULL'} AS attributed_body",
        f"{attachment_expression(capabilities)} AS has_attachments",
    ]
    for name in OPTIONAL_PASSTHROUGH:
        columns.append(f"{'m.' + name if capabilities.supports(name) else 'NULL'} AS {name}")
    return ",\n       ".join(columns)


def scope_filters(scope: Scope, capabilities: SchemaCapabilities) -> FilterContext:
    ctx = FilterContext()
    if scope.chat_id is not None:
        ctx = ctx.extend("cmj.chat_id = ?", int(scope.chat_id))
    if scope.handles:
        ctx = ctx.extend(
            "cmj.chat_id IN ("
            "SELECT chj.chat_id FROM chat_handle_join chj "
            "JOIN handle ph ON ph.ROWID = chj.handle_id "
            f"WHERE ph.id IN ({placeholders(scope.handles)}))",
            *scope.handles,
        )
    if scope.since_raw is not None:
        ctx = ctx.extend("m.date >= ?", scope.since_raw)
    if scope.until_raw is not None:
        ctx = ctx.extend("m.date <= ?", scope.until_raw)
    if scope.from_me is not None:
        ctx = ctx.extend("m.is_from_me = ?", 1 if scope.from_me else 0)
    if scope.has_attachments is not None:
        ctx = ctx.extend(f"{attachment_expression(capabilities)} = ?", 1 if scope.has_attachments else 0)
    return ctx


def text_match(ctx: FilterContext, needle: str) -> FilterContext:
    pattern = f"%{escape_like(ascii_lower(needle))}%"
    return ctx.extend("m.text IS NOT NULL AND m.text <> '' AND lower(m.text) LIKE ? ESCAPE ?", pattern, LIKE_ESCAPE)


# Plain text that cleans down to nothing: whitespace, line separators and
# the object replacement glyph Messages stores for inline attachments.
BLANK_TEXT = (
    "trim(replace(replace(m.text, char(65532), ''), char(65533), ''), "
    "char(32, 9, 10, 13, 8232, 8233)) = ''"
)


def rich_text_only(ctx: FilterContext) -> FilterContext:
    return ctx.extend(f"m.attributedBody IS NOT NULL AND (m.text IS NULL OR {BLANK_TEXT})")


def exclude_rowids(ctx: FilterContext, rowids: Sequence[int]) -> FilterContext:
    if not rowids:
        return ctx
    return ctx.extend(f"m.ROWID NOT IN ({placeholders(rowids)})", *rowids)


def select_messages(
    capabilities: SchemaCapabilities,
    ctx: FilterContext,
    *,
    limit: int,
    offset: int = 0,
    ascending: bool = False,
    label: str = "messages",
) -> StoreQuery:
    direction = "ASC" if ascending else "DESC"
    sql = "\n".join(
        [
            f"SELECT {message_columns(capabilities)}",
            MESSAGE_FROM,
            ctx.where(),
            f"ORDER BY m.date {direction}, m.ROWID {direction}",
            "LIMIT ? OFFSET ?",
        ]
    )
    return StoreQuery(sql, [*ctx.sql_params, int(limit), int(offset)], label)


def select_anchor(capabilities: SchemaCapabilities, rowid: int) -> StoreQuery:
    sql = "\n".join(
        [
            f"SELECT {message_columns(capabilities)}",
            MESSAGE_FROM,
            "WHERE m.ROWID = ?",
            "ORDER BY cmj.chat_id",
            "LIMIT 1",
        ]
    )
    return StoreQuery(sql, [int(rowid)], "context_anchor")


def context_window(
    capabilities: SchemaCapabilities,
    *,
    chat_id: Optional[int],
    date: Any,
    rowid: int,
    count: int,
    before: bool,
) -> StoreQuery:
    ctx = FilterContext()
    if chat_id is not None:
        ctx = ctx.extend("cmj.chat_id = ?", int(chat_id))
    if before:
        ctx = ctx.extend("(m.date < ? OR (m.date = ? AND m.ROWID < ?))", date, date, int(rowid))
    else:
        ctx = ctx.extend("(m.date > ? OR (m.date = ? AND m.ROWID > ?))", date, date, int(rowid))
    return select_messages(
        capabilities,
        ctx,
        limit=count,
        ascending=not before,
        label="context_before" if before else "context_after",
    )


def list_chats(limit: int) -> StoreQuery:
    sql = """
        WITH last_msg AS (
          SELECT cmj.chat_id, MAX(m.date) AS last_message_date
          FROM chat_message_join cmj
          JOIN message m ON m.ROWID = cmj.message_id
          GROUP BY cmj.chat_id
        )
        SELECT c.ROWID AS chat_id,
               c.guid AS guid,
               c.display_name AS display_name,
               lm.last_message_date AS last_message_date,
               (
                 SELECT GROUP_CONCAT(DISTINCT h.id)
                 FROM chat_handle_join ch
                 JOIN handle h ON h.ROWID = ch.handle_id
                 WHERE ch.chat_id = c.ROWID
               ) AS participants
        FROM chat c
        LEFT JOIN last_msg lm ON lm.chat_id = c.ROWID
        ORDER BY lm.last_message_date IS NULL, lm.last_message_date DESC, c.ROWID DESC
        LIMIT ?
    """
    return StoreQuery(sql, [int(limit)], "list_chats")


def select_attachments(rowids: Sequence[int]) -> StoreQuery:
    sql = f"""
        SELECT a.ROWID AS attachment_rowid,
               maj.message_id AS message_rowid,
               a.guid AS guid,
               a.filename AS filename,
               a.transfer_name AS transfer_name,
               a.mime_type AS mime_type,
               a.uti AS uti,
               a.total_bytes AS total_bytes
        FROM attachment a
        JOIN message_attachment_join maj ON maj.attachment_id = a.ROWID
        WHERE maj.message_id IN ({placeholders(rowids)})
        ORDER BY maj.message_id, a.ROWID
    """
    return StoreQuery(sql, [int(rowid) for rowid in rowids], "attachments")


__all__ = [
    "FilterContext",
    "Scope",
    "context_window",
    "exclude_rowids",
    "list_chats",
    "message_columns",
    "rich_text_only",
    "scope_filters",
    "select_anchor",
    "select_attachments",
    "select_messages",
    "text_match",
]
