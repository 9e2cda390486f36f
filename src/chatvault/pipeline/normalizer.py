from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

from ..logging import get_logger
from ..models import DecodedPayload, NormalizedMessage
from ..store.timestamps import iso_local, iso_utc, to_canonical_ms
from .decoder import RichTextDecoder
from .text import normalize_message_text, truncate_for_log

logger = get_logger("chatvault.pipeline.normalizer")

REACTION_KINDS = {
    2000: "love",
    2001: "like",
    2002: "dislike",
    2003: "laugh",
    2004: "emphasize",
    2005: "question",
    2006: "emoji",
    2007: "sticker",
}
REACTION_RANGE = range(2000, 3000)
REACTION_REMOVED_RANGE = range(3000, 4000)

# Raw columns copied verbatim into the metadata bag whenever present.
METADATA_COLUMNS = (
    "associated_message_type",
    "associated_message_guid",
    "expressive_send_style_id",
    "thread_originator_guid",
    "reply_to_guid",
    "item_type",
)

_UNSET: Any = object()


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def reaction_kind(code: int) -> str:
    return REACTION_KINDS.get(code, f"code_{code}")


def classify(
    *,
    associated_message_type: Any,
    expressive_send_style_id: Any,
    has_attachments: bool,
    text: Optional[str],
) -> Tuple[str, Optional[str]]:
    """Message type and subtype; reactions outrank effects, effects outrank content."""
    code = _as_int(associated_message_type)
    if code is not None and code in REACTION_RANGE:
        return "reaction", reaction_kind(code)
    if code is not None and code in REACTION_REMOVED_RANGE:
        return "reaction_removed", reaction_kind(code - 1000)
    effect = _as_str(expressive_send_style_id)
    if effect:
        return "effect", effect
    if has_attachments and not text:
        return "attachment", None
    if text:
        return "text", None
    return "unknown", None


class MessageNormalizer:
    """Turns one raw row into a :class:`NormalizedMessage`."""

    def __init__(self, decoder: RichTextDecoder) -> None:
        self._decoder = decoder

    def needs_decode(self, row: Mapping[str, Any]) -> bool:
        if not row.get("attributed_body"):
            return False
        return normalize_message_text(row.get("text")) is None or _as_bool(row.get("has_attachments"))

    def normalize(self, row: Mapping[str, Any], decoded: Optional[DecodedPayload] = _UNSET) -> NormalizedMessage:
        if decoded is _UNSET:
            decoded = self._decoder.decode(row.get("attributed_body")) if self.needs_decode(row) else None

        plain = normalize_message_text(row.get("text"))
        if plain:
            text, text_source = plain, "text"
        elif decoded is not None and decoded.text:
            text, text_source = decoded.text, decoded.provenance
        else:
            text, text_source = None, "none"

        hints = list(decoded.attachment_hints) if decoded is not None else []
        has_attachments = _as_bool(row.get("has_attachments")) or bool(hints)
        message_type, subtype = classify(
            associated_message_type=row.get("associated_message_type"),
            expressive_send_style_id=row.get("expressive_send_style_id"),
            has_attachments=has_attachments,
            text=text,
        )

        metadata: Dict[str, Any] = {
            column: row[column] for column in METADATA_COLUMNS if row.get(column) is not None
        }
        if decoded is not None:
            if decoded.flags:
                metadata["flags"] = list(decoded.flags)
            if decoded.canonical_link:
                metadata["canonical_link"] = decoded.canonical_link
            if decoded.links:
                metadata["links"] = [link.model_dump() for link in decoded.links]
            if decoded.mentions:
                metadata["mentions"] = [mention.model_dump() for mention in decoded.mentions]
            if decoded.detected_entities:
                metadata["detected_entities"] = [entity.model_dump() for entity in decoded.detected_entities]

        unix_ms = to_canonical_ms(row.get("date"))
        from_me = _as_bool(row.get("is_from_me"))
        message = NormalizedMessage(
            message_rowid=int(row["message_rowid"]),
            chat_id=_as_int(row.get("chat_id")),
            guid=str(row.get("guid") or ""),
            from_me=from_me,
            text=text,
            text_source=text_source,
            sender=_as_str(row.get("sender")),
            unix_ms=unix_ms,
            iso_utc=iso_utc(unix_ms),
            iso_local=iso_local(unix_ms),
            has_attachments=has_attachments,
            attachment_hints=hints,
            service=_as_str(row.get("service")),
            account=_as_str(row.get("account")),
            subject=_as_str(row.get("subject")),
            message_type=message_type,
            subtype=subtype,
            metadata=metadata,
        )
        logger.debug(
            "message_normalized",
            message_rowid=message.message_rowid,
            message_type=message_type,
            text_source=text_source,
            preview=truncate_for_log(text, 40),
        )
        return message


__all__ = ["MessageNormalizer", "REACTION_KINDS", "classify", "reaction_kind"]
