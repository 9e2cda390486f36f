from __future__ import annotations

import asyncio
import hashlib
import plistlib
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import DecodeFailure, PlistConversionError
from ..logging import get_logger
from ..models import (
    AttachmentHint,
    DecodedPayload,
    DetectedEntity,
    LinkEntity,
    Mention,
)
from .text import (
    CleanedText,
    clean_text_with_positions,
    extract_longest_printable,
    has_letter_or_digit,
    is_archive_token,
)
from .typedstream import (
    ArchivedAttributedString,
    ArchivedObject,
    TypedStreamError,
    looks_like_typedstream,
    unarchive,
)

logger = get_logger("chatvault.pipeline.decoder")

ATTACHMENT_GUID_KEY = "__kIMFileTransferGUIDAttributeName"
ATTACHMENT_FILENAME_KEY = "__kIMFilenameAttributeName"
MENTION_KEY = "__kIMMentionConfirmedMention"
LINK_KEY = "__kIMLinkAttributeName"
DETECTED_KEYS = {
    "__kIMDataDetectedAttributeName": "data_detected",
    "__kIMCalendarEventAttributeName": "calendar_event",
    "__kIMPhoneNumberAttributeName": "phone_number",
    "__kIMEmailAddressAttributeName": "email",
    "__kIMAddressAttributeName": "address",
    "__kIMOneTimeCodeAttributeName": "one_time_code",
    "__kIMMoneyAttributeName": "money",
}
FLAG_KEYS = {
    "__kIMEmojiImageAttributeName": "is_emoji_image",
    "__kIMLinkIsRichLinkAttributeName": "is_rich_link",
    "__kIMTextEffectAttributeName": "has_text_effect",
    "__kIMTextBoldAttributeName": "has_bold",
    "__kIMTextItalicAttributeName": "has_italic",
}
KEYED_ARCHIVE_PREFIXES = (b"bplist", b"<?xml", b"<plist")

PlistConverter = Callable[[bytes], Any]
_MISSING = object()


class DecodeTier(str, Enum):
    PRIMARY = "primary"
    LEGACY = "legacy"
    RAW_SCAN = "raw-scan"
    NONE = "none"


@dataclass
class Span:
    offset: int
    length: int


@dataclass
class TierOutcome:
    """Raw (uncleaned) text and entities recovered by one tier."""

    tier: DecodeTier
    text: Optional[str]
    attachments: List[Tuple[Span, Optional[str], Optional[str]]] = field(default_factory=list)
    mentions: List[Tuple[Span, str]] = field(default_factory=list)
    links: List[Tuple[Span, str]] = field(default_factory=list)
    detected: List[Tuple[Span, str]] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)


def payload_digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


# -- tier 1: structured parse ------------------------------------------------


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, ArchivedAttributedString):
        return value.text
    return None


def _outcome_from_attributed(archived: ArchivedAttributedString) -> TierOutcome:
    outcome = TierOutcome(tier=DecodeTier.PRIMARY, text=archived.text)
    flags: Dict[str, None] = {}
    for run in archived.runs:
        span = Span(run.offset, run.length)
        attributes = run.attributes
        for key, flag in FLAG_KEYS.items():
            if key in attributes:
                flags[flag] = None
        guid = _as_text(attributes.get(ATTACHMENT_GUID_KEY))
        if guid:
            outcome.attachments.append((span, guid, _as_text(attributes.get(ATTACHMENT_FILENAME_KEY))))
        mention = _as_text(attributes.get(MENTION_KEY))
        if mention:
            outcome.mentions.append((span, mention))
        link = _as_text(attributes.get(LINK_KEY))
        if link:
            outcome.links.append((span, link))
        for key, kind in DETECTED_KEYS.items():
            if key in attributes:
                outcome.detected.append((span, kind))
    outcome.flags = list(flags)
    return outcome


def _resolve_uid(value: Any, objects: List[Any], seen: frozenset[int]) -> Tuple[Any, frozenset[int]]:
    current = value
    local_seen = seen
    while isinstance(current, plistlib.UID) or (isinstance(current, dict) and "UID" in current and len(current) == 1):
        uid = current.data if isinstance(current, plistlib.UID) else current.get("UID")
        if not isinstance(uid, int) or uid in local_seen or not 0 <= uid < len(objects):
            return None, local_seen
        current = objects[uid]
        local_seen = local_seen | {uid}
    return current, local_seen


def _keyed_archive_text(archive: Any) -> Optional[str]:
    """Visible string of an NSKeyedArchiver property list."""

    if not isinstance(archive, dict):
        return None
    objects = archive.get("$objects")
    top = archive.get("$top")
    if not isinstance(objects, list) or not isinstance(top, dict):
        return None

    def extract(value: Any, seen: frozenset[int]) -> Optional[str]:
        node, seen = _resolve_uid(value, objects, seen)
        if node is None:
            return None
        if isinstance(node, str):
            return node if node != "$null" else None
        if isinstance(node, bytes):
            return node.decode("utf-8", errors="ignore")
        if isinstance(node, dict):
            if isinstance(node.get("NSString"), str):
                return node["NSString"]
            for key in ("NS.string", "NSString"):
                if key in node:
                    candidate = extract(node[key], seen)
                    if candidate:
                        return candidate
            for key in ("NS.objects", "NS.values"):
                if isinstance(node.get(key), list):
                    for item in node[key]:
                        candidate = extract(item, seen)
                        if candidate:
                            return candidate
        if isinstance(node, list):
            for item in node:
                candidate = extract(item, seen)
                if candidate:
                    return candidate
        return None

    if "root" in top:
        return extract(top["root"], frozenset())
    return None


def primary_tier(payload: bytes) -> TierOutcome:
    if payload.startswith(KEYED_ARCHIVE_PREFIXES):
        try:
            archive = plistlib.loads(payload)
        except (plistlib.InvalidFileException, ValueError, TypeError, KeyError, OverflowError) as exc:
            raise DecodeFailure(f"keyed archive unreadable: {exc}") from exc
        text = _keyed_archive_text(archive)
        if text is None:
            raise DecodeFailure("keyed archive carries no string")
        return TierOutcome(tier=DecodeTier.PRIMARY, text=text)

    if not looks_like_typedstream(payload):
        raise DecodeFailure("payload is not a typedstream archive")
    try:
        root = unarchive(payload)
    except (TypedStreamError, UnicodeDecodeError) as exc:
        raise DecodeFailure(f"typedstream unreadable: {exc}") from exc
    if isinstance(root, ArchivedAttributedString):
        return _outcome_from_attributed(root)
    if isinstance(root, str):
        return TierOutcome(tier=DecodeTier.PRIMARY, text=root)
    kind = root.class_name if isinstance(root, ArchivedObject) else type(root).__name__
    raise DecodeFailure(f"typedstream root is {kind}, not a string")


# -- tier 2: property-list conversion ---------------------------------------


def plistlib_converter(payload: bytes) -> Any:
    try:
        return plistlib.loads(payload)
    except (plistlib.InvalidFileException, ValueError, TypeError, KeyError, OverflowError) as exc:
        raise PlistConversionError(f"plistlib could not convert payload: {exc}") from exc


def plutil_converter(timeout: float) -> PlistConverter:
    """Converter backed by the macOS ``plutil`` tool."""

    def convert(payload: bytes) -> Any:
        try:
            completed = subprocess.run(
                ["plutil", "-convert", "xml1", "-o", "-", "-"],
                input=payload,
                capture_output=True,
                timeout=timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as exc:
            raise PlistConversionError(f"plutil exceeded {timeout:.1f}s") from exc
        except (subprocess.CalledProcessError, OSError) as exc:
            raise PlistConversionError(f"plutil failed: {exc}") from exc
        return plistlib_converter(completed.stdout)

    return convert


def _string_leaves(tree: Any) -> List[str]:
    leaves: List[str] = []
    stack: List[Any] = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, str):
            leaves.append(node)
        elif isinstance(node, dict):
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, (list, tuple)):
            stack.extend(reversed(node))
    return leaves


def legacy_tier(payload: bytes, converter: PlistConverter) -> TierOutcome:
    tree = converter(payload)
    best: Optional[str] = None
    for leaf in _string_leaves(tree):
        candidate = leaf.strip()
        if not candidate or not all(ch.isprintable() or ch in "\t\n\r" for ch in candidate):
            continue
        if not has_letter_or_digit(candidate) or is_archive_token(candidate):
            continue
        if best is None or len(candidate) > len(best):
            best = candidate
    if best is None:
        raise DecodeFailure("property list holds no printable text")
    return TierOutcome(tier=DecodeTier.LEGACY, text=best)


# -- tier 3: raw byte scan ----------------------------------------------------


def raw_scan_tier(payload: bytes) -> TierOutcome:
    text = extract_longest_printable(payload)
    if text is None:
        raise DecodeFailure("no printable run in payload")
    return TierOutcome(tier=DecodeTier.RAW_SCAN, text=text)


# -- assembly -----------------------------------------------------------------


def _build_payload(outcome: Optional[TierOutcome]) -> DecodedPayload:
    if outcome is None:
        return DecodedPayload(text=None, provenance="none")

    cleaned: CleanedText = clean_text_with_positions(outcome.text)

    def spans(span: Span) -> Dict[str, int]:
        offset, length = cleaned.remap(span.offset, span.length)
        return {"offset": offset, "length": length}

    def excerpt(span: Span) -> Optional[str]:
        offset, length = cleaned.remap(span.offset, span.length)
        if cleaned.text is None or length == 0:
            return None
        return cleaned.text[offset : offset + length]

    links = [LinkEntity(url=url, **spans(span)) for span, url in outcome.links]
    canonical_link = links[0].url if links and "is_rich_link" in outcome.flags else None
    if cleaned.text is None:
        provenance = "none"
    elif outcome.tier is DecodeTier.PRIMARY:
        provenance = "primary-parser"
    else:
        provenance = "legacy-extraction"

    return DecodedPayload(
        text=cleaned.text,
        provenance=provenance,
        canonical_link=canonical_link,
        attachment_hints=[
            AttachmentHint(guid=guid, filename=filename, **spans(span))
            for span, guid, filename in outcome.attachments
        ],
        mentions=[Mention(handle=handle, **spans(span)) for span, handle in outcome.mentions],
        links=links,
        detected_entities=[
            DetectedEntity(kind=kind, text=excerpt(span), **spans(span)) for span, kind in outcome.detected
        ],
        flags=list(outcome.flags),
    )


class DecodeCache:
    """Process-wide memo of decoded payloads keyed by content hash.

    Entries are never evicted. Concurrent writers for one key store equal
    values, so a plain dict assignment is enough.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Optional[DecodedPayload]] = {}

    def lookup(self, key: str) -> Any:
        return self._entries.get(key, _MISSING)

    def store(self, key: str, value: Optional[DecodedPayload]) -> None:
        self._entries[key] = value

    def reset(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class RichTextDecoder:
    """Tiered decoder: structured parse, property-list walk, raw byte scan."""

    def __init__(self, cache: DecodeCache | None = None, converter: PlistConverter | None = None) -> None:
        self.cache = cache if cache is not None else DecodeCache()
        self._converter = converter or plistlib_converter

    def decode(self, payload: Optional[bytes]) -> Optional[DecodedPayload]:
        if not payload:
            return None
        data = bytes(payload)
        key = payload_digest(data)
        cached = self.cache.lookup(key)
        if cached is not _MISSING:
            return cached

        try:
            result: Optional[DecodedPayload] = _build_payload(self._run_tiers(data))
        except (MemoryError, RecursionError) as exc:
            logger.error("decode_aborted", digest=key[:12], size=len(data), error=type(exc).__name__)
            result = None
        self.cache.store(key, result)
        return result

    def _run_tiers(self, data: bytes) -> Optional[TierOutcome]:
        structured: Optional[TierOutcome] = None
        try:
            outcome = primary_tier(data)
            if clean_text_with_positions(outcome.text).text:
                return outcome
            structured = outcome
        except DecodeFailure as exc:
            logger.debug("decode_tier_failed", tier=DecodeTier.PRIMARY.value, error=exc.message)

        if structured is not None:
            # The archive parsed and holds only placeholders: an attachment-only body.
            return structured

        try:
            return legacy_tier(data, self._converter)
        except PlistConversionError as exc:
            logger.debug("decode_tier_failed", tier=DecodeTier.LEGACY.value, error=exc.message)
        except DecodeFailure as exc:
            logger.debug("decode_tier_failed", tier=DecodeTier.LEGACY.value, error=exc.message)
            return None

        try:
            return raw_scan_tier(data)
        except DecodeFailure as exc:
            logger.debug("decode_tier_failed", tier=DecodeTier.RAW_SCAN.value, error=exc.message)
        return None

    async def decode_many(self, payloads: Sequence[Optional[bytes]]) -> List[Optional[DecodedPayload]]:
        """Decode payloads concurrently in worker threads.

        If the awaiting request is cancelled the worker threads still finish
        and populate the cache; only their results are dropped.
        """
        tasks = [asyncio.ensure_future(asyncio.to_thread(self.decode, payload)) for payload in payloads]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))


def build_decoder(settings: Any, cache: DecodeCache | None = None) -> RichTextDecoder:
    converter: PlistConverter = plistlib_converter
    if getattr(settings, "legacy_converter", "plistlib") == "plutil":
        converter = plutil_converter(settings.converter_timeout_seconds)
    return RichTextDecoder(cache=cache, converter=converter)


__all__ = [
    "DecodeCache",
    "DecodeTier",
    "RichTextDecoder",
    "TierOutcome",
    "build_decoder",
    "legacy_tier",
    "payload_digest",
    "plistlib_converter",
    "plutil_converter",
    "primary_tier",
    "raw_scan_tier",
]
