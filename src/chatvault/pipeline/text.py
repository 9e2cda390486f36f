from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional, Tuple

REPLACEMENT_CHARS = frozenset("\ufffc\ufffd")
LINE_SEPARATORS = frozenset("\u2028\u2029")
KEPT_CONTROLS = frozenset("\t\n\r")
HORIZONTAL_SPACE = frozenset(" \t")

_PRINTABLE_RUN = re.compile(rb"[\x20-\x7e\t\n\r]+")
_PREFIX_ARTIFACTS = re.compile(r"^[+=\s]+")
# Tokens that are archive bookkeeping rather than message text.
ARCHIVE_VOCABULARY = re.compile(
    r"^(?:streamtyped|typedstream|bplist\d*|\$\w+|NS[A-Z]\w*|__kIM\w+|at_\d+_[0-9A-Fa-f-]{36}|[0-9A-Fa-f-]{36})$"
)


@dataclass(frozen=True)
class CleanedText:
    """Cleaned text plus the position of every source index in it."""

    text: Optional[str]
    positions: Tuple[int, ...]

    def remap(self, offset: int, length: int) -> Tuple[int, int]:
        limit = len(self.text) if self.text else 0
        last = len(self.positions) - 1
        start = self.positions[max(0, min(offset, last))]
        end = self.positions[max(0, min(offset + length, last))]
        start = max(0, min(start, limit))
        end = max(start, min(end, limit))
        return start, end - start


def clean_text_with_positions(raw: Optional[str]) -> CleanedText:
    if raw is None:
        return CleanedText(None, (0,))

    out: List[str] = []
    positions: List[int] = []
    for ch in raw:
        positions.append(len(out))
        if ch in LINE_SEPARATORS:
            ch = "\n"
        if ch in REPLACEMENT_CHARS:
            continue
        if unicodedata.category(ch) == "Cc" and ch not in KEPT_CONTROLS:
            continue
        if ch in HORIZONTAL_SPACE:
            if out and out[-1] == " ":
                continue
            ch = " "
        out.append(ch)
    positions.append(len(out))

    joined = "".join(out)
    stripped = joined.strip()
    if not stripped:
        return CleanedText(None, tuple(0 for _ in positions))

    lead = len(joined) - len(joined.lstrip())
    normalized = unicodedata.normalize("NFC", stripped)
    limit = len(normalized)
    shifted = tuple(max(0, min(pos - lead, limit)) for pos in positions)
    return CleanedText(normalized, shifted)


def normalize_message_text(raw: Optional[str]) -> Optional[str]:
    """Trim, NFC-normalize and strip control/replacement glyphs.

    Returns ``None`` when nothing readable is left.
    """
    return clean_text_with_positions(raw).text


def has_letter_or_digit(value: str) -> bool:
    return any(ch.isalnum() for ch in value)


def is_archive_token(value: str) -> bool:
    return bool(ARCHIVE_VOCABULARY.match(value.strip()))


def extract_longest_printable(data: bytes) -> Optional[str]:
    """Longest run of printable ASCII (plus common whitespace) in ``data``."""
    best = ""
    for match in _PRINTABLE_RUN.finditer(data):
        candidate = match.group().decode("ascii")
        candidate = re.sub(r"[\t\n\r]", " ", candidate).strip()
        candidate = _PREFIX_ARTIFACTS.sub("", candidate).strip()
        if not candidate or is_archive_token(candidate):
            continue
        if len(candidate) > len(best):
            best = candidate
    return best or None


def truncate_for_log(value: Optional[str], limit: int = 120) -> Optional[str]:
    normalized = normalize_message_text(value)
    if not normalized:
        return None
    normalized = " ".join(normalized.split())
    if len(normalized) <= limit:
        return normalized
    return normalized[: max(0, limit - 1)] + "\u2026"


__all__ = [
    "CleanedText",
    "clean_text_with_positions",
    "extract_longest_printable",
    "has_letter_or_digit",
    "is_archive_token",
    "normalize_message_text",
    "truncate_for_log",
]
