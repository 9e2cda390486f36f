"""Conversion between store-native timestamps and Unix epoch milliseconds.

The store counts from 2001-01-01T00:00:00Z and does not record the unit of
its ``date`` column. Older stores use seconds, newer ones nanoseconds, and
synthetic fixtures use anything in between, so the unit is inferred from the
magnitude of the value:

    >= 1e15        nanoseconds
    >= 1e12        microseconds
    >= 1e9         nanoseconds   (ambiguous band, fixed policy)
    >= 1e6         microseconds
    >= 1e3         milliseconds
    otherwise      seconds

Query bounds go the other way and use one scale per store, detected from the
largest stored value with the same banding.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from ..logging import get_logger
from .fetch import RowFetcher, StoreQuery

logger = get_logger("chatvault.store.timestamps")

APPLE_EPOCH_UNIX_SECONDS = 978_307_200
APPLE_EPOCH_UNIX_MS = APPLE_EPOCH_UNIX_SECONDS * 1000


class TimestampScale(Enum):
    SECONDS = 1
    MILLISECONDS = 1_000
    MICROSECONDS = 1_000_000
    NANOSECONDS = 1_000_000_000

    @property
    def per_second(self) -> int:
        return self.value


DEFAULT_SCALE = TimestampScale.NANOSECONDS


def detect_scale(value: float) -> TimestampScale:
    if value >= 1e15:
        return TimestampScale.NANOSECONDS
    if value >= 1e12:
        return TimestampScale.MICROSECONDS
    if value >= 1e9:
        return TimestampScale.NANOSECONDS
    if value >= 1e6:
        return TimestampScale.MICROSECONDS
    if value >= 1e3:
        return TimestampScale.MILLISECONDS
    return TimestampScale.SECONDS


def _coerce_number(raw: Any) -> Optional[float | int]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return int(value) if value.is_integer() else value


def _div_round(numerator: int, denominator: int) -> int:
    """Integer division rounding half away from zero."""
    quotient, remainder = divmod(abs(numerator), denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return quotient if numerator >= 0 else -quotient


def to_canonical_ms(raw: Any) -> Optional[int]:
    value = _coerce_number(raw)
    if value is None:
        return None
    scale = detect_scale(value)
    if isinstance(value, int):
        return APPLE_EPOCH_UNIX_MS + _div_round(value * 1000, scale.per_second)
    return APPLE_EPOCH_UNIX_MS + round(value * 1000 / scale.per_second)


def to_raw_units(ms: int, scale: TimestampScale) -> int:
    delta_ms = int(ms) - APPLE_EPOCH_UNIX_MS
    if scale.per_second >= 1000:
        return delta_ms * (scale.per_second // 1000)
    return _div_round(delta_ms * scale.per_second, 1000)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def iso_utc(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    ts = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_local(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    ts = datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone()
    return ts.isoformat(timespec="milliseconds")


def _store_key(store_path: str) -> str:
    return str(Path(store_path).expanduser().resolve())


class ScaleCache:
    """Detected timestamp scale per store, sampled once from MAX(date)."""

    def __init__(self) -> None:
        self._entries: Dict[str, TimestampScale] = {}

    async def scale(self, store_path: str, fetch: RowFetcher) -> TimestampScale:
        key = _store_key(store_path)
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        rows = await fetch(StoreQuery("SELECT MAX(date) AS max_date FROM message", (), "scale_probe"), store_path)
        sample = _coerce_number(rows[0].get("max_date")) if rows else None
        detected = detect_scale(sample) if sample else DEFAULT_SCALE
        self._entries.setdefault(key, detected)
        logger.info("timestamp_scale_detected", store_path=key, scale=detected.name, sample=sample)
        return self._entries[key]

    def reset(self, store_path: str | None = None) -> None:
        if store_path is None:
            self._entries.clear()
        else:
            self._entries.pop(_store_key(store_path), None)


__all__ = [
    "APPLE_EPOCH_UNIX_MS",
    "APPLE_EPOCH_UNIX_SECONDS",
    "DEFAULT_SCALE",
    "ScaleCache",
    "TimestampScale",
    "datetime_to_ms",
    "detect_scale",
    "iso_local",
    "iso_utc",
    "to_canonical_ms",
    "to_raw_units",
]
