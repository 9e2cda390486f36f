from datetime import datetime, timezone

import pytest

from chatvault.store.timestamps import (
    APPLE_EPOCH_UNIX_MS,
    ScaleCache,
    TimestampScale,
    datetime_to_ms,
    detect_scale,
    iso_utc,
    to_canonical_ms,
    to_raw_units,
)


@pytest.mark.parametrize(
    ("raw", "offset_ms"),
    [
        (0, 0),
        (1, 1000),
        (2500, 2500),
        (1_500_000, 1500),
        (2_000_000_000, 2000),
        (725_760_000_000_000_000, 725_760_000_000),
    ],
)
def test_to_canonical_ms_applies_band_and_epoch(raw, offset_ms):
    assert to_canonical_ms(raw) == APPLE_EPOCH_UNIX_MS + offset_ms


@pytest.mark.parametrize("raw", [None, float("nan"), float("inf"), "not a number", True])
def test_to_canonical_ms_returns_none_for_unusable_input(raw):
    assert to_canonical_ms(raw) is None


def test_to_canonical_ms_accepts_numeric_strings_and_floats():
    assert to_canonical_ms("2500") == APPLE_EPOCH_UNIX_MS + 2500
    assert to_canonical_ms(1.5) == APPLE_EPOCH_UNIX_MS + 1500


def test_epoch_renders_as_iso_utc():
    assert iso_utc(to_canonical_ms(0)) == "2001-01-01T00:00:00.000Z"
    assert iso_utc(None) is None


@pytest.mark.parametrize(
    "band",
    [
        (1_000, 999_999),
        (1_000_000, 999_999_999),
        (1_000_000_000, 999_999_999_999),
        (1_000_000_000_000, 999_999_999_999_999),
        (10**15, 10**18),
    ],
)
def test_to_canonical_ms_is_monotonic_within_band(band):
    low, high = band
    samples = [low, low + (high - low) // 3, low + 2 * (high - low) // 3, high]
    converted = [to_canonical_ms(value) for value in samples]
    assert converted == sorted(converted)


def test_ambiguous_band_is_read_as_nanoseconds():
    assert detect_scale(5_000_000_000) is TimestampScale.NANOSECONDS
    assert detect_scale(999_999) is TimestampScale.MILLISECONDS
    assert detect_scale(12) is TimestampScale.SECONDS


@pytest.mark.parametrize(
    ("raw", "scale"),
    [
        (725_760_000_123_000_000, TimestampScale.NANOSECONDS),
        (725_760_000_123_000, TimestampScale.MICROSECONDS),
        (3_600, TimestampScale.MILLISECONDS),
        (42, TimestampScale.SECONDS),
    ],
)
def test_raw_units_round_trip(raw, scale):
    assert detect_scale(raw) is scale
    assert to_raw_units(to_canonical_ms(raw), scale) == raw


def test_datetime_bounds_treat_naive_values_as_utc():
    aware = datetime(2024, 1, 1, tzinfo=timezone.utc)
    naive = datetime(2024, 1, 1)
    assert datetime_to_ms(aware) == datetime_to_ms(naive) == 1_704_067_200_000


async def test_scale_cache_samples_once_per_store(recording_fetcher, tmp_path):
    fetch = recording_fetcher({"scale_probe": [{"max_date": 725_760_000_000_000_000}]})
    cache = ScaleCache()
    store = str(tmp_path / "chat.db")

    assert await cache.scale(store, fetch) is TimestampScale.NANOSECONDS
    assert await cache.scale(store, fetch) is TimestampScale.NANOSECONDS
    assert fetch.labels == ["scale_probe"]

    cache.reset()
    await cache.scale(store, fetch)
    assert fetch.labels == ["scale_probe", "scale_probe"]


async def test_scale_cache_defaults_to_nanoseconds_for_empty_store(recording_fetcher, tmp_path):
    fetch = recording_fetcher({"scale_probe": [{"max_date": None}]})
    assert await ScaleCache().scale(str(tmp_path / "chat.db"), fetch) is TimestampScale.NANOSECONDS


async def test_scale_cache_uses_forward_banding(recording_fetcher, tmp_path):
    fetch = recording_fetcher({"scale_probe": [{"max_date": 2_500}]})
    assert await ScaleCache().scale(str(tmp_path / "chat.db"), fetch) is TimestampScale.MILLISECONDS
