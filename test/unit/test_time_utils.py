"""Unit tests for UTC normalization helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from time_utils import ensure_utc, optional_utc, utc_now


def test_utc_now_is_aware() -> None:
    """utc_now returns an aware UTC datetime."""
    assert utc_now().tzinfo == timezone.utc


def test_ensure_utc_treats_naive_values_as_utc() -> None:
    """Naive values read back from SQLite are tagged as UTC."""
    naive = datetime(2025, 3, 12, 9, 0)

    converted = ensure_utc(naive)

    assert converted == datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)


def test_ensure_utc_converts_other_offsets() -> None:
    """Aware values in other zones are converted to UTC."""
    eastern = datetime(2025, 3, 12, 5, 0, tzinfo=timezone(timedelta(hours=-4)))

    converted = ensure_utc(eastern)

    assert converted.tzinfo == timezone.utc
    assert converted.hour == 9


def test_optional_utc_passes_none_through() -> None:
    """optional_utc leaves missing values missing."""
    assert optional_utc(None) is None
    assert optional_utc(datetime(2025, 1, 1)).tzinfo == timezone.utc
