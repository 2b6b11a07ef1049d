"""Tests for the time source helpers."""

from __future__ import annotations

import time

from account_guard.utils.clock import (
    MS_PER_DAY,
    MS_PER_HOUR,
    SystemClock,
    hour_of_day,
    iso_date,
    to_datetime,
)

# 2024-01-02T03:04:05Z
_TS = 1_704_164_645_000


class TestClockHelpers:
    def test_system_clock_is_epoch_ms(self) -> None:
        before = int(time.time() * 1000)
        now = SystemClock().now_ms()
        assert abs(now - before) < 5_000

    def test_to_datetime_is_utc(self) -> None:
        dt = to_datetime(_TS)
        assert dt.year == 2024
        assert dt.month == 1
        assert dt.day == 2
        assert dt.utcoffset() is not None
        assert dt.utcoffset().total_seconds() == 0

    def test_hour_of_day(self) -> None:
        assert hour_of_day(_TS) == 3
        assert hour_of_day(_TS + MS_PER_HOUR) == 4

    def test_iso_date(self) -> None:
        assert iso_date(_TS) == "2024-01-02"
        assert iso_date(_TS + MS_PER_DAY) == "2024-01-03"
