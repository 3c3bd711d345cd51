"""Tests for shared utilities."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta, timezone

import pytest

from omnidesk.utils import (
    backoff_delay,
    compute_next_fire,
    create_background_task,
    iso_after,
    parse_iso,
    to_iso,
)


class TestIsoHelpers:
    def test_to_iso_is_fixed_width_utc(self):
        plus_two = timezone(timedelta(hours=2))
        assert to_iso(datetime(2024, 1, 1, 14, 0, tzinfo=plus_two)) == (
            "2024-01-01T12:00:00.000000+00:00"
        )
        assert to_iso(datetime(2024, 1, 1, 12, 0)) == "2024-01-01T12:00:00.000000+00:00"

    def test_parse_iso_roundtrip(self):
        dt = datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=UTC)
        assert parse_iso(to_iso(dt)) == dt

    def test_parse_naive_assumed_utc(self):
        assert parse_iso("2024-01-01T00:00:00") == datetime(2024, 1, 1, tzinfo=UTC)

    def test_iso_after(self):
        now = datetime(2024, 1, 1, tzinfo=UTC)
        assert iso_after(90, now=now) == "2024-01-01T00:01:30.000000+00:00"


class TestComputeNextFire:
    def test_daily_in_timezone(self):
        after = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)
        # 09:00 in Berlin (UTC+1 in winter) is 08:00 UTC
        assert compute_next_fire("0 9 * * *", "Europe/Berlin", after=after) == (
            "2024-01-01T08:00:00.000000+00:00"
        )

    def test_invalid_expression(self):
        with pytest.raises(ValueError):
            compute_next_fire("whenever", "UTC")


class TestBackoffDelay:
    def test_doubles_and_caps(self):
        assert backoff_delay(0, 1.0, 60) == 0
        assert [backoff_delay(n, 1.0, 5.0) for n in range(1, 6)] == [1, 2, 4, 5, 5]


class TestCreateBackgroundTask:
    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self):
        async def boom():
            raise RuntimeError("boom")

        task = create_background_task(boom(), name="boom")
        await asyncio.wait([task])

        assert isinstance(task.exception(), RuntimeError)
        assert task.get_name() == "boom"
