"""Unit tests for calendarfeed.timezone_utils."""

from datetime import date, datetime, timedelta, timezone

import pytest

from calendarfeed.timezone_utils import (
    UTC,
    TimezoneResolver,
    ensure_timezone_aware,
    now_utc,
    to_instant,
    windows_tz_to_iana,
)

pytestmark = [pytest.mark.unit, pytest.mark.fast]


class TestTimezoneResolver:
    def test_resolve_when_iana_name_then_zone(self) -> None:
        tz = TimezoneResolver().resolve("Asia/Kolkata")

        assert tz is not None
        assert datetime(2026, 1, 1, tzinfo=tz).utcoffset() == timedelta(hours=5, minutes=30)

    def test_resolve_when_windows_name_then_mapped_to_iana(self) -> None:
        tz = TimezoneResolver().resolve("Pacific Standard Time")

        assert tz is not None
        assert datetime(2026, 1, 1, tzinfo=tz).utcoffset() == timedelta(hours=-8)

    @pytest.mark.parametrize("name", ["UTC", "Z", "gmt", "Etc/UTC"])
    def test_resolve_when_utc_alias_then_utc(self, name: str) -> None:
        assert TimezoneResolver().resolve(name) is UTC

    @pytest.mark.parametrize("name", [None, "", "   ", "Not/AZone"])
    def test_resolve_when_blank_or_unknown_then_none(self, name) -> None:
        assert TimezoneResolver().resolve(name) is None

    def test_windows_tz_to_iana_when_unknown_then_none(self) -> None:
        assert windows_tz_to_iana("Eastern Standard Time") == "America/New_York"
        assert windows_tz_to_iana("Atlantis Time") is None


class TestInstants:
    def test_to_instant_when_date_then_midnight_in_zone(self) -> None:
        tz = timezone(timedelta(hours=2))

        assert to_instant(date(2026, 3, 1), tz) == datetime(2026, 2, 28, 22, 0, tzinfo=UTC)

    def test_to_instant_when_naive_datetime_then_zone_attached(self) -> None:
        assert to_instant(datetime(2026, 3, 1, 9, 0)) == datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def test_ensure_timezone_aware_when_aware_then_unchanged(self) -> None:
        value = datetime(2026, 3, 1, 9, 0, tzinfo=timezone(timedelta(hours=-5)))

        assert ensure_timezone_aware(value) is value


class TestNowUtc:
    def test_now_utc_when_test_time_set_then_frozen(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CALENDARFEED_TEST_TIME", "2026-02-09T12:00:00+01:00")

        assert now_utc() == datetime(2026, 2, 9, 11, 0, tzinfo=UTC)

    def test_now_utc_when_test_time_invalid_then_real_clock(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CALENDARFEED_TEST_TIME", "yesterday-ish")

        assert now_utc().tzinfo is not None
        assert abs(now_utc() - datetime.now(UTC)) < timedelta(minutes=1)
