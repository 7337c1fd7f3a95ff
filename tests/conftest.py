"""Shared pytest fixtures for calendarfeed tests."""

from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from calendarfeed.event_cache import EventCache
from calendarfeed.subscription_store import SubscriptionStore

# Google Calendar public export: one timed event without DTEND carrying a
# VALARM, three all-day events, X-WR-TIMEZONE but no VTIMEZONE.
GOOGLE_CALENDAR_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "PRODID:-//Google Inc//Google Calendar 70.9054//EN",
        "VERSION:2.0",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "X-WR-CALNAME:user@gmail.com",
        "X-WR-TIMEZONE:Asia/Kolkata",
        "BEGIN:VEVENT",
        "DTSTART:20250525T160900Z",
        "DTSTAMP:20260208T201319Z",
        "UID:0nmi60tv2vvhndv3ppf0d70@google.com",
        "CREATED:20250525T073705Z",
        "LAST-MODIFIED:20250525T074440Z",
        "SEQUENCE:0",
        "STATUS:CONFIRMED",
        "SUMMARY:restart scripts due to server start",
        "TRANSP:OPAQUE",
        "BEGIN:VALARM",
        "ACTION:DISPLAY",
        "TRIGGER:-P0DT0H15M0S",
        "DESCRIPTION:This is an event reminder",
        "END:VALARM",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "DTSTART;VALUE=DATE:20260210",
        "DTEND;VALUE=DATE:20260211",
        "DTSTAMP:20260208T201319Z",
        "UID:2uu4a0k5rsjr76iol23c07mo3k@google.com",
        "CREATED:20260208T200948Z",
        "LAST-MODIFIED:20260208T200948Z",
        "SEQUENCE:0",
        "STATUS:CONFIRMED",
        "SUMMARY:test199",
        "TRANSP:TRANSPARENT",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "DTSTART;VALUE=DATE:20260210",
        "DTEND;VALUE=DATE:20260211",
        "DTSTAMP:20260208T201319Z",
        "UID:4glrbohm8ah9iu5mjm744iree3@google.com",
        "CREATED:20260208T201303Z",
        "LAST-MODIFIED:20260208T201304Z",
        "SEQUENCE:0",
        "STATUS:CONFIRMED",
        "SUMMARY:etst200",
        "TRANSP:TRANSPARENT",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "DTSTART;VALUE=DATE:20260211",
        "DTEND;VALUE=DATE:20260212",
        "DTSTAMP:20260208T201319Z",
        "UID:4hmhj3nkb52hffruq2pq5cr@google.com",
        "CREATED:20260208T195638Z",
        "LAST-MODIFIED:20260208T195716Z",
        "SEQUENCE:2",
        "STATUS:CONFIRMED",
        "SUMMARY:tset103",
        "TRANSP:TRANSPARENT",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
)

FIXED_NOW = datetime(2026, 2, 9, 12, 0, tzinfo=timezone.utc)


def build_ics(*vevents: str, header: str = "") -> str:
    """Wrap raw VEVENT bodies (LF separated) into a CRLF calendar document."""
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calendarfeed tests//EN"]
    if header:
        lines.extend(header.strip().splitlines())
    for body in vevents:
        lines.append("BEGIN:VEVENT")
        lines.extend(line.strip() for line in body.strip().splitlines())
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


@pytest.fixture(autouse=True)
def clean_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep environment overrides from leaking into tests."""
    for name in (
        "CALENDARFEED_TEST_TIME",
        "CALENDARFEED_DEBUG",
        "CALENDARFEED_LOG_LEVEL",
        "CALENDARFEED_MANAGED_ROOT",
        "CALENDARFEED_SUBSCRIPTIONS_FILE",
        "CALENDARFEED_DEFAULT_TIMEZONE",
        "CALENDARFEED_REQUEST_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def google_calendar_ics() -> str:
    return GOOGLE_CALENDAR_ICS


@pytest.fixture
def managed_root(tmp_path: Path) -> Path:
    """Empty managed root directory for local ICS files."""
    root = tmp_path / "calendars"
    root.mkdir()
    return root


@pytest.fixture
def store(managed_root: Path) -> SubscriptionStore:
    return SubscriptionStore(managed_root)


@pytest.fixture
def cache() -> EventCache:
    return EventCache()


@pytest.fixture
def test_settings(managed_root: Path) -> SimpleNamespace:
    """Config-like object accepted by ``from_config`` constructors."""
    return SimpleNamespace(
        managed_root=str(managed_root),
        request_timeout=5,
        max_retries=2,
        retry_backoff_factor=1.5,
        default_timezone=None,
        enable_rrule_expansion=True,
        rrule_expansion_days=365,
        rrule_lookback_days=30,
        max_occurrences_per_rule=250,
    )


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def make_ics():
    """Builder wrapping VEVENT bodies into a calendar document."""
    return build_ics


@pytest.fixture
def no_sleep():
    """Retry sleep replacement that returns immediately."""
    return _no_sleep


@pytest.fixture
def fixed_now() -> datetime:
    """Reference clock for recurrence windows."""
    return FIXED_NOW


def pytest_configure(config: Any) -> None:
    """Register markers used across the suite."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "fast: Quick tests suitable for every run")
    config.addinivalue_line("markers", "integration: Tests that wire several components together")
    config.addinivalue_line("filterwarnings", "ignore::DeprecationWarning:dateutil.*")
