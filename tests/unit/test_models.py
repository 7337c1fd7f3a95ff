"""Unit tests for calendarfeed.models validation rules."""

from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from calendarfeed.models import (
    AggregatedEvent,
    AggregationResult,
    CalendarEvent,
    ICSResponse,
    ProviderCalendarEvent,
    ProviderTag,
    SourceKind,
    SubscriptionConfig,
    SubscriptionPatch,
    is_remote_url,
)

pytestmark = [pytest.mark.unit, pytest.mark.fast]

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class TestCalendarEvent:
    def test_event_when_end_missing_then_end_equals_start(self) -> None:
        event = CalendarEvent(id="e1", subscription_id="s1", start=START)

        assert event.end == START
        assert event.all_day is False

    def test_event_when_start_is_date_then_all_day_inferred(self) -> None:
        event = CalendarEvent(id="e1", subscription_id="s1", start=date(2026, 3, 1), end=date(2026, 3, 2))

        assert event.all_day is True

    def test_event_when_end_before_start_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CalendarEvent(id="e1", subscription_id="s1", start=START, end=START - timedelta(hours=1))

    def test_event_when_all_day_with_datetime_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CalendarEvent(id="e1", subscription_id="s1", start=START, end=START, all_day=True)

    def test_event_when_timed_with_dates_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CalendarEvent(
                id="e1",
                subscription_id="s1",
                start=date(2026, 3, 1),
                end=date(2026, 3, 2),
                all_day=False,
            )

    def test_event_when_created_then_immutable(self) -> None:
        event = CalendarEvent(id="e1", subscription_id="s1", start=START)

        with pytest.raises(ValidationError):
            event.title = "changed"  # type: ignore[misc]

    def test_event_when_instance_of_series_then_flagged(self) -> None:
        event = CalendarEvent(id="e1::x", subscription_id="s1", start=START, recurrence_master_id="e1")

        assert event.is_recurring_instance is True


class TestSubscriptionConfig:
    def test_config_when_remote_https_then_accepted(self) -> None:
        config = SubscriptionConfig(
            name="Work", source_kind="remote", location="https://example.com/cal.ics", color="#AABBCC"
        )

        assert config.source_kind == SourceKind.REMOTE
        assert config.color == "#aabbcc"
        assert config.enabled is True

    @pytest.mark.parametrize(
        "location",
        ["ftp://example.com/cal.ics", "not a url", "https:///cal.ics", "file:///etc/passwd"],
    )
    def test_config_when_remote_location_not_http_url_then_rejected(self, location: str) -> None:
        with pytest.raises(ValidationError):
            SubscriptionConfig(name="Bad", source_kind="remote", location=location)

    def test_config_when_local_location_is_url_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionConfig(name="Bad", source_kind="local", location="https://example.com/cal.ics")

    def test_config_when_name_blank_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionConfig(name="   ", source_kind="local", location="cal.ics")

    def test_config_when_color_invalid_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionConfig(name="Bad", source_kind="local", location="cal.ics", color="red")

    def test_config_when_refresh_interval_negative_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionConfig(
                name="Bad", source_kind="local", location="cal.ics", refresh_interval_minutes=-1
            )

    def test_config_when_unknown_field_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionConfig(name="Bad", source_kind="local", location="cal.ics", password="x")

    def test_patch_when_unknown_field_then_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionPatch(id="new-id")


@pytest.mark.parametrize(
    ("location", "expected"),
    [
        ("https://calendar.google.com/calendar/ical/x/basic.ics", True),
        ("webcal://p01-calendars.icloud.com/published/2/abc", True),
        ("WEBCALS://example.com/cal", True),
        ("mailto:user@example.com", False),
        ("calendars/work.ics", False),
    ],
)
def test_is_remote_url_when_checked_then_expected(location: str, expected: bool) -> None:
    assert is_remote_url(location) is expected


def test_ics_response_when_304_then_not_modified() -> None:
    assert ICSResponse(status_code=304).is_not_modified is True
    assert ICSResponse(status_code=200, content="x").is_not_modified is False


def test_aggregation_result_when_dumped_then_provider_fields_kept() -> None:
    provider_event = ProviderCalendarEvent(
        id="g1", subscription_id="google-primary", title="Standup", start=START, calendar_id="primary"
    )
    result = AggregationResult(
        events=[AggregatedEvent(provider=ProviderTag.GOOGLE, event=provider_event)], total=1, sources={"google": 1}
    )

    dumped = result.model_dump(mode="json")

    assert dumped["events"][0]["provider"] == "google"
    assert dumped["events"][0]["event"]["calendar_id"] == "primary"
