"""Unit tests for calendarfeed.aggregator and the provider registry."""

from datetime import date, datetime, timedelta, timezone

import pytest

from calendarfeed.aggregator import (
    CachedICSEvents,
    collect_calendar_events,
    is_event_in_range,
    provider_from_source_id,
)
from calendarfeed.event_cache import EventCache
from calendarfeed.models import CalendarEvent, ProviderCalendarEvent, ProviderTag
from calendarfeed.provider_registry import CalendarProvider, CalendarProviderRegistry
from calendarfeed.subscription_store import SubscriptionStore

pytestmark = [pytest.mark.unit, pytest.mark.fast]

UTC = timezone.utc


def _at(day: int, hour: int = 9) -> datetime:
    return datetime(2026, 3, day, hour, 0, tzinfo=UTC)


def _ics_event(event_id: str, start, end=None, source: str = "sub-1") -> CalendarEvent:
    return CalendarEvent(id=event_id, subscription_id=source, title=event_id, start=start, end=end)


class FakeProvider:
    def __init__(self, provider_id: str, events, connected: bool = True, fail: bool = False):
        self.provider_id = provider_id
        self._events = events
        self._connected = connected
        self._fail = fail

    def is_connected(self) -> bool:
        return self._connected

    def list_events(self):
        if self._fail:
            raise RuntimeError("token expired")
        return self._events

    def list_writable_calendars(self):
        return []

    async def create_event(self, calendar_id, draft):
        raise NotImplementedError


class StaticICS:
    def __init__(self, events):
        self.events = events

    def get_all_events(self):
        return list(self.events)


class TestCollectCalendarEvents:
    def test_collect_when_no_bounds_then_everything_sorted_by_start(self) -> None:
        google = ProviderCalendarEvent(id="g1", subscription_id="google-primary", start=_at(3))
        ics = StaticICS([_ics_event("i1", _at(1)), _ics_event("i2", _at(2))])
        registry = CalendarProviderRegistry([FakeProvider("google", [google])])

        result = collect_calendar_events(registry, ics)

        assert [item.event.id for item in result.events] == ["i1", "i2", "g1"]
        assert result.total == 3
        assert result.sources == {"ics": 2, "google": 1}

    def test_collect_when_provider_prefixes_then_tagged(self) -> None:
        events = [
            ProviderCalendarEvent(id="g", subscription_id="google-work", start=_at(1)),
            ProviderCalendarEvent(id="m", subscription_id="microsoft-outlook", start=_at(2)),
            ProviderCalendarEvent(id="x", subscription_id="caldav-home", start=_at(3)),
        ]
        registry = CalendarProviderRegistry([FakeProvider("mixed", events)])

        result = collect_calendar_events(registry, None)

        assert [item.provider for item in result.events] == [
            ProviderTag.GOOGLE,
            ProviderTag.MICROSOFT,
            ProviderTag.UNKNOWN,
        ]
        assert sum(result.sources.values()) == result.total

    def test_collect_when_equal_starts_then_provider_events_first_and_input_order_kept(self) -> None:
        provider_events = [
            ProviderCalendarEvent(id="g1", subscription_id="google-a", start=_at(1)),
            ProviderCalendarEvent(id="g2", subscription_id="google-a", start=_at(1)),
        ]
        ics = StaticICS([_ics_event("i1", _at(1)), _ics_event("i2", _at(1))])
        registry = CalendarProviderRegistry([FakeProvider("google", provider_events)])

        result = collect_calendar_events(registry, ics)

        assert [item.event.id for item in result.events] == ["g1", "g2", "i1", "i2"]

    def test_collect_when_range_given_then_touching_events_included(self) -> None:
        start, end = _at(10), _at(11)
        ics = StaticICS(
            [
                _ics_event("ends-at-start", _at(9), start),
                _ics_event("starts-at-end", end, end + timedelta(hours=1)),
                _ics_event("before", _at(8), _at(8, 10)),
                _ics_event("after", _at(12), _at(12, 10)),
                _ics_event("spanning", _at(8, 12), _at(12)),
            ]
        )

        result = collect_calendar_events(None, ics, start=start, end=end)

        assert [item.event.id for item in result.events] == ["spanning", "ends-at-start", "starts-at-end"]

    def test_collect_when_only_start_bound_then_open_ended(self) -> None:
        ics = StaticICS([_ics_event("old", _at(1)), _ics_event("new", _at(20))])

        result = collect_calendar_events(None, ics, start=_at(10))

        assert [item.event.id for item in result.events] == ["new"]

    def test_collect_when_all_day_and_date_bounds_then_compared_in_zone(self) -> None:
        tz = timezone(timedelta(hours=-5))
        ics = StaticICS([_ics_event("holiday", date(2026, 3, 5), date(2026, 3, 6))])

        inside = collect_calendar_events(None, ics, start=date(2026, 3, 6), end=date(2026, 3, 7), tz=tz)
        outside = collect_calendar_events(None, ics, start=date(2026, 3, 7), end=date(2026, 3, 8), tz=tz)

        assert inside.total == 1
        assert outside.total == 0

    def test_collect_when_provider_fails_then_skipped(self) -> None:
        good = ProviderCalendarEvent(id="m1", subscription_id="microsoft-cal", start=_at(1))
        registry = CalendarProviderRegistry(
            [
                FakeProvider("google", [], fail=True),
                FakeProvider("microsoft", [good]),
            ]
        )

        result = collect_calendar_events(registry, StaticICS([]))

        assert [item.event.id for item in result.events] == ["m1"]
        assert result.sources == {"microsoft": 1}

    def test_collect_when_nothing_connected_then_empty_result(self) -> None:
        registry = CalendarProviderRegistry([FakeProvider("google", [], connected=False)])

        result = collect_calendar_events(registry, None)

        assert result.events == []
        assert result.total == 0
        assert result.sources == {}


class TestCachedICSEvents:
    def test_get_all_events_when_subscription_disabled_then_hidden(
        self, store: SubscriptionStore, cache: EventCache
    ) -> None:
        enabled = store.add({"name": "A", "source_kind": "local", "location": "a.ics"})
        disabled = store.add({"name": "B", "source_kind": "local", "location": "b.ics", "enabled": False})
        cache.replace(enabled.id, [_ics_event("a1", _at(1), source=enabled.id)])
        cache.replace(disabled.id, [_ics_event("b1", _at(1), source=disabled.id)])

        events = CachedICSEvents(store, cache).get_all_events()

        assert [e.id for e in events] == ["a1"]


def test_is_event_in_range_when_no_bounds_then_true() -> None:
    assert is_event_in_range(_ics_event("e", _at(1))) is True


@pytest.mark.parametrize(
    ("source_id", "expected"),
    [
        ("google-primary", ProviderTag.GOOGLE),
        ("microsoft-work", ProviderTag.MICROSOFT),
        ("ics_abc", ProviderTag.UNKNOWN),
        (None, ProviderTag.UNKNOWN),
    ],
)
def test_provider_from_source_id_when_prefixed_then_tag(source_id, expected) -> None:
    assert provider_from_source_id(source_id) == expected


class TestCalendarProviderRegistry:
    def test_fake_provider_when_checked_then_satisfies_protocol(self) -> None:
        assert isinstance(FakeProvider("google", []), CalendarProvider)

    def test_list_connected_when_some_disconnected_then_filtered(self) -> None:
        registry = CalendarProviderRegistry(
            [FakeProvider("google", []), FakeProvider("microsoft", [], connected=False)]
        )

        assert [p.provider_id for p in registry.list_connected_providers()] == ["google"]

    def test_unregister_when_present_then_removed(self) -> None:
        registry = CalendarProviderRegistry([FakeProvider("google", [])])

        assert registry.unregister("google") is True
        assert registry.get("google") is None
        assert registry.unregister("google") is False

    def test_get_all_events_when_one_fails_then_others_returned(self) -> None:
        event = ProviderCalendarEvent(id="g1", subscription_id="google-a", start=_at(1))
        registry = CalendarProviderRegistry(
            [FakeProvider("google", [event]), FakeProvider("microsoft", [], fail=True)]
        )

        assert registry.get_all_events() == [event]
