"""Event aggregation across providers and ICS subscriptions.

``collect_calendar_events`` performs no I/O: it reads a snapshot of provider
events and cached ICS events, range-filters, sorts and tallies them.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, tzinfo
from typing import Optional, Protocol

from .event_cache import EventCache
from .models import AggregatedEvent, AggregationResult, CalendarEvent, EventTime, ProviderTag
from .provider_registry import ProviderRegistry, iter_provider_events
from .subscription_store import SubscriptionStore
from .timezone_utils import to_instant

logger = logging.getLogger(__name__)

_PROVIDER_PREFIXES = (
    ("google-", ProviderTag.GOOGLE),
    ("microsoft-", ProviderTag.MICROSOFT),
)


class ICSEventSource(Protocol):
    """Anything that can hand over the currently cached ICS events."""

    def get_all_events(self) -> Iterable[CalendarEvent]:
        ...


class CachedICSEvents:
    """Cached events of every enabled subscription, in subscription order."""

    def __init__(self, store: SubscriptionStore, cache: EventCache):
        self.store = store
        self.cache = cache

    def get_all_events(self) -> list[CalendarEvent]:
        snapshot = self.cache.snapshot()
        events: list[CalendarEvent] = []
        for subscription in self.store.list_enabled():
            events.extend(snapshot.get(subscription.id, ()))
        return events


def provider_from_source_id(source_id: Optional[str]) -> ProviderTag:
    """Map a provider event's source id onto its normalized provider tag."""
    if not source_id:
        return ProviderTag.UNKNOWN
    for prefix, tag in _PROVIDER_PREFIXES:
        if source_id.startswith(prefix):
            return tag
    return ProviderTag.UNKNOWN


def is_event_in_range(
    event: CalendarEvent,
    start: Optional[EventTime] = None,
    end: Optional[EventTime] = None,
    tz: Optional[tzinfo] = None,
) -> bool:
    """Check whether an event's [start, end] interval touches the requested range.

    Either bound may be omitted. Touching a bound counts as intersecting.
    Calendar dates (all-day events, date bounds) are taken as midnight in
    ``tz``, UTC when omitted; naive datetimes are taken in ``tz`` as well.
    """
    event_start = to_instant(event.start, tz)
    event_end = to_instant(event.end if event.end is not None else event.start, tz)

    if start is not None and event_end < to_instant(start, tz):
        return False
    if end is not None and event_start > to_instant(end, tz):
        return False
    return True


def _sort_key(tz: Optional[tzinfo]):  # type: ignore[no-untyped-def]
    def key(item: AggregatedEvent) -> datetime:
        return to_instant(item.event.start, tz)

    return key


def collect_calendar_events(
    provider_registry: Optional[ProviderRegistry],
    ics_source: Optional[ICSEventSource],
    start: Optional[EventTime] = None,
    end: Optional[EventTime] = None,
    tz: Optional[tzinfo] = None,
) -> AggregationResult:
    """Combine provider and ICS events into one ordered, source-tagged result.

    Args:
        provider_registry: Connected providers (None for none)
        ics_source: Cached ICS events (None for none)
        start: Optional inclusive range start
        end: Optional inclusive range end
        tz: Zone for interpreting calendar dates and naive bounds

    Returns:
        Events sorted by start (stable), with per-tag counts in ``sources``
    """
    tagged: list[AggregatedEvent] = []

    for provider, events in iter_provider_events(provider_registry):
        for event in events:
            tag = provider_from_source_id(event.subscription_id)
            tagged.append(AggregatedEvent(provider=tag, event=event))
        logger.debug("Collected %d events from provider %s", len(events), provider.provider_id)

    if ics_source is not None:
        for event in ics_source.get_all_events():
            tagged.append(AggregatedEvent(provider=ProviderTag.ICS, event=event))

    if start is not None or end is not None:
        tagged = [item for item in tagged if is_event_in_range(item.event, start, end, tz)]

    # sorted() is stable, so equal starts keep provider-then-ICS input order
    ordered = sorted(tagged, key=_sort_key(tz))

    sources: dict[str, int] = {}
    for item in ordered:
        sources[item.provider.value] = sources.get(item.provider.value, 0) + 1

    return AggregationResult(events=ordered, total=len(ordered), sources=sources)
