"""Provider registry adapter for OAuth-backed calendar services.

The engine owns no provider state: token handling and the provider APIs live
in the collaborator that implements these protocols. ``CalendarProviderRegistry``
is a small in-process container for such collaborators.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Optional, Protocol, runtime_checkable

from .models import EventDraft, ProviderCalendar, ProviderCalendarEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class CalendarProvider(Protocol):
    """Protocol for one connected calendar provider."""

    provider_id: str

    def is_connected(self) -> bool:
        """Return True while the provider holds usable credentials."""
        ...

    def list_events(self) -> Iterable[ProviderCalendarEvent]:
        """Return already-materialized, timezone-resolved events.

        Returns:
            Events whose ``subscription_id`` carries the provider source id
            (for example ``google-primary``)
        """
        ...

    def list_writable_calendars(self) -> Sequence[ProviderCalendar]:
        """Return calendars that accept new events."""
        ...

    async def create_event(self, calendar_id: str, draft: EventDraft) -> ProviderCalendarEvent:
        """Create an event in ``calendar_id``.

        Args:
            calendar_id: Provider calendar id
            draft: Event to create

        Returns:
            The event as stored by the provider
        """
        ...


class ProviderRegistry(Protocol):
    """Protocol for the collaborator that enumerates connected providers."""

    def list_connected_providers(self) -> Sequence[CalendarProvider]:
        """Return currently connected providers."""
        ...


class CalendarProviderRegistry:
    """In-process registry of calendar providers."""

    def __init__(self, providers: Optional[Iterable[CalendarProvider]] = None) -> None:
        self._providers: dict[str, CalendarProvider] = {}
        for provider in providers or ():
            self.register(provider)

    def register(self, provider: CalendarProvider) -> None:
        if provider.provider_id in self._providers:
            logger.debug("Replacing provider %s", provider.provider_id)
        self._providers[provider.provider_id] = provider

    def unregister(self, provider_id: str) -> bool:
        return self._providers.pop(provider_id, None) is not None

    def get(self, provider_id: str) -> Optional[CalendarProvider]:
        return self._providers.get(provider_id)

    def list_connected_providers(self) -> list[CalendarProvider]:
        connected = []
        for provider in self._providers.values():
            try:
                if provider.is_connected():
                    connected.append(provider)
            except Exception:
                logger.exception("Provider %s failed its connection check", provider.provider_id)
        return connected

    def get_all_events(self) -> list[ProviderCalendarEvent]:
        """Events from every connected provider; a failing provider is skipped."""
        return [event for _, events in iter_provider_events(self) for event in events]


def iter_provider_events(
    registry: Optional[ProviderRegistry],
) -> list[tuple[CalendarProvider, list[ProviderCalendarEvent]]]:
    """Snapshot events per connected provider, logging and skipping failures."""
    if registry is None:
        return []

    try:
        providers = list(registry.list_connected_providers())
    except Exception:
        logger.exception("Provider registry failed to list connected providers")
        return []

    snapshots: list[tuple[CalendarProvider, list[ProviderCalendarEvent]]] = []
    for provider in providers:
        try:
            events = list(provider.list_events())
        except Exception:
            logger.exception(
                "Provider %s failed to list events; skipping it",
                getattr(provider, "provider_id", "?"),
            )
            continue
        snapshots.append((provider, events))
    return snapshots
