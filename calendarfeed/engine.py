"""Calendar engine facade - the API the UI and HTTP layers talk to."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional

import httpx

from .aggregator import CachedICSEvents, collect_calendar_events
from .config_loader import Config
from .event_cache import EventCache
from .exceptions import ConfigurationError
from .fetch_scheduler import FetchScheduler
from .fetcher import SleepFunc, SourceFetcher
from .ics_parser import ICSParser, ParserSettings
from .models import (
    AggregationResult,
    CalendarEvent,
    EventDraft,
    EventTime,
    ProviderCalendar,
    ProviderCalendarEvent,
    Subscription,
    SubscriptionConfig,
    SubscriptionPatch,
    SyncState,
)
from .provider_registry import ProviderRegistry
from .subscription_store import SubscriptionStore
from .timezone_utils import resolve_timezone

logger = logging.getLogger(__name__)


class CalendarEngine:
    """Wires the subscription store, fetch scheduler, cache and aggregator together."""

    def __init__(
        self,
        config: Optional[Config] = None,
        provider_registry: Optional[ProviderRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        """Create an engine.

        Args:
            config: Application configuration (defaults when omitted)
            provider_registry: OAuth provider collaborator, if any
            transport: Optional httpx transport for remote fetches
            sleep: Optional retry sleep function
        """
        self.config = config or Config()
        self.provider_registry = provider_registry
        self.default_tz = resolve_timezone(self.config.default_timezone)

        self.store = SubscriptionStore(self.config.managed_root, self.config.subscriptions_file)
        self.cache = EventCache()
        self.parser = ICSParser(ParserSettings.from_config(self.config))
        self.fetcher = SourceFetcher.from_config(self.config, transport=transport, sleep=sleep)
        self.scheduler = FetchScheduler(self.store, self.cache, self.fetcher, self.parser)
        self._ics_events = CachedICSEvents(self.store, self.cache)

        self._seed_subscriptions()

    def _seed_subscriptions(self) -> None:
        for entry in self.config.subscriptions:
            subscription_id = entry.get("id")
            if subscription_id and subscription_id in self.store:
                continue
            try:
                self.store.add(entry, subscription_id=subscription_id)
            except ConfigurationError as e:
                logger.warning("Ignoring configured subscription %r: %s", entry.get("name"), e)

    # Lifecycle

    async def start(self, initial_fetch: bool = True) -> None:
        await self.scheduler.start(initial_fetch=initial_fetch)

    async def close(self) -> None:
        """Shut down fetching and drop cached events."""
        await self.scheduler.stop()
        await self.fetcher.aclose()
        self.cache.clear()

    async def __aenter__(self) -> CalendarEngine:
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()

    # Subscriptions

    def list_subscriptions(self) -> list[Subscription]:
        return self.store.list()

    def add_subscription(self, config: SubscriptionConfig | Mapping[str, Any]) -> Subscription:
        return self.store.add(config)

    def update_subscription(
        self, subscription_id: str, patch: SubscriptionPatch | Mapping[str, Any]
    ) -> Subscription:
        return self.store.update(subscription_id, patch)

    def remove_subscription(self, subscription_id: str) -> Subscription:
        return self.store.remove(subscription_id)

    def get_last_fetched(self, subscription_id: str) -> Optional[datetime]:
        return self.store.get_last_fetched(subscription_id)

    def get_last_error(self, subscription_id: str) -> Optional[str]:
        return self.store.get_last_error(subscription_id)

    def get_sync_state(self, subscription_id: str) -> SyncState:
        return self.store.get_sync_state(subscription_id)

    # Fetching

    async def fetch_now(self, subscription_id: str) -> bool:
        """Manual refresh of one subscription; errors land in ``get_last_error``."""
        return await self.scheduler.fetch_now(subscription_id)

    async def fetch_all(self) -> dict[str, bool]:
        return await self.scheduler.fetch_all()

    # Read path

    def collect(self, start: Optional[EventTime] = None, end: Optional[EventTime] = None) -> AggregationResult:
        """Aggregate provider and cached ICS events, optionally limited to a range."""
        return collect_calendar_events(
            self.provider_registry,
            self._ics_events,
            start=start,
            end=end,
            tz=self.default_tz,
        )

    def get_all_events(self) -> list[CalendarEvent]:
        """Cached events of every enabled subscription, unsorted."""
        return self._ics_events.get_all_events()

    # Provider write-back (delegation only)

    def list_writable_calendars(self) -> list[ProviderCalendar]:
        if self.provider_registry is None:
            return []
        calendars: list[ProviderCalendar] = []
        for provider in self.provider_registry.list_connected_providers():
            try:
                calendars.extend(provider.list_writable_calendars())
            except Exception:
                logger.exception("Provider %s failed to list writable calendars", provider.provider_id)
        return calendars

    async def create_provider_event(
        self, provider_id: str, calendar_id: str, draft: EventDraft
    ) -> ProviderCalendarEvent:
        """Create an event through a connected provider.

        Raises:
            KeyError: If no connected provider has ``provider_id``
        """
        if self.provider_registry is not None:
            for provider in self.provider_registry.list_connected_providers():
                if provider.provider_id == provider_id:
                    return await provider.create_event(calendar_id, draft)
        raise KeyError(f"Provider not connected: {provider_id}")
