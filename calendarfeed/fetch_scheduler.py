"""Fetch scheduling for ICS subscriptions.

Each subscription is fetched by its own task, so a slow or broken source never
delays another one. A failed attempt records ``last_error`` and leaves the
cached events untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .event_cache import EventCache
from .exceptions import CalendarFeedError, FormatError, SubscriptionNotFoundError
from .fetcher import SourceFetcher
from .ics_parser import ICSParser
from .models import ICSResponse, Subscription
from .subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def _relocated(old: Subscription, new: Subscription) -> bool:
    return old.location != new.location or old.source_kind != new.source_kind


class FetchScheduler:
    """Runs on-demand and periodic fetches and writes results into the cache."""

    def __init__(
        self,
        store: SubscriptionStore,
        cache: EventCache,
        fetcher: SourceFetcher,
        parser: Optional[ICSParser] = None,
    ):
        """Initialize the scheduler and start observing the store.

        Args:
            store: Subscription configuration owner
            cache: Cache the parsed events are written into
            fetcher: Remote/local byte acquisition
            parser: ICS parser (default settings when omitted)
        """
        self.store = store
        self.cache = cache
        self.fetcher = fetcher
        self.parser = parser or ICSParser()

        self._generations: dict[str, int] = {}
        self._known: dict[str, Subscription] = {s.id: s for s in store.list()}
        self._inflight: dict[str, asyncio.Task[bool]] = {}
        self._periodic: dict[str, asyncio.Task[None]] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        store.add_listener(self._on_store_change)

    @property
    def is_running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    # On-demand fetching

    async def fetch_now(self, subscription_id: str) -> bool:
        """Fetch, parse and cache one subscription.

        A second call while a fetch for the same id is in flight awaits that
        fetch instead of starting another one.

        Returns:
            True when the cache was replaced or confirmed current (304)

        Raises:
            SubscriptionNotFoundError: Unknown id
        """
        subscription = self.store.get(subscription_id)
        if not subscription.enabled:
            logger.debug("Subscription %s is disabled; fetch skipped", subscription_id)
            return False

        existing = self._inflight.get(subscription_id)
        if existing is not None and not existing.done():
            logger.debug("Fetch already in flight for %s; joining it", subscription_id)
            return await asyncio.shield(existing)

        generation = self._generations.get(subscription_id, 0)
        task = asyncio.create_task(
            self._run_fetch(subscription, generation), name=f"calendarfeed-fetch-{subscription_id}"
        )
        self._inflight[subscription_id] = task

        def _clear(done: asyncio.Task[bool]) -> None:
            if self._inflight.get(subscription_id) is done:
                del self._inflight[subscription_id]

        task.add_done_callback(_clear)
        return await asyncio.shield(task)

    async def fetch_all(self) -> dict[str, bool]:
        """Fetch every enabled subscription concurrently."""
        subscriptions = self.store.list_enabled()
        if not subscriptions:
            logger.debug("No enabled subscriptions to fetch")
            return {}

        results = await asyncio.gather(
            *(self.fetch_now(s.id) for s in subscriptions), return_exceptions=True
        )

        outcome: dict[str, bool] = {}
        for subscription, result in zip(subscriptions, results):
            if isinstance(result, BaseException):
                logger.warning("Fetch for %s did not complete: %s", subscription.id, result)
                outcome[subscription.id] = False
            else:
                outcome[subscription.id] = result
        return outcome

    async def _run_fetch(self, subscription: Subscription, generation: int) -> bool:
        subscription_id = subscription.id
        try:
            state = self.store.get_sync_state(subscription_id)
        except SubscriptionNotFoundError:
            return False

        try:
            response = await self.fetcher.fetch(subscription, state)
            if response.is_not_modified and not self.cache.has(subscription_id):
                # Validators without a cached body are useless; ask for the full payload
                response = await self.fetcher.fetch(subscription, None)
        except CalendarFeedError as e:
            return self._apply_failure(subscription_id, generation, str(e))
        except Exception as e:
            logger.exception("Unexpected error fetching subscription %s", subscription_id)
            return self._apply_failure(subscription_id, generation, f"Unexpected error: {e}")

        if not self._is_current(subscription_id, generation):
            return False

        if response.is_not_modified:
            self.store.record_success(
                subscription_id,
                skipped_events=state.skipped_events,
                etag=response.etag,
                last_modified=response.last_modified,
            )
            logger.debug("Subscription %s not modified; cache kept", subscription_id)
            return True

        return self._apply_payload(subscription, generation, response)

    def _apply_payload(self, subscription: Subscription, generation: int, response: ICSResponse) -> bool:
        subscription_id = subscription.id
        try:
            result = self.parser.parse_content(response.content or "", subscription_id, color=subscription.color)
            if not result.success:
                raise FormatError(result.error_message or "Unparseable ICS payload")
        except FormatError as e:
            return self._apply_failure(subscription_id, generation, str(e))

        count = self.cache.replace(subscription_id, result.events)
        self.store.record_success(
            subscription_id,
            event_count=count,
            skipped_events=result.skipped_count,
            etag=response.etag,
            last_modified=response.last_modified,
        )
        logger.info("Fetched subscription %s: %d events", subscription_id, count)
        return True

    def _apply_failure(self, subscription_id: str, generation: int, message: str) -> bool:
        if not self._is_current(subscription_id, generation):
            return False
        logger.warning("Fetch failed for subscription %s: %s", subscription_id, message)
        self.store.record_failure(subscription_id, message)
        return False

    def _is_current(self, subscription_id: str, generation: int) -> bool:
        subscription = self.store.find(subscription_id)
        if (
            subscription is None
            or not subscription.enabled
            or self._generations.get(subscription_id, 0) != generation
        ):
            logger.info("Discarding stale fetch result for subscription %s", subscription_id)
            return False
        return True

    # Periodic refresh

    async def start(self, initial_fetch: bool = True) -> None:
        """Optionally fetch everything once, then start one refresh task per subscription."""
        if self.is_running:
            return

        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        if initial_fetch:
            outcome = await self.fetch_all()
            logger.info(
                "Initial fetch complete: %d/%d subscriptions succeeded",
                sum(outcome.values()),
                len(outcome),
            )

        for subscription in self.store.list_enabled():
            self._schedule(subscription)
        logger.debug("Scheduler started with %d periodic tasks", len(self._periodic))

    async def stop(self) -> None:
        """Cancel periodic and in-flight tasks and wait for them to finish."""
        if self._stop_event is not None:
            self._stop_event.set()

        tasks = list(self._periodic.values()) + list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._periodic.clear()
        self._inflight.clear()
        self._stop_event = None
        logger.debug("Scheduler stopped")

    def _schedule(self, subscription: Subscription) -> None:
        self._cancel_periodic(subscription.id)
        if not self.is_running or not subscription.enabled:
            return
        if subscription.refresh_interval_minutes <= 0:
            logger.debug("Periodic refresh disabled for %s", subscription.id)
            return

        self._periodic[subscription.id] = asyncio.create_task(
            self._refresh_loop(subscription.id, subscription.refresh_interval_minutes * 60),
            name=f"calendarfeed-refresh-{subscription.id}",
        )

    def _cancel_periodic(self, subscription_id: str) -> None:
        task = self._periodic.pop(subscription_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _refresh_loop(self, subscription_id: str, interval_seconds: float) -> None:
        stop_event = self._stop_event
        if stop_event is None:
            return

        logger.debug("Refresh loop for %s every %.0f seconds", subscription_id, interval_seconds)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.fetch_now(subscription_id)
            except SubscriptionNotFoundError:
                logger.debug("Subscription %s gone; refresh loop ends", subscription_id)
                break
            except Exception:
                logger.exception("Refresh loop unexpected error for %s", subscription_id)

    # Store observation

    def _on_store_change(self, action: str, subscription: Subscription) -> None:
        subscription_id = subscription.id
        previous = self._known.get(subscription_id)

        if action == "removed":
            self._known.pop(subscription_id, None)
            self._bump(subscription_id)
            self.cache.drop(subscription_id)
            self._call_in_loop(self._cancel_periodic, subscription_id)
            return

        self._known[subscription_id] = subscription
        if action == "updated" and previous is not None:
            if _relocated(previous, subscription):
                self._bump(subscription_id)
                self.cache.drop(subscription_id)
            elif previous.enabled and not subscription.enabled:
                self._bump(subscription_id)

            if (
                previous.enabled == subscription.enabled
                and previous.refresh_interval_minutes == subscription.refresh_interval_minutes
            ):
                return

        self._call_in_loop(self._schedule, subscription)

    def _bump(self, subscription_id: str) -> None:
        self._generations[subscription_id] = self._generations.get(subscription_id, 0) + 1

    def _call_in_loop(self, func, *args) -> None:  # type: ignore[no-untyped-def]
        if not self.is_running or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            func(*args)
        else:
            self._loop.call_soon_threadsafe(func, *args)
