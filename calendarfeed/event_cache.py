"""Per-subscription cache of the last successfully parsed event list."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from .models import CalendarEvent

logger = logging.getLogger(__name__)


class EventCache:
    """Holds one immutable event tuple per subscription.

    A slot is replaced as a whole, so readers see either the previous list or
    the new one, never a partial write.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[str, tuple[CalendarEvent, ...]] = {}

    def replace(self, subscription_id: str, events: Iterable[CalendarEvent]) -> int:
        """Swap in a new event list for ``subscription_id``; returns its size."""
        frozen = tuple(events)
        with self._lock:
            self._slots[subscription_id] = frozen
        logger.debug("Cached %d events for subscription %s", len(frozen), subscription_id)
        return len(frozen)

    def get(self, subscription_id: str) -> tuple[CalendarEvent, ...]:
        with self._lock:
            return self._slots.get(subscription_id, ())

    def has(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._slots

    def drop(self, subscription_id: str) -> bool:
        """Remove a slot; returns True when something was cached."""
        with self._lock:
            removed = self._slots.pop(subscription_id, None)
        if removed is not None:
            logger.debug("Dropped %d cached events for subscription %s", len(removed), subscription_id)
        return removed is not None

    def snapshot(self) -> dict[str, tuple[CalendarEvent, ...]]:
        """Consistent copy of every slot at call time."""
        with self._lock:
            return dict(self._slots)

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()
