"""Subscription store - the single owner of ICS source configuration.

Configuration records can be persisted to a JSON file (atomic temp-file
replace). Sync state lives only in memory; it is advisory and is written
exclusively through ``record_success`` / ``record_failure``.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from .exceptions import ConfigurationError, SubscriptionNotFoundError
from .fetcher import normalize_local_location
from .models import SourceKind, Subscription, SubscriptionConfig, SubscriptionPatch, SyncState
from .timezone_utils import now_utc

logger = logging.getLogger(__name__)

SubscriptionListener = Callable[[str, Subscription], None]

ConfigInput = Union[SubscriptionConfig, Mapping[str, Any]]
PatchInput = Union[SubscriptionPatch, Mapping[str, Any]]


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", ())) or "subscription"
        parts.append(f"{field}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def generate_subscription_id() -> str:
    return f"ics_{uuid.uuid4().hex[:12]}"


class SubscriptionStore:
    """In-memory subscription registry with optional JSON persistence."""

    def __init__(
        self,
        managed_root: Union[str, Path] = ".",
        path: Optional[Union[str, Path]] = None,
    ) -> None:
        """Create a store.

        Args:
            managed_root: Root directory local sources must live in
            path: Optional JSON file for configuration records; loaded now if present
        """
        self.managed_root = Path(managed_root)
        self._path = Path(path) if path else None
        self._lock = threading.RLock()
        self._subscriptions: dict[str, Subscription] = {}
        self._sync: dict[str, SyncState] = {}
        self._listeners: list[SubscriptionListener] = []

        if self._path is not None:
            self.load()

    # Configuration API

    def add(self, config: ConfigInput, subscription_id: Optional[str] = None) -> Subscription:
        """Validate and register a new subscription. Never triggers a fetch.

        Args:
            config: Subscription definition (model or plain mapping)
            subscription_id: Explicit id; generated when omitted

        Returns:
            The stored subscription

        Raises:
            ConfigurationError: If the definition is malformed or the id is taken
        """
        validated = self._validate(config)
        with self._lock:
            new_id = subscription_id or generate_subscription_id()
            if new_id in self._subscriptions:
                raise ConfigurationError(f"Subscription id already exists: {new_id}")

            subscription = Subscription(id=new_id, **validated.model_dump())
            self._subscriptions[new_id] = subscription
            self._sync[new_id] = SyncState()
            try:
                self._persist()
            except OSError:
                self._subscriptions.pop(new_id, None)
                self._sync.pop(new_id, None)
                raise

        logger.info("Added subscription %s (%s %s)", new_id, subscription.source_kind.value, subscription.name)
        self._notify("added", subscription)
        return subscription

    def update(self, subscription_id: str, patch: PatchInput) -> Subscription:
        """Apply a partial update. Sync state is left alone unless the source moved.

        Raises:
            SubscriptionNotFoundError: Unknown id
            ConfigurationError: The patched definition is malformed
        """
        if isinstance(patch, SubscriptionPatch):
            patch_model = patch
        else:
            try:
                patch_model = SubscriptionPatch.model_validate(dict(patch))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid subscription patch: {_validation_message(e)}") from e

        changes = patch_model.model_dump(exclude_unset=True, exclude_none=True)

        with self._lock:
            current = self.get(subscription_id)
            merged = {**current.model_dump(exclude={"id"}), **changes}
            validated = self._validate(merged)
            updated = Subscription(id=subscription_id, **validated.model_dump())

            relocated = (
                updated.location != current.location or updated.source_kind != current.source_kind
            )
            previous_state = self._sync.get(subscription_id)
            self._subscriptions[subscription_id] = updated
            if relocated:
                # Cache validators belong to the old source
                self._sync[subscription_id] = (previous_state or SyncState()).model_copy(
                    update={"etag": None, "last_modified": None}
                )
            try:
                self._persist()
            except OSError:
                self._subscriptions[subscription_id] = current
                if previous_state is not None:
                    self._sync[subscription_id] = previous_state
                raise

        logger.info("Updated subscription %s (%s)", subscription_id, ", ".join(sorted(changes)) or "no changes")
        self._notify("updated", updated)
        return updated

    def remove(self, subscription_id: str) -> Subscription:
        """Delete a subscription and its sync state.

        Raises:
            SubscriptionNotFoundError: Unknown id
        """
        with self._lock:
            removed = self.get(subscription_id)
            del self._subscriptions[subscription_id]
            previous_state = self._sync.pop(subscription_id, None)
            try:
                self._persist()
            except OSError:
                self._subscriptions[subscription_id] = removed
                if previous_state is not None:
                    self._sync[subscription_id] = previous_state
                raise

        logger.info("Removed subscription %s", subscription_id)
        self._notify("removed", removed)
        return removed

    def list(self) -> list[Subscription]:
        """All subscriptions in insertion order."""
        with self._lock:
            return list(self._subscriptions.values())

    def list_enabled(self) -> list[Subscription]:
        with self._lock:
            return [s for s in self._subscriptions.values() if s.enabled]

    def get(self, subscription_id: str) -> Subscription:
        with self._lock:
            try:
                return self._subscriptions[subscription_id]
            except KeyError:
                raise SubscriptionNotFoundError(subscription_id) from None

    def find(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def __contains__(self, subscription_id: object) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # Listeners

    def add_listener(self, listener: SubscriptionListener) -> None:
        """Register ``listener(action, subscription)`` for added/updated/removed changes."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SubscriptionListener) -> None:
        with self._lock, contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _notify(self, action: str, subscription: Subscription) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(action, subscription)
            except Exception:
                logger.exception("Subscription listener failed for %s %s", action, subscription.id)

    # Sync state

    def get_sync_state(self, subscription_id: str) -> SyncState:
        """Current sync state (a copy).

        Raises:
            SubscriptionNotFoundError: Unknown id
        """
        with self._lock:
            self.get(subscription_id)
            return self._sync.get(subscription_id, SyncState()).model_copy()

    def get_last_fetched(self, subscription_id: str) -> Optional[datetime]:
        return self.get_sync_state(subscription_id).last_fetched

    def get_last_error(self, subscription_id: str) -> Optional[str]:
        return self.get_sync_state(subscription_id).last_error

    def record_success(
        self,
        subscription_id: str,
        event_count: Optional[int] = None,
        skipped_events: int = 0,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        fetched_at: Optional[datetime] = None,
    ) -> None:
        """Stamp a successful fetch: clears the error and sets ``last_fetched``.

        ``event_count`` of None (a 304) keeps the previous count.
        """
        with self._lock:
            state = self._sync.get(subscription_id)
            if state is None or subscription_id not in self._subscriptions:
                logger.debug("Ignoring success for unknown subscription %s", subscription_id)
                return
            update: dict[str, Any] = {
                "last_fetched": fetched_at or now_utc(),
                "last_error": None,
                "skipped_events": skipped_events,
                "etag": etag or state.etag,
                "last_modified": last_modified or state.last_modified,
            }
            if event_count is not None:
                update["event_count"] = event_count
            self._sync[subscription_id] = state.model_copy(update=update)

    def record_failure(self, subscription_id: str, message: str) -> None:
        """Record ``last_error``; ``last_fetched`` keeps the last successful time."""
        with self._lock:
            state = self._sync.get(subscription_id)
            if state is None or subscription_id not in self._subscriptions:
                logger.debug("Ignoring failure for unknown subscription %s", subscription_id)
                return
            self._sync[subscription_id] = state.model_copy(
                update={"last_error": message or "Unknown error"}
            )

    # Validation and persistence

    def _validate(self, config: ConfigInput) -> SubscriptionConfig:
        try:
            if isinstance(config, SubscriptionConfig):
                data = config.model_dump(exclude={"id"})
            else:
                data = {k: v for k, v in dict(config).items() if k != "id"}
            validated = SubscriptionConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid subscription: {_validation_message(e)}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid subscription: {e}") from e

        if validated.source_kind == SourceKind.LOCAL:
            location = normalize_local_location(validated.location, self.managed_root)
            if location != validated.location:
                validated = validated.model_copy(update={"location": location})
        return validated

    def load(self) -> None:
        """Load configuration records from the JSON file, skipping malformed ones."""
        if self._path is None:
            return

        with self._lock:
            if not self._path.exists():
                logger.debug("Subscriptions file not found; starting empty: %s", self._path)
                return

            try:
                with self._path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to read subscriptions file %s: %s", self._path, exc)
                return

            if not isinstance(data, list):
                logger.warning("Subscriptions file %s must contain a JSON list", self._path)
                return

            loaded: dict[str, Subscription] = {}
            for record in data:
                if not isinstance(record, dict) or not record.get("id"):
                    logger.warning("Skipping subscription record without id: %r", record)
                    continue
                try:
                    validated = self._validate(record)
                except ConfigurationError as exc:
                    logger.warning("Skipping invalid subscription record %s: %s", record.get("id"), exc)
                    continue
                loaded[str(record["id"])] = Subscription(id=str(record["id"]), **validated.model_dump())

            self._subscriptions = loaded
            self._sync = {sid: self._sync.get(sid, SyncState()) for sid in loaded}
            logger.debug("Loaded %d subscriptions from %s", len(loaded), self._path)

    def _persist(self) -> None:
        """Write configuration records atomically. Called with the lock held."""
        if self._path is None:
            return

        records = [s.model_dump(mode="json") for s in self._subscriptions.values()]
        dirpath = self._path.parent
        dirpath.mkdir(parents=True, exist_ok=True)

        tmp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile("w", dir=dirpath, delete=False, encoding="utf-8") as tf:
                tmp_path = Path(tf.name)
                json.dump(records, tf, ensure_ascii=False, indent=2)
                tf.flush()
                os.fsync(tf.fileno())
            tmp_path.replace(self._path)
        except OSError as exc:
            logger.warning("Failed to persist subscriptions to %s: %s", self._path, exc)
            if tmp_path is not None and tmp_path.exists():
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise
