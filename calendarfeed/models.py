"""Data models for calendar aggregation - subscriptions, events and results."""

import re
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator, model_validator

from .timezone_utils import to_instant

HEX_COLOR_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")
REMOTE_SCHEMES = ("http", "https", "webcal", "webcals")
DEFAULT_COLOR = "#6495ed"
DEFAULT_REFRESH_INTERVAL_MINUTES = 60

EventTime = Union[datetime, date]


class SourceKind(str, Enum):
    """Where a subscription's ICS bytes come from."""

    REMOTE = "remote"
    LOCAL = "local"


class ProviderTag(str, Enum):
    """Normalized source tag attached to every aggregated event."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    ICS = "ics"
    UNKNOWN = "unknown"


def is_remote_url(location: str) -> bool:
    """Check that ``location`` is an http(s)/webcal URL with a hostname."""
    try:
        parsed = urlparse(location)
    except ValueError:
        return False
    return parsed.scheme.lower() in REMOTE_SCHEMES and bool(parsed.hostname)


# Calendar events


class CalendarEvent(BaseModel):
    """Normalized calendar event.

    ``end`` is always populated once the model exists: a missing end becomes
    ``start``. All-day events hold plain dates and an exclusive end date.
    """

    id: str = Field(..., description="Event ID, unique within its source")
    subscription_id: str = Field(..., description="Owning subscription or provider source id")
    title: str = Field(default="Untitled", description="Display title")

    start: EventTime = Field(..., description="Event start")
    end: EventTime = Field(..., description="Event end (exclusive date for all-day events)")
    all_day: bool = Field(default=False, description="All-day event flag")

    alarms: Optional[list[timedelta]] = Field(
        default=None, description="Reminder offsets relative to start, negative means before"
    )

    description: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    status: Optional[str] = None
    color: Optional[str] = None

    # Set on instances produced by RRULE expansion
    recurrence_master_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _default_end(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            start = data.get("start")
            if data.get("end") is None:
                data["end"] = start
            if "all_day" not in data and start is not None:
                data["all_day"] = isinstance(start, date) and not isinstance(start, datetime)
        return data

    @model_validator(mode="after")
    def _check_invariants(self) -> "CalendarEvent":
        if self.all_day:
            if isinstance(self.start, datetime) or isinstance(self.end, datetime):
                raise ValueError("all-day events must use calendar dates, not date-times")
        elif not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise ValueError("timed events must use date-times")
        if to_instant(self.end) < to_instant(self.start):
            raise ValueError("event end must not be before its start")
        return self

    @property
    def is_recurring_instance(self) -> bool:
        return self.recurrence_master_id is not None


class ProviderCalendarEvent(CalendarEvent):
    """Event supplied by an OAuth-backed provider; read-only for the engine."""

    calendar_id: Optional[str] = Field(default=None, description="Provider calendar id")


class ProviderCalendar(BaseModel):
    """Calendar metadata exposed by a provider."""

    id: str
    name: str
    provider_id: str
    color: Optional[str] = None
    writable: bool = True


class EventDraft(BaseModel):
    """Minimal event description handed to a provider for write-back."""

    title: str
    start: EventTime
    end: Optional[EventTime] = None
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None


class AggregatedEvent(BaseModel):
    """An event annotated with the normalized tag of the source it came from."""

    provider: ProviderTag
    # Provider events keep their extra fields (calendar_id) when dumped
    event: SerializeAsAny[CalendarEvent]

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    @property
    def start(self) -> EventTime:
        return self.event.start

    @property
    def end(self) -> EventTime:
        return self.event.end

    @property
    def title(self) -> str:
        return self.event.title


class AggregationResult(BaseModel):
    """Output of one aggregation call. Never persisted."""

    events: list[AggregatedEvent] = Field(default_factory=list)
    total: int = 0
    sources: dict[str, int] = Field(default_factory=dict)


# Subscriptions


class SubscriptionConfig(BaseModel):
    """User-supplied definition of an ICS source."""

    name: str = Field(..., description="Human-readable name for this calendar source")
    source_kind: SourceKind = Field(..., description="remote URL or local file")
    location: str = Field(..., description="URL or managed-root-relative file path")
    enabled: bool = True
    color: str = DEFAULT_COLOR
    refresh_interval_minutes: int = Field(
        default=DEFAULT_REFRESH_INTERVAL_MINUTES,
        ge=0,
        description="Periodic refresh interval, 0 disables periodic refresh",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("name", "location")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("color")
    @classmethod
    def _valid_color(cls, value: str) -> str:
        if not HEX_COLOR_PATTERN.match(value):
            raise ValueError(f"color must look like #RRGGBB, got {value!r}")
        return value.lower()

    @model_validator(mode="after")
    def _check_location_kind(self) -> "SubscriptionConfig":
        if self.source_kind == SourceKind.REMOTE:
            if not is_remote_url(self.location):
                raise ValueError(
                    f"remote subscriptions need an http(s) or webcal URL, got {self.location!r}"
                )
        elif "://" in self.location:
            raise ValueError(
                f"local subscriptions need a file path, got a URL {self.location!r}"
            )
        elif "\x00" in self.location:
            raise ValueError("local path contains a NUL character")
        return self


class Subscription(SubscriptionConfig):
    """A configured ICS source with its generated id."""

    id: str


class SubscriptionPatch(BaseModel):
    """Partial update for a subscription; unset fields are left unchanged."""

    name: Optional[str] = None
    source_kind: Optional[SourceKind] = None
    location: Optional[str] = None
    enabled: Optional[bool] = None
    color: Optional[str] = None
    refresh_interval_minutes: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class SyncState(BaseModel):
    """Advisory per-subscription sync state, written only by the fetch scheduler."""

    last_fetched: Optional[datetime] = None
    last_error: Optional[str] = None
    skipped_events: int = 0
    event_count: int = 0

    # HTTP caching support
    etag: Optional[str] = None
    last_modified: Optional[str] = None


# Fetch and parse results


class ICSResponse(BaseModel):
    """Outcome of acquiring a subscription's bytes."""

    content: Optional[str] = None
    status_code: Optional[int] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def is_not_modified(self) -> bool:
        """Check if response indicates content not modified (304)."""
        return self.status_code == 304


class ICSParseResult(BaseModel):
    """Result of parsing one ICS payload."""

    success: bool
    events: list[CalendarEvent] = Field(default_factory=list)
    calendar_name: Optional[str] = None
    timezone_hint: Optional[str] = None

    # Parse statistics
    total_components: int = 0
    skipped_count: int = 0

    error_message: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
