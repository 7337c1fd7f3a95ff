"""iCalendar document parser for calendarfeed.

``parse_content`` never raises: a payload that is not an iCalendar document
comes back as a failed ``ICSParseResult``, and a single broken VEVENT is
skipped and counted while the rest of the batch is kept. Events come back in
source order; recurring masters are replaced in place by their instances.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from icalendar import Calendar, Event as ICalEvent

from .datetime_utils import ICSDateTimeParser
from .event_parser import ICSEventParser, component_has_rrule
from .exceptions import FormatError
from .models import CalendarEvent, ICSParseResult
from .recurrence import RecurrenceConfig, RecurrenceExpander, instance_id, occurrence_key
from .timezone_utils import now_utc, to_instant

logger = logging.getLogger(__name__)

_VEVENT_BLOCK = re.compile(r"^BEGIN:VEVENT\r?$.*?^END:VEVENT\r?$", re.IGNORECASE | re.MULTILINE | re.DOTALL)
_FOLDED_LINE = re.compile(r"\r\n[ \t]")


@dataclass
class ParserSettings:
    """Knobs for ICS parsing, usually derived from the application ``Config``."""

    default_timezone: Optional[str] = None
    enable_rrule_expansion: bool = True
    rrule_expansion_days: int = 365
    rrule_lookback_days: int = 30
    max_occurrences_per_rule: int = 250

    @classmethod
    def from_config(cls, config: Any) -> "ParserSettings":
        """Build settings from any object exposing the matching attributes."""
        return cls(
            default_timezone=getattr(config, "default_timezone", None),
            enable_rrule_expansion=bool(getattr(config, "enable_rrule_expansion", True)),
            rrule_expansion_days=int(getattr(config, "rrule_expansion_days", 365)),
            rrule_lookback_days=int(getattr(config, "rrule_lookback_days", 30)),
            max_occurrences_per_rule=int(getattr(config, "max_occurrences_per_rule", 250)),
        )


def normalize_line_endings(raw: str) -> str:
    """Strip a leading BOM and rewrite every line ending as CRLF."""
    text = raw.lstrip("\ufeff")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.replace("\n", "\r\n")


def _unfold(text: str) -> str:
    return _FOLDED_LINE.sub("", text)


def _header_value(text: str, name: str) -> Optional[str]:
    """Read a calendar-level property straight from the text (fallback path only)."""
    match = re.search(rf"^{re.escape(name)}(?:;[^:\r\n]*)?:(.*?)\r?$", _unfold(text), re.IGNORECASE | re.MULTILINE)
    if not match:
        return None
    return match.group(1).strip() or None


@dataclass
class _ParsedItem:
    event: CalendarEvent
    component: Any
    override_key: Optional[str] = None


class ICSParser:
    """Turns raw ICS text into normalized ``CalendarEvent`` objects."""

    def __init__(self, settings: Optional[ParserSettings] = None):
        """Initialize the parser.

        Args:
            settings: Parser settings (defaults when omitted)
        """
        self.settings = settings or ParserSettings()
        self.datetime_parser = ICSDateTimeParser(default_timezone=self.settings.default_timezone)
        self.event_parser = ICSEventParser(self.datetime_parser)
        self.expander = RecurrenceExpander(
            RecurrenceConfig(
                enabled=self.settings.enable_rrule_expansion,
                expansion_days=self.settings.rrule_expansion_days,
                lookback_days=self.settings.rrule_lookback_days,
                max_occurrences_per_rule=self.settings.max_occurrences_per_rule,
            )
        )

    def parse_content(
        self,
        raw: str,
        subscription_id: str,
        color: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ICSParseResult:
        """Parse one ICS payload.

        Args:
            raw: ICS text, CRLF or LF delimited
            subscription_id: Id stamped on every produced event
            color: Optional display color copied onto the events
            now: Reference time for the recurrence window (``now_utc()`` when omitted)

        Returns:
            Parse result; ``success`` is False only when the payload is not an
            iCalendar document at all
        """
        if not raw or not raw.strip():
            logger.warning("Empty ICS content for subscription %s", subscription_id)
            return ICSParseResult(success=False, error_message="Empty ICS content")

        text = normalize_line_endings(raw)
        if "BEGIN:VCALENDAR" not in text.upper():
            logger.warning("Content for subscription %s is not an iCalendar document", subscription_id)
            return ICSParseResult(
                success=False,
                error_message="Content is not an iCalendar document (no BEGIN:VCALENDAR)",
            )

        warnings: list[str] = []
        try:
            components, calendar_name, hint = self._parse_document(text)
        except Exception as e:
            logger.warning(
                "Whole-document parse failed for subscription %s, parsing events one by one: %s",
                subscription_id,
                e,
            )
            warnings.append(f"Document parse failed, recovered per event: {e}")
            components, calendar_name, hint, broken = self._parse_blocks(text)
            warnings.extend(broken)
            skipped = len(broken)
        else:
            skipped = 0

        zone = self.datetime_parser.zone_for_hint(hint)
        if hint and zone is None:
            warnings.append(f"Calendar timezone {hint!r} is not resolvable; floating times use the fallback zone")

        items: list[_ParsedItem] = []
        for component in components:
            try:
                event = self.event_parser.parse_component(component, subscription_id, zone, color)
                recurrence_id = self.datetime_parser.parse_optional(component.get("RECURRENCE-ID"), zone)
            except Exception as e:
                skipped += 1
                warnings.append(f"Skipped event: {e}")
                continue

            override_key = None
            if recurrence_id is not None:
                override_key = occurrence_key(recurrence_id)
                event = event.model_copy(
                    update={
                        "id": instance_id(event.id, recurrence_id),
                        "recurrence_master_id": event.id,
                    }
                )
            items.append(_ParsedItem(event, component, override_key))

        events = self._materialize(items, zone, now or now_utc(), warnings)
        events = self._deduplicate(events)

        if skipped:
            logger.warning(
                "Skipped %d malformed event(s) in subscription %s", skipped, subscription_id
            )
        logger.debug(
            "Parsed %d events from %d VEVENT components for subscription %s",
            len(events),
            len(components),
            subscription_id,
        )

        return ICSParseResult(
            success=True,
            events=events,
            calendar_name=calendar_name,
            timezone_hint=hint,
            total_components=len(components),
            skipped_count=skipped,
            warnings=warnings,
        )

    def _parse_document(self, text: str) -> tuple[list[Any], Optional[str], Optional[str]]:
        calendars = Calendar.from_ical(text, multiple=True)
        components: list[Any] = []
        calendar_name: Optional[str] = None
        hint: Optional[str] = None

        for calendar in calendars:
            if calendar_name is None and calendar.get("X-WR-CALNAME") is not None:
                calendar_name = str(calendar.get("X-WR-CALNAME")).strip() or None
            if hint is None and calendar.get("X-WR-TIMEZONE") is not None:
                hint = str(calendar.get("X-WR-TIMEZONE")).strip() or None
            components.extend(calendar.walk("VEVENT"))

        return components, calendar_name, hint

    def _parse_blocks(self, text: str) -> tuple[list[Any], Optional[str], Optional[str], list[str]]:
        """Parse each VEVENT block independently after a whole-document failure."""
        components: list[Any] = []
        broken: list[str] = []

        for index, match in enumerate(_VEVENT_BLOCK.finditer(text)):
            try:
                components.append(ICalEvent.from_ical(match.group(0)))
            except Exception as e:
                broken.append(f"Skipped unreadable VEVENT block #{index + 1}: {e}")

        return components, _header_value(text, "X-WR-CALNAME"), _header_value(text, "X-WR-TIMEZONE"), broken

    def _materialize(
        self,
        items: list[_ParsedItem],
        zone: Any,
        now: datetime,
        warnings: list[str],
    ) -> list[CalendarEvent]:
        """Expand recurring masters and apply RECURRENCE-ID overrides, keeping source order."""
        overrides: dict[tuple[str, str], CalendarEvent] = {}
        for item in items:
            if item.override_key is not None:
                master_id = item.event.recurrence_master_id or item.event.id
                overrides[(master_id, item.override_key)] = item.event

        consumed: set[tuple[str, str]] = set()
        events: list[CalendarEvent] = []

        for item in items:
            if item.override_key is not None:
                continue

            if not (self.expander.config.enabled and component_has_rrule(item.component)):
                events.append(item.event)
                continue

            try:
                instances = self.expander.expand(item.event, item.component, now, zone)
            except FormatError as e:
                warnings.append(str(e))
                logger.warning("%s; keeping the master event only", e)
                events.append(item.event)
                continue

            for instance in instances:
                key = (item.event.id, occurrence_key(instance.start))
                override = overrides.get(key)
                if override is None:
                    events.append(instance)
                    continue
                consumed.add(key)
                if override.status != "CANCELLED":
                    events.append(override)

        # Overrides whose occurrence was not generated (moved into the window, or no master)
        for item in items:
            if item.override_key is None:
                continue
            key = (item.event.recurrence_master_id or item.event.id, item.override_key)
            if key in consumed or item.event.status == "CANCELLED":
                continue
            consumed.add(key)
            events.append(item.event)

        return events

    def _deduplicate(self, events: list[CalendarEvent]) -> list[CalendarEvent]:
        """Drop repeated (id, start) pairs, keeping the first occurrence."""
        seen: set[tuple[str, datetime]] = set()
        unique: list[CalendarEvent] = []

        for event in events:
            key = (event.id, to_instant(event.start))
            if key in seen:
                logger.debug("Dropping duplicate event %s at %s", event.id, event.start)
                continue
            seen.add(key)
            unique.append(event)

        return unique


def parse_ics(
    raw: str,
    subscription_id: str,
    settings: Optional[ParserSettings] = None,
    color: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[CalendarEvent]:
    """Parse ICS text into events, returning an empty list for unusable payloads."""
    return ICSParser(settings).parse_content(raw, subscription_id, color=color, now=now).events
