"""VEVENT component parsing.

Turns a single icalendar ``Event`` component into a ``CalendarEvent``. Any
problem with the component surfaces as ``FormatError`` so the document parser
can drop that one event and carry on with the rest of the batch.
"""

import hashlib
import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Optional

from icalendar import Event as ICalEvent
from pydantic import ValidationError

from .datetime_utils import ICSDateTimeParser
from .exceptions import FormatError
from .models import CalendarEvent, EventTime
from .timezone_utils import to_instant

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def _text(component: ICalEvent, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ICSEventParser:
    """Parser for iCalendar VEVENT components into CalendarEvent objects."""

    def __init__(self, datetime_parser: ICSDateTimeParser):
        self.datetime_parser = datetime_parser

    def event_uid(self, component: ICalEvent, subscription_id: str) -> str:
        """Return the component UID, or a stable id derived from its content."""
        uid = _text(component, "UID")
        if uid:
            return uid
        # Content hash keeps ids identical across repeated parses of one payload
        digest = hashlib.sha1(component.to_ical()).hexdigest()[:16]  # nosec B324 - not security sensitive
        return f"{subscription_id}-{digest}"

    def parse_component(
        self,
        component: ICalEvent,
        subscription_id: str,
        zone: Optional[tzinfo] = None,
        color: Optional[str] = None,
    ) -> CalendarEvent:
        """Parse a single VEVENT component.

        Args:
            component: iCalendar VEVENT component
            subscription_id: Owning subscription id
            zone: Calendar-level zone for floating times
            color: Display color copied from the subscription

        Returns:
            Parsed CalendarEvent

        Raises:
            FormatError: If the component has no usable DTSTART or fails validation
        """
        uid = self.event_uid(component, subscription_id)

        dtstart = component.get("DTSTART")
        if dtstart is None:
            raise FormatError(f"Event {uid} missing DTSTART")

        start = self.datetime_parser.parse(dtstart, zone)
        all_day = not isinstance(start, datetime)
        end = self._parse_end(component, start, all_day, zone, uid)
        alarms = self._parse_alarms(component, start, end, zone)

        try:
            return CalendarEvent(
                id=uid,
                subscription_id=subscription_id,
                title=_text(component, "SUMMARY") or "Untitled",
                start=start,
                end=end,
                all_day=all_day,
                alarms=alarms,
                description=_text(component, "DESCRIPTION"),
                location=_text(component, "LOCATION"),
                url=_text(component, "URL"),
                status=(_text(component, "STATUS") or "").upper() or None,
                color=color,
            )
        except ValidationError as e:
            raise FormatError(f"Event {uid} failed validation: {e}") from e

    def _parse_end(
        self,
        component: ICalEvent,
        start: EventTime,
        all_day: bool,
        zone: Optional[tzinfo],
        uid: str,
    ) -> EventTime:
        """Compute the event end, applying the defaults for a missing DTEND."""
        end = self.datetime_parser.parse_optional(component.get("DTEND"), zone)

        if end is None:
            duration = getattr(component.get("DURATION"), "dt", None)
            if isinstance(duration, timedelta):
                if all_day:
                    end = start + timedelta(days=max(duration.days, 0))
                else:
                    end = start + duration
            elif all_day:
                # Date-only events without an end last one day (exclusive end)
                end = start + ONE_DAY
            else:
                end = start

        if all_day and isinstance(end, datetime):
            end = end.date()
        elif not all_day and not isinstance(end, datetime):
            end = datetime.combine(end, time.min, tzinfo=start.tzinfo)

        if to_instant(end) < to_instant(start):
            logger.debug("Event %s ends before it starts; clamping end", uid)
            end = start + ONE_DAY if all_day else start

        return end

    def _parse_alarms(
        self,
        component: ICalEvent,
        start: EventTime,
        end: EventTime,
        zone: Optional[tzinfo],
    ) -> Optional[list[timedelta]]:
        """Fold VALARM sub-components into offsets relative to the event start."""
        alarms: list[timedelta] = []

        for sub in component.subcomponents:
            if getattr(sub, "name", "").upper() != "VALARM":
                continue
            trigger = sub.get("TRIGGER")
            if trigger is None:
                logger.debug("VALARM without TRIGGER ignored")
                continue

            offset = self._trigger_offset(trigger, start, end, zone)
            if offset is None:
                logger.debug("Unsupported VALARM trigger %r ignored", trigger)
                continue
            alarms.append(offset)

        return alarms or None

    def _trigger_offset(
        self,
        trigger: Any,
        start: EventTime,
        end: EventTime,
        zone: Optional[tzinfo],
    ) -> Optional[timedelta]:
        value = getattr(trigger, "dt", None)
        tz = start.tzinfo if isinstance(start, datetime) else zone

        if isinstance(value, timedelta):
            params = getattr(trigger, "params", None) or {}
            if str(params.get("RELATED", "START")).upper() == "END":
                return (to_instant(end, tz) - to_instant(start, tz)) + value
            return value

        if isinstance(value, (datetime, date)):
            absolute = self.datetime_parser.parse(trigger, zone)
            return to_instant(absolute, tz) - to_instant(start, tz)

        return None


def component_has_rrule(component: Any) -> bool:
    """Check whether a VEVENT carries a recurrence rule."""
    return component.get("RRULE") is not None
