"""DateTime parsing utilities for iCalendar properties.

Explicit UTC values (``Z`` suffix) come out of icalendar already aware and are
kept as-is. Floating values are interpreted, in order of preference, with the
property's own ``TZID``, the calendar's zone hint (``X-WR-TIMEZONE``), the
configured default timezone, and finally UTC.
"""

import logging
from datetime import date, datetime, tzinfo
from typing import Any, Optional

from .exceptions import FormatError
from .models import EventTime
from .timezone_utils import UTC, TimezoneResolver

logger = logging.getLogger(__name__)


class ICSDateTimeParser:
    """Parser for iCalendar date and date-time properties with timezone handling."""

    def __init__(
        self,
        resolver: Optional[TimezoneResolver] = None,
        default_timezone: Optional[str] = None,
    ):
        """Initialize datetime parser.

        Args:
            resolver: Zone name resolver (a fresh one when omitted)
            default_timezone: Zone for floating times when the payload gives no usable hint
        """
        self.resolver = resolver or TimezoneResolver()
        self.default_tz: Optional[tzinfo] = self.resolver.resolve(default_timezone)
        if default_timezone and self.default_tz is None:
            logger.warning("Default timezone %r is unknown; floating times use UTC", default_timezone)

    def zone_for_hint(self, hint: Optional[str]) -> Optional[tzinfo]:
        """Resolve a calendar-level zone hint, logging when it cannot be used."""
        if not hint:
            return None
        tz = self.resolver.resolve(hint)
        if tz is None:
            logger.info("Calendar zone hint %r not resolvable; using fallback zone", hint)
        return tz

    def parse(self, prop: Any, zone: Optional[tzinfo] = None) -> EventTime:
        """Parse a DTSTART/DTEND-style property.

        Args:
            prop: icalendar property (``vDDDTypes``) or a bare date/datetime
            zone: Zone from the calendar's hint, used for floating date-times

        Returns:
            A ``date`` for date-only values, otherwise an aware ``datetime``

        Raises:
            FormatError: If the property carries no usable date value
        """
        value = getattr(prop, "dt", prop)

        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=self._floating_zone(prop, zone))
            return value
        if isinstance(value, date):
            return value

        raise FormatError(f"Unsupported date value: {prop!r}")

    def parse_optional(self, prop: Any, zone: Optional[tzinfo] = None) -> Optional[EventTime]:
        """Parse an optional property, returning None when absent or unusable."""
        if prop is None:
            return None
        try:
            return self.parse(prop, zone)
        except FormatError:
            logger.debug("Ignoring unusable date property %r", prop)
            return None

    def _floating_zone(self, prop: Any, zone: Optional[tzinfo]) -> tzinfo:
        params = getattr(prop, "params", None) or {}
        tzid = params.get("TZID")
        if tzid:
            tz = self.resolver.resolve(str(tzid))
            if tz is not None:
                return tz
            logger.debug("TZID %r not resolvable, falling back to calendar zone", tzid)
        return zone or self.default_tz or UTC
