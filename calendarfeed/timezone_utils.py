"""Timezone resolution and clock helpers for calendarfeed."""

from __future__ import annotations

import datetime
import logging
import os
import zoneinfo
from typing import ClassVar, Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc


class TimezoneResolver:
    """Turns zone names found in ICS payloads into tzinfo objects."""

    # Common Windows timezone names used in ICS files from Outlook/Exchange
    WINDOWS_TZ_MAP: ClassVar[dict[str, str]] = {
        "Pacific Standard Time": "America/Los_Angeles",
        "Mountain Standard Time": "America/Denver",
        "Central Standard Time": "America/Chicago",
        "Eastern Standard Time": "America/New_York",
        "Alaskan Standard Time": "America/Anchorage",
        "Hawaiian Standard Time": "Pacific/Honolulu",
        "Arizona Standard Time": "America/Phoenix",
        "GMT Standard Time": "Europe/London",
        "Central European Standard Time": "Europe/Paris",
        "W. Europe Standard Time": "Europe/Berlin",
        "China Standard Time": "Asia/Shanghai",
        "Tokyo Standard Time": "Asia/Tokyo",
        "India Standard Time": "Asia/Kolkata",
        "AUS Eastern Standard Time": "Australia/Sydney",
    }

    def __init__(self) -> None:
        self._cache: dict[str, Optional[datetime.tzinfo]] = {}

    def resolve(self, name: Optional[str]) -> Optional[datetime.tzinfo]:
        """Resolve an IANA or Windows zone name.

        Args:
            name: Zone name as written in the payload (may be None or blank)

        Returns:
            A tzinfo, or None when the name is unknown
        """
        if not name:
            return None
        key = str(name).strip().strip('"')
        if not key:
            return None
        if key in self._cache:
            return self._cache[key]

        tz: Optional[datetime.tzinfo] = None
        if key.upper() in ("UTC", "Z", "GMT", "ETC/UTC"):
            tz = UTC
        else:
            iana = self.WINDOWS_TZ_MAP.get(key, key)
            try:
                tz = zoneinfo.ZoneInfo(iana)
            except (zoneinfo.ZoneInfoNotFoundError, ValueError):
                logger.debug("Unknown timezone name %r", key)
                tz = None

        self._cache[key] = tz
        return tz


_resolver = TimezoneResolver()


def resolve_timezone(name: Optional[str]) -> Optional[datetime.tzinfo]:
    """Resolve a zone name with the shared resolver (convenience function)."""
    return _resolver.resolve(name)


def windows_tz_to_iana(windows_tz: str) -> Optional[str]:
    """Convert a Windows timezone name to an IANA identifier, or None."""
    return TimezoneResolver.WINDOWS_TZ_MAP.get(windows_tz)


def ensure_timezone_aware(
    dt: datetime.datetime, tz: Optional[datetime.tzinfo] = None
) -> datetime.datetime:
    """Attach ``tz`` (UTC when omitted) to a naive datetime; aware values pass through."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz or UTC)
    return dt


def to_instant(
    value: datetime.date, tz: Optional[datetime.tzinfo] = None
) -> datetime.datetime:
    """Return an aware datetime usable for ordering and range checks.

    Calendar dates become midnight in ``tz`` (UTC when omitted); naive datetimes
    are interpreted in ``tz`` as well.
    """
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value, tz)
    return datetime.datetime.combine(value, datetime.time.min, tzinfo=tz or UTC)


def now_utc() -> datetime.datetime:
    """Return the current UTC time.

    ``CALENDARFEED_TEST_TIME`` (ISO 8601) overrides the clock for deterministic
    runs; a naive override is taken as UTC.
    """
    test_time = os.environ.get("CALENDARFEED_TEST_TIME")
    if test_time:
        try:
            dt = date_parser.isoparse(test_time)
            if dt.tzinfo is not None:
                return dt.astimezone(UTC)
            return dt.replace(tzinfo=UTC)
        except (ValueError, OverflowError) as e:
            logger.warning("Failed to parse CALENDARFEED_TEST_TIME=%r: %s", test_time, e)

    return datetime.datetime.now(UTC)
