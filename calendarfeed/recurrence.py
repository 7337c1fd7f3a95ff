"""RRULE expansion for recurring ICS events.

Only the common case is handled: one RRULE per master event, EXDATE
exclusions, and RECURRENCE-ID overrides applied by the document parser.
Occurrences are generated in the event's wall-clock time so that DST
transitions keep the local start time stable.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Optional

from dateutil.rrule import rrulestr

from .exceptions import FormatError
from .models import CalendarEvent, EventTime
from .timezone_utils import UTC

logger = logging.getLogger(__name__)

_UNTIL_PATTERN = re.compile(r"UNTIL=(\d{8})(T(\d{6})(Z?))?", re.IGNORECASE)


@dataclass
class RecurrenceConfig:
    """Configuration for RRULE expansion."""

    enabled: bool = True
    expansion_days: int = 365
    lookback_days: int = 30
    max_occurrences_per_rule: int = 250


def occurrence_key(value: EventTime) -> str:
    """Stable key for one occurrence slot, shared by expansion and RECURRENCE-ID."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.strftime("%Y%m%dT%H%M%SZ")
    return value.strftime("%Y%m%d")


def instance_id(master_uid: str, value: EventTime) -> str:
    return f"{master_uid}::{occurrence_key(value)}"


class RecurrenceExpander:
    """Expands a parsed master event into concrete instances inside a window."""

    def __init__(self, config: Optional[RecurrenceConfig] = None):
        self.config = config or RecurrenceConfig()

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        """Return the (start, end) expansion window around ``now``."""
        return (
            now - timedelta(days=self.config.lookback_days),
            now + timedelta(days=self.config.expansion_days),
        )

    def expand(
        self,
        master: CalendarEvent,
        component: Any,
        now: datetime,
        zone: Optional[tzinfo] = None,
    ) -> list[CalendarEvent]:
        """Expand ``master`` using the RRULE and EXDATE of ``component``.

        Args:
            master: Parsed master event (its start anchors the rule)
            component: Raw VEVENT carrying RRULE/EXDATE
            now: Reference time for the expansion window
            zone: Calendar zone, used for all-day window arithmetic

        Returns:
            Instances in chronological order; empty when no occurrence falls in the window

        Raises:
            FormatError: If the RRULE cannot be interpreted
        """
        rrule_prop = component.get("RRULE")
        if rrule_prop is None:
            return []
        if isinstance(rrule_prop, list):
            logger.debug("Event %s has %d RRULEs; using the first", master.id, len(rrule_prop))
            rrule_prop = rrule_prop[0]

        rule_text = rrule_prop.to_ical().decode("utf-8") if hasattr(rrule_prop, "to_ical") else str(rrule_prop)
        all_day = master.all_day
        tz = master.start.tzinfo if isinstance(master.start, datetime) else (zone or UTC)

        dtstart = self._wall_clock(master.start, tz)
        rule_text = self._normalize_until(rule_text, tz, all_day)

        try:
            rule = rrulestr(f"RRULE:{rule_text}", dtstart=dtstart, forceset=True)
        except (ValueError, TypeError) as e:
            raise FormatError(f"Unsupported RRULE {rule_text!r} on event {master.id}: {e}") from e

        window_start, window_end = self.window(now)
        start_wall = self._wall_clock(window_start, tz)
        end_wall = self._wall_clock(window_end, tz)
        duration = self._duration(master)
        excluded = self._collect_exdates(component, tz)

        instances: list[CalendarEvent] = []
        # Occurrences that started before the window but are still running count too
        search_from = start_wall - max(duration, timedelta(0))
        for occurrence in rule.xafter(search_from, count=self.config.max_occurrences_per_rule, inc=True):
            if occurrence > end_wall:
                break
            if occurrence in excluded or occurrence.date() in excluded:
                continue

            if all_day:
                start_value: EventTime = occurrence.date()
            else:
                start_value = occurrence.replace(tzinfo=tz)
            instances.append(
                master.model_copy(
                    update={
                        "id": instance_id(master.id, start_value),
                        "start": start_value,
                        "end": start_value + duration,
                        "recurrence_master_id": master.id,
                    }
                )
            )

        if len(instances) >= self.config.max_occurrences_per_rule:
            logger.info(
                "RRULE expansion for %s hit the %d occurrence cap",
                master.id,
                self.config.max_occurrences_per_rule,
            )
        return instances

    def _duration(self, master: CalendarEvent) -> timedelta:
        return master.end - master.start  # type: ignore[operator]

    def _wall_clock(self, value: EventTime, tz: tzinfo) -> datetime:
        """Naive local wall-clock datetime for ``value`` in ``tz``."""
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(tz)
            return value.replace(tzinfo=None)
        return datetime.combine(value, time.min)

    def _normalize_until(self, rule_text: str, tz: tzinfo, all_day: bool) -> str:
        """Rewrite UNTIL into naive wall-clock time so dateutil accepts it."""

        def _replace(match: re.Match[str]) -> str:
            day, time_part, hhmmss, zulu = match.group(1), match.group(2), match.group(3), match.group(4)
            if not time_part:
                return f"UNTIL={day}" if all_day else f"UNTIL={day}T235959"
            until = datetime.strptime(f"{day}T{hhmmss}", "%Y%m%dT%H%M%S")
            if zulu:
                until = until.replace(tzinfo=UTC).astimezone(tz).replace(tzinfo=None)
            if all_day:
                return f"UNTIL={until.strftime('%Y%m%d')}"
            return f"UNTIL={until.strftime('%Y%m%dT%H%M%S')}"

        return _UNTIL_PATTERN.sub(_replace, rule_text)

    def _collect_exdates(self, component: Any, tz: tzinfo) -> set[Any]:
        """Collect EXDATE values as wall-clock datetimes (or dates for date-only entries)."""
        excluded: set[Any] = set()
        raw = component.get("EXDATE")
        if raw is None:
            return excluded

        for prop in raw if isinstance(raw, list) else [raw]:
            for entry in getattr(prop, "dts", []):
                value = getattr(entry, "dt", None)
                if isinstance(value, datetime):
                    if value.tzinfo is not None:
                        value = value.astimezone(tz).replace(tzinfo=None)
                    excluded.add(value)
                elif isinstance(value, date):
                    excluded.add(value)
        return excluded
