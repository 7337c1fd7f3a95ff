"""calendarfeed - calendar aggregation engine.

Ingests remote and local iCalendar subscriptions plus events from OAuth-backed
calendar providers, and exposes them as one time-ordered, source-tagged stream.
"""

__version__ = "0.1.0"

import logging
import os
import sys
from typing import Optional

from colorlog import ColoredFormatter

from .engine import CalendarEngine
from .exceptions import (
    CalendarFeedError,
    ConfigurationError,
    FormatError,
    RetrievalError,
    ScopeError,
    SubscriptionNotFoundError,
)
from .ics_parser import ICSParser, ParserSettings, parse_ics
from .models import AggregationResult, CalendarEvent, Subscription, SubscriptionConfig

__all__ = [
    "AggregationResult",
    "CalendarEngine",
    "CalendarEvent",
    "CalendarFeedError",
    "ConfigurationError",
    "FormatError",
    "ICSParser",
    "ParserSettings",
    "RetrievalError",
    "ScopeError",
    "Subscription",
    "SubscriptionConfig",
    "SubscriptionNotFoundError",
    "parse_ics",
]


def _init_logging(level_name: Optional[str]) -> None:
    """Initialize root logging to stream to the console.

    Honors the CALENDARFEED_DEBUG environment variable (truthy values: "1",
    "true", "yes", "on"), which forces DEBUG verbosity.
    """
    debug_env = os.environ.get("CALENDARFEED_DEBUG", "")
    if debug_env.strip().lower() in ("1", "true", "yes", "on"):
        level_name = "DEBUG"

    root = logging.getLogger()
    # Only configure a handler if none is present to avoid duplicate output
    if not root.handlers:
        handler = logging.StreamHandler(stream=sys.stderr)
        # HH:MM:SS  LEVEL   logger.name: message, only the level is colorized
        fmt = "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s %(name)s: %(message)s"
        log_colors = {
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold_red",
        }
        handler.setFormatter(ColoredFormatter(fmt, datefmt="%H:%M:%S", log_colors=log_colors))
        root.addHandler(handler)

    level = logging.INFO
    if isinstance(level_name, str):
        level = getattr(logging, level_name.upper(), logging.INFO)
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)
    logging.getLogger(__name__).debug("Logging initialized at level %s", logging.getLevelName(level))
