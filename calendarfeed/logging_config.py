"""
Central logging configuration for calendarfeed.

Keeps calendarfeed's own modules at INFO (DEBUG on request) while quieting the
debug chatter of the HTTP and calendar libraries underneath.
"""

import logging
import os
from typing import Optional

# Third-party loggers that are noisy at DEBUG
_QUIET_LOGGERS: dict[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "asyncio": logging.WARNING,
    "icalendar": logging.INFO,
}

_PACKAGE_LOGGERS = (
    "calendarfeed",
    "calendarfeed.ics_parser",
    "calendarfeed.fetcher",
    "calendarfeed.fetch_scheduler",
    "calendarfeed.subscription_store",
)


def configure_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> None:
    """
    Configure logging levels for calendarfeed.

    Args:
        debug_mode: Whether to enable debug logging for calendarfeed modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        CALENDARFEED_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        CALENDARFEED_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("CALENDARFEED_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("CALENDARFEED_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    # Handlers are installed by calendarfeed._init_logging; only levels are set here
    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s - %(name)s - %(message)s"))
        root_logger.addHandler(handler)

    package_level = logging.DEBUG if final_debug else logging.INFO
    levels = dict(_QUIET_LOGGERS)
    for name in _PACKAGE_LOGGERS:
        levels[name] = package_level

    for logger_name, level in levels.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.debug("Debug logging enabled for calendarfeed modules")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ("calendarfeed", "httpx", "httpcore", "asyncio", "icalendar"):
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
