"""Command-line entry for calendarfeed.

``--once`` fetches every enabled subscription and prints the aggregated events
as JSON; without it the scheduler runs until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional

from dateutil import parser as date_parser

from . import _init_logging
from .config_loader import load_config
from .engine import CalendarEngine
from .exceptions import ConfigurationError
from .logging_config import configure_logging
from .models import AggregationResult, EventTime

logger = logging.getLogger(__name__)


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the calendarfeed CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="calendarfeed",
        description="Aggregate ICS subscriptions into one ordered event stream",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m calendarfeed --config calendarfeed.yaml --once
  python -m calendarfeed --once --start 2025-01-01 --end 2025-01-31
  python -m calendarfeed --debug                 # run the scheduler until Ctrl+C
        """,
    )
    parser.add_argument("--config", metavar="PATH", help="YAML config file (default: ./calendarfeed.yaml)")
    parser.add_argument("--once", action="store_true", help="Fetch once, print JSON and exit")
    parser.add_argument("--start", metavar="ISO", help="Range start (date or date-time) for --once output")
    parser.add_argument("--end", metavar="ISO", help="Range end (date or date-time) for --once output")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def parse_bound(value: Optional[str]) -> Optional[EventTime]:
    """Parse a CLI range bound; a bare YYYY-MM-DD stays a calendar date."""
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid ISO date/time {value!r}: {e}") from e
    if len(value.strip()) == 10:
        return parsed.date()
    return parsed


def result_to_json(result: AggregationResult) -> str:
    return json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False)


async def _run_once(
    engine: CalendarEngine, start: Optional[EventTime], end: Optional[EventTime]
) -> AggregationResult:
    async with engine:
        outcome = await engine.fetch_all()
        for subscription_id, ok in outcome.items():
            if not ok:
                logger.warning(
                    "Subscription %s: %s", subscription_id, engine.get_last_error(subscription_id)
                )
        return engine.collect(start=start, end=end)


async def _serve(engine: CalendarEngine) -> None:
    async with engine:
        await engine.start()
        logger.info("Scheduler running for %d subscriptions", len(engine.list_subscriptions()))
        await asyncio.Event().wait()


def main(argv: Optional[list[str]] = None) -> int:
    """Run the calendarfeed CLI and return the exit code."""
    args = _create_parser().parse_args(argv)

    _init_logging(os.environ.get("CALENDARFEED_LOG_LEVEL"))

    try:
        config = load_config(args.config)
        start = parse_bound(args.start)
        end = parse_bound(args.end)
    except (ConfigurationError, argparse.ArgumentTypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    configure_logging(debug_mode=args.debug or config.log_level == "DEBUG")
    if not args.debug:
        logging.getLogger().setLevel(config.log_level)

    engine = CalendarEngine(config)

    if args.once:
        result = asyncio.run(_run_once(engine, start, end))
        print(result_to_json(result))
        return 0

    try:
        asyncio.run(_serve(engine))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130  # 128 + SIGINT
    return 0


if __name__ == "__main__":
    sys.exit(main())
