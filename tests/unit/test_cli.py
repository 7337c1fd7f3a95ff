"""Unit tests for the calendarfeed command-line entry point."""

import argparse
import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from calendarfeed.__main__ import main, parse_bound
from calendarfeed.logging_config import configure_logging, get_logging_status

pytestmark = [pytest.mark.unit]

ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "BEGIN:VEVENT",
        "UID:review@test",
        "DTSTART:20260305T150000Z",
        "DTEND:20260305T160000Z",
        "SUMMARY:Quarterly review",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:later@test",
        "DTSTART:20260420T150000Z",
        "SUMMARY:Out of range",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
)


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    previous_level = root.level
    previous_handlers = list(root.handlers)
    yield
    root.setLevel(previous_level)
    for handler in list(root.handlers):
        if handler not in previous_handlers:
            root.removeHandler(handler)


class TestParseBound:
    def test_parse_bound_when_date_only_then_calendar_date(self) -> None:
        assert parse_bound("2026-03-01") == date(2026, 3, 1)

    def test_parse_bound_when_datetime_then_datetime(self) -> None:
        assert parse_bound("2026-03-01T09:30:00Z") == datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

    def test_parse_bound_when_empty_then_none(self) -> None:
        assert parse_bound(None) is None

    def test_parse_bound_when_garbage_then_argument_error(self) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            parse_bound("next tuesday")


class TestMain:
    def test_main_when_once_then_prints_aggregated_json(
        self, tmp_path: Path, managed_root: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        (managed_root / "work.ics").write_text(ICS, encoding="utf-8")
        config_path = tmp_path / "calendarfeed.yaml"
        config_path.write_text(
            "\n".join(
                [
                    f"managed_root: {managed_root}",
                    "subscriptions:",
                    "  - id: work",
                    "    name: Work",
                    "    source_kind: local",
                    "    location: work.ics",
                ]
            ),
            encoding="utf-8",
        )

        exit_code = main(["--config", str(config_path), "--once", "--start", "2026-03-01", "--end", "2026-03-31"])

        assert exit_code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["total"] == 1
        assert payload["sources"] == {"ics": 1}
        assert payload["events"][0]["provider"] == "ics"
        assert payload["events"][0]["event"]["title"] == "Quarterly review"

    def test_main_when_config_invalid_then_exit_code_2(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        config_path = tmp_path / "calendarfeed.yaml"
        config_path.write_text("- not a mapping\n", encoding="utf-8")

        assert main(["--config", str(config_path), "--once"]) == 2
        assert "Error:" in capsys.readouterr().err

    def test_main_when_bound_invalid_then_exit_code_2(self, tmp_path: Path) -> None:
        assert main(["--config", str(tmp_path / "absent.yaml"), "--once", "--start", "soon"]) == 2


class TestLoggingConfig:
    def test_configure_logging_when_debug_then_package_loggers_debug(self) -> None:
        configure_logging(debug_mode=True)

        status = get_logging_status()
        assert status["calendarfeed"] == "DEBUG"
        assert status["httpx"] == "WARNING"

    def test_configure_logging_when_env_debug_then_forced(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CALENDARFEED_DEBUG", "true")

        configure_logging(debug_mode=False)

        assert logging.getLogger("calendarfeed.fetcher").level == logging.DEBUG

    def test_configure_logging_when_force_debug_false_then_info(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CALENDARFEED_DEBUG", "1")

        configure_logging(debug_mode=True, force_debug=False)

        assert get_logging_status()["calendarfeed"] == "INFO"
