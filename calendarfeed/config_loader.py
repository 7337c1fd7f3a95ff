"""calendarfeed.config_loader

Configuration for the calendar engine.

- YAML config file (JSON is accepted too, being valid YAML).
- ``.env`` defaults and ``CALENDARFEED_*`` environment overrides applied on top.
- Exposes a typed dataclass ``Config`` and a ``load_config()`` helper.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .timezone_utils import resolve_timezone

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class Config:
    """Typed configuration for calendarfeed.

    Fields:
        managed_root: directory local ICS files must live in
        subscriptions_file: optional JSON file the subscription store persists to
        default_timezone: IANA zone for floating times without a usable zone hint
        request_timeout: HTTP read timeout in seconds
        max_retries: retries after the first attempt for timeouts/network errors
        retry_backoff_factor: base of the exponential retry backoff
        rrule_expansion_days: days after now to expand RRULEs into
        rrule_lookback_days: days before now to expand RRULEs into
        max_occurrences_per_rule: cap on generated instances per RRULE
        log_level: logging level name
        subscriptions: seed subscription mappings added on engine start-up
    """

    managed_root: str = field(default_factory=lambda: str(Path.cwd()))
    subscriptions_file: str | None = None
    default_timezone: str | None = None
    request_timeout: int = 30
    max_retries: int = 3
    retry_backoff_factor: float = 1.5
    rrule_expansion_days: int = 365
    rrule_lookback_days: int = 30
    max_occurrences_per_rule: int = 250
    log_level: str = "INFO"
    subscriptions: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Config:
        """Create Config from a plain mapping, applying defaults and validation.

        Numeric values are coerced (negative ones clamped to defaults), the log
        level is uppercased and an unknown timezone name is dropped with a warning.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int, minimum: int = 0) -> int:
            raw = data.get(key, default)
            try:
                value = int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default
            if value < minimum:
                logger.warning("Config %s=%d below minimum %d; using default %d", key, value, minimum, default)
                return default
            return value

        raw_backoff = data.get("retry_backoff_factor", 1.5)
        try:
            backoff = float(raw_backoff)
        except (TypeError, ValueError):
            logger.warning("Config retry_backoff_factor=%r is not a number; using 1.5", raw_backoff)
            backoff = 1.5
        if backoff < 1.0:
            logger.warning("Config retry_backoff_factor %.2f below 1.0; coercing to 1.0", backoff)
            backoff = 1.0

        default_tz = data.get("default_timezone")
        if default_tz is not None:
            default_tz = str(default_tz).strip() or None
        if default_tz and resolve_timezone(default_tz) is None:
            logger.warning("Config default_timezone %r is unknown; ignoring", default_tz)
            default_tz = None

        log_level = str(data.get("log_level") or "INFO").upper()
        if log_level not in _LOG_LEVELS:
            logger.warning("Config log_level %r is not a level name; using INFO", log_level)
            log_level = "INFO"

        subscriptions_raw = data.get("subscriptions") or []
        if not isinstance(subscriptions_raw, list):
            raise ConfigurationError("Config `subscriptions` must be a list of mappings")
        for entry in subscriptions_raw:
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Config subscription entry must be a mapping, got {entry!r}")

        managed_root = data.get("managed_root") or str(Path.cwd())
        subscriptions_file = data.get("subscriptions_file")

        return cls(
            managed_root=str(Path(str(managed_root)).expanduser()),
            subscriptions_file=str(subscriptions_file) if subscriptions_file else None,
            default_timezone=default_tz,
            request_timeout=_coerce_int("request_timeout", 30, minimum=1),
            max_retries=_coerce_int("max_retries", 3),
            retry_backoff_factor=backoff,
            rrule_expansion_days=_coerce_int("rrule_expansion_days", 365),
            rrule_lookback_days=_coerce_int("rrule_lookback_days", 30),
            max_occurrences_per_rule=_coerce_int("max_occurrences_per_rule", 250, minimum=1),
            log_level=log_level,
            subscriptions=[dict(entry) for entry in subscriptions_raw],
        )


def load_env_file(env_file_path: Path | None = None) -> list[str]:
    """Load KEY=VALUE pairs from a .env file into the environment.

    Only sets variables that are not already in the environment.

    Returns:
        Keys that were set from the file
    """
    path = env_file_path or Path.cwd() / ".env"
    if not path.exists():
        logger.debug("No .env file found at %s", path)
        return []

    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        logger.debug("Failed to read .env file (continuing): %s", path, exc_info=True)
        return []

    set_keys = []
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = val
            set_keys.append(key)

    if set_keys:
        logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))
    return set_keys


def build_config_from_env() -> dict[str, Any]:
    """Collect overrides from the environment.

    Recognizes:
    - CALENDARFEED_MANAGED_ROOT -> 'managed_root'
    - CALENDARFEED_SUBSCRIPTIONS_FILE -> 'subscriptions_file'
    - CALENDARFEED_DEFAULT_TIMEZONE -> 'default_timezone'
    - CALENDARFEED_REQUEST_TIMEOUT -> 'request_timeout' (int)
    - CALENDARFEED_LOG_LEVEL -> 'log_level'
    """
    cfg: dict[str, Any] = {}

    for env_key, cfg_key in (
        ("CALENDARFEED_MANAGED_ROOT", "managed_root"),
        ("CALENDARFEED_SUBSCRIPTIONS_FILE", "subscriptions_file"),
        ("CALENDARFEED_DEFAULT_TIMEZONE", "default_timezone"),
        ("CALENDARFEED_LOG_LEVEL", "log_level"),
    ):
        value = os.environ.get(env_key)
        if value:
            cfg[cfg_key] = value

    timeout = os.environ.get("CALENDARFEED_REQUEST_TIMEOUT")
    if timeout:
        try:
            cfg["request_timeout"] = int(timeout)
        except ValueError:
            logger.warning("Invalid CALENDARFEED_REQUEST_TIMEOUT=%r; ignoring", timeout)

    return cfg


def _load_yaml(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Config file {path} is not valid YAML: {exc}") from exc
    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_config(path: str | Path | None = None, use_env: bool = True) -> Config:
    """Load configuration from a YAML file plus environment overrides.

    Args:
        path: Config file path; defaults to ./calendarfeed.yaml
        use_env: Apply .env defaults and CALENDARFEED_* overrides

    Returns:
        Config instance (defaults when the file is missing)

    Raises:
        ConfigurationError: If the file is not valid YAML or its top level is not a mapping
    """
    p = Path(path) if path else Path.cwd() / "calendarfeed.yaml"
    logger.debug("Attempting to load config from %s", p)

    raw: dict[str, Any] = {}
    if p.exists():
        loaded = _load_yaml(p)
        if not isinstance(loaded, dict):
            logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, loaded)
            raise ConfigurationError("Config file must contain a mapping at top level")
        raw = loaded
        logger.info("Loaded configuration from %s", p)
    else:
        logger.info("Config file %s not found; using defaults", p)

    if use_env:
        load_env_file()
        raw = {**raw, **build_config_from_env()}

    cfg = Config.from_dict(raw)
    logger.debug("Configuration values: %s", cfg)
    return cfg
