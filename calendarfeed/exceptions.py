"""Exception hierarchy for the calendar aggregation engine.

Configuration mistakes are raised synchronously to the caller. Retrieval and
format problems raised while fetching a subscription are caught by the fetch
scheduler and surfaced through the subscription's ``last_error`` instead.
"""

from __future__ import annotations

from typing import Optional


class CalendarFeedError(Exception):
    """Base exception for all calendarfeed errors."""


class ConfigurationError(CalendarFeedError, ValueError):
    """A subscription definition or config file is malformed.

    Raised when:
    - A remote location is not an http(s)/webcal URL with a hostname
    - A local location is empty or looks like a URL
    - Color, name or refresh interval fail validation
    - The config file top level is not a mapping

    Nothing is persisted when this is raised.
    """


class SubscriptionNotFoundError(ConfigurationError, KeyError):
    """No subscription exists with the requested id."""

    def __init__(self, subscription_id: str):
        super().__init__(f"Unknown subscription: {subscription_id}")
        self.subscription_id = subscription_id

    def __str__(self) -> str:
        # KeyError would otherwise render the message with quotes
        return str(self.args[0])


class RetrievalError(CalendarFeedError):
    """Network or filesystem failure while acquiring a subscription's bytes."""


class ICSAuthError(RetrievalError):
    """The remote server rejected the request (HTTP 401/403)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ICSHTTPError(RetrievalError):
    """The remote server answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ICSNetworkError(RetrievalError):
    """DNS, connection or TLS failure."""


class ICSTimeoutError(RetrievalError):
    """The remote server did not answer within the configured timeout."""


class ScopeError(RetrievalError):
    """A local source resolves to a path outside the managed root.

    Kept distinct from a plain not-found so the user is told where the file
    has to live.
    """

    def __init__(self, location: str, managed_root: str):
        super().__init__(
            f"Local calendar file '{location}' is outside the managed root "
            f"'{managed_root}'. Local ICS files must be inside the managed root; "
            f"move the file there or use a path relative to it."
        )
        self.location = location
        self.managed_root = managed_root


class FormatError(CalendarFeedError):
    """An event (or a whole payload) could not be interpreted as iCalendar data.

    A single bad event inside an otherwise valid payload is dropped and counted;
    this exception never reaches callers of the parser in that case.
    """
