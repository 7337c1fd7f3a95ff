"""Acquisition of subscription bytes - remote HTTP(S) feeds and local files."""

import asyncio
import logging
import random
from collections.abc import Awaitable
from pathlib import Path
from typing import Any, Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from .exceptions import (
    ICSAuthError,
    ICSHTTPError,
    ICSNetworkError,
    ICSTimeoutError,
    RetrievalError,
    ScopeError,
)
from .http_client import SharedHTTPClient, host_of
from .models import ICSResponse, SourceKind, Subscription, SyncState

logger = logging.getLogger(__name__)

# Backoff calculation constants
MAX_BACKOFF_SECONDS = 30.0
JITTER_MIN_FACTOR = 0.1
JITTER_MAX_FACTOR = 0.3

_CORRUPTION_MARKERS = ("Connection broken", "Broken pipe", "Connection reset")

SleepFunc = Callable[[float], Awaitable[Any]]


def to_fetch_url(location: str) -> str:
    """Rewrite ``webcal://`` and ``webcals://`` locations to ``https://``."""
    parsed = urlparse(location)
    if parsed.scheme.lower() in ("webcal", "webcals"):
        return urlunparse(parsed._replace(scheme="https"))
    return location


def get_conditional_headers(
    etag: Optional[str] = None, last_modified: Optional[str] = None
) -> dict[str, str]:
    """Build conditional request headers from a previous response's validators."""
    headers = {}

    if etag:
        headers["If-None-Match"] = etag

    if last_modified:
        headers["If-Modified-Since"] = last_modified

    return headers


class RemoteICSFetcher:
    """Downloads ICS feeds over HTTP(S) with retry and conditional requests."""

    def __init__(
        self,
        http: SharedHTTPClient,
        max_retries: int = 3,
        retry_backoff_factor: float = 1.5,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            http: Shared client holder
            max_retries: Retries after the first attempt for timeouts and network errors
            retry_backoff_factor: Base of the exponential backoff
            sleep: Awaitable sleep used between retries (``asyncio.sleep`` by default)
        """
        self.http = http
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff_factor = float(retry_backoff_factor)
        self._sleep = sleep or asyncio.sleep

    async def fetch(
        self,
        location: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> ICSResponse:
        """Download ICS content.

        Args:
            location: http(s) or webcal URL
            etag: ETag from the previous successful response
            last_modified: Last-Modified from the previous successful response

        Returns:
            ICSResponse; ``is_not_modified`` is True for a 304

        Raises:
            ICSAuthError: HTTP 401/403
            ICSHTTPError: Any other non-success status
            ICSTimeoutError: Timeouts after all retries
            ICSNetworkError: Connection failures after all retries
            RetrievalError: Empty body or any other transport failure
        """
        url = to_fetch_url(location)
        headers = get_conditional_headers(etag, last_modified)
        logger.debug("Fetching ICS from %s", url)

        try:
            response = await self._request_with_retry(url, headers)
        except httpx.TimeoutException as e:
            raise ICSTimeoutError(
                f"Request to {url} timed out after {self.http.request_timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise ICSAuthError(
                    f"Access to {url} denied (HTTP {status}) - check the calendar's sharing settings",
                    status,
                ) from e
            raise ICSHTTPError(f"HTTP {status}: {e.response.reason_phrase} for {url}", status) from e
        except httpx.NetworkError as e:
            raise ICSNetworkError(f"Network error fetching {url}: {e}") from e
        except httpx.HTTPError as e:
            raise RetrievalError(f"Unexpected error fetching {url}: {e}") from e

        return self._create_response(response, url)

    def _calculate_backoff(self, attempt: int, corruption_detected: bool) -> float:
        """Exponential backoff with jitter; doubled (and capped) after corruption signs."""
        base_backoff = self.retry_backoff_factor**attempt

        if corruption_detected:
            base_backoff = min(base_backoff * 2, MAX_BACKOFF_SECONDS)

        jitter = random.uniform(JITTER_MIN_FACTOR, JITTER_MAX_FACTOR) * base_backoff  # nosec B311 - jitter not cryptographic
        return base_backoff + jitter

    async def _request_with_retry(self, url: str, headers: dict[str, str]) -> httpx.Response:
        attempt = 0
        corruption_detected = False
        host = host_of(url)

        while True:
            try:
                async with self.http.lease(host) as client:
                    response = await client.get(url, headers=headers)

                if response.status_code == 304:
                    logger.debug("ICS content not modified (304) for %s", url)
                    await self.http.record_success(host)
                    return response

                response.raise_for_status()
                await self.http.record_success(host)

                logger.debug(
                    "Fetched ICS from %s (attempt %d) - %d bytes",
                    url,
                    attempt + 1,
                    len(response.content),
                )
                return response

            except httpx.HTTPStatusError:
                # Status errors are answers, not transport failures
                raise

            except (httpx.TimeoutException, httpx.NetworkError) as e:
                await self.http.record_error(host)

                if any(marker in str(e) for marker in _CORRUPTION_MARKERS):
                    corruption_detected = True

                if attempt >= self.max_retries:
                    logger.warning(
                        "All %d attempts failed for %s: %s", attempt + 1, url, e
                    )
                    raise

                backoff_time = self._calculate_backoff(attempt, corruption_detected)
                logger.warning(
                    "Request failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1,
                    self.max_retries + 1,
                    backoff_time,
                    e,
                )
                await self._sleep(backoff_time)
                attempt += 1

    def _create_response(self, http_response: httpx.Response, url: str) -> ICSResponse:
        headers = http_response.headers

        if http_response.status_code == 304:
            return ICSResponse(
                status_code=304,
                etag=headers.get("etag"),
                last_modified=headers.get("last-modified"),
            )

        content = http_response.text
        content_type = headers.get("content-type", "").lower()
        if content_type and not any(ct in content_type for ct in ("text/calendar", "text/plain")):
            logger.debug("Unexpected content type %s from %s", content_type, url)

        if not content or not content.strip():
            raise RetrievalError(f"Empty content received from {url}")

        return ICSResponse(
            content=content,
            status_code=http_response.status_code,
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
        )


def resolve_local_path(location: str, managed_root: Union[str, Path]) -> Path:
    """Resolve a local subscription location against the managed root.

    Relative locations are joined onto the root. Symlinks and ``..`` segments
    are resolved before the containment check.

    Raises:
        ScopeError: If the resolved path is not inside the managed root
    """
    root = Path(managed_root).expanduser().resolve()
    candidate = Path(location).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()

    if resolved != root and root not in resolved.parents:
        raise ScopeError(location, str(root))
    return resolved


def normalize_local_location(location: str, managed_root: Union[str, Path]) -> str:
    """Turn an absolute path inside the managed root into a root-relative one.

    Anything else (relative paths, absolute paths outside the root) is returned
    unchanged; the containment check happens at fetch time.
    """
    path = Path(location).expanduser()
    if not path.is_absolute():
        return location

    root = Path(managed_root).expanduser().resolve()
    try:
        return path.resolve().relative_to(root).as_posix()
    except ValueError:
        return location


class LocalICSReader:
    """Reads ICS files that live under the managed root."""

    def __init__(self, managed_root: Union[str, Path]):
        self.managed_root = Path(managed_root)

    async def read(self, location: str) -> ICSResponse:
        """Read a local ICS file.

        Raises:
            ScopeError: The path lies outside the managed root
            RetrievalError: The file does not exist or cannot be read
        """
        path = resolve_local_path(location, self.managed_root)
        if not path.is_file():
            raise RetrievalError(
                f"Local calendar file '{location}' not found in managed root '{self.managed_root}'"
            )

        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            raise RetrievalError(f"Could not read local calendar file '{location}': {e}") from e

        logger.debug("Read %d characters from %s", len(content), path)
        return ICSResponse(content=content)


class SourceFetcher:
    """Dispatches a subscription to the remote fetcher or the local reader."""

    def __init__(self, remote: RemoteICSFetcher, local: LocalICSReader):
        self.remote = remote
        self.local = local

    @classmethod
    def from_config(
        cls,
        config: Any,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> "SourceFetcher":
        """Build a fetcher from a ``Config``-like object."""
        http = SharedHTTPClient(
            request_timeout=float(getattr(config, "request_timeout", 30)),
            transport=transport,
        )
        remote = RemoteICSFetcher(
            http,
            max_retries=int(getattr(config, "max_retries", 3)),
            retry_backoff_factor=float(getattr(config, "retry_backoff_factor", 1.5)),
            sleep=sleep,
        )
        return cls(remote, LocalICSReader(getattr(config, "managed_root", ".")))

    async def fetch(self, subscription: Subscription, state: Optional[SyncState] = None) -> ICSResponse:
        """Acquire the bytes for one subscription."""
        if subscription.source_kind == SourceKind.REMOTE:
            return await self.remote.fetch(
                subscription.location,
                etag=state.etag if state else None,
                last_modified=state.last_modified if state else None,
            )
        return await self.local.read(subscription.location)

    async def aclose(self) -> None:
        await self.remote.http.aclose()
