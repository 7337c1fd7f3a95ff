"""Shared HTTP client for remote ICS subscriptions.

One ``httpx.AsyncClient`` is reused across every remote fetch so connections
are pooled. Consecutive errors are tracked per host; once a host looks
unhealthy the next lease for it swaps in a fresh client. The replaced client
is retired and only closed after its last outstanding lease is released, so
requests for other hosts never lose their connection mid-flight.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
)

# Some calendar hosts answer bare clients with an HTML login page
DEFAULT_BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.8",
}

# Health check thresholds
HEALTH_ERROR_THRESHOLD = 3  # Recreate client after 3 consecutive errors for one host
HEALTH_TIMEOUT_SECONDS = 300


def build_timeout(request_timeout: float) -> httpx.Timeout:
    """Timeout with a short connect phase and ``request_timeout`` for reads."""
    return httpx.Timeout(
        connect=min(10.0, request_timeout),
        read=request_timeout,
        write=10.0,
        pool=request_timeout,
    )


def host_of(url: str) -> str:
    """Health-tracking key for ``url``: its lowercased host."""
    try:
        return httpx.URL(url).host.lower()
    except httpx.InvalidURL:
        return ""


class SharedHTTPClient:
    """Lazily created, health-checked ``httpx.AsyncClient``."""

    def __init__(
        self,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        limits: Optional[httpx.Limits] = None,
    ):
        """Initialize the client holder.

        Args:
            request_timeout: Read timeout in seconds
            transport: Optional transport (``httpx.MockTransport`` in tests).
                It is owned by the caller, so retired clients are dropped
                without closing it.
            limits: Connection limits (``DEFAULT_LIMITS`` when omitted)
        """
        self.request_timeout = request_timeout
        self._transport = transport
        self._limits = limits or DEFAULT_LIMITS
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._leases: dict[int, int] = {}
        self._retired: dict[int, httpx.AsyncClient] = {}
        self._error_counts: dict[str, int] = {}
        self._last_error_times: dict[str, float] = {}

    def error_count(self, host: str) -> int:
        return self._error_counts.get(host, 0)

    def in_flight(self, client: httpx.AsyncClient) -> int:
        """Number of outstanding leases on ``client``."""
        return self._leases.get(id(client), 0)

    @asynccontextmanager
    async def lease(self, host: str = "") -> AsyncIterator[httpx.AsyncClient]:
        """Borrow the shared client for one request to ``host``.

        A client replaced while leased stays open until the lease is released.
        """
        async with self._lock:
            await self._recreate_if_unhealthy(host)
            client = self._ensure_client()
            self._leases[id(client)] = self._leases.get(id(client), 0) + 1

        try:
            yield client
        finally:
            async with self._lock:
                remaining = self._leases[id(client)] - 1
                if remaining:
                    self._leases[id(client)] = remaining
                else:
                    del self._leases[id(client)]
                    retired = self._retired.pop(id(client), None)
                    if retired is not None:
                        await self._close(retired, "retired")

    async def record_error(self, host: str = "") -> None:
        async with self._lock:
            self._error_counts[host] = self._error_counts.get(host, 0) + 1
            self._last_error_times[host] = time.time()
            logger.debug(
                "Recorded HTTP client error for %s, total errors: %d",
                host or "<unknown host>",
                self._error_counts[host],
            )

    async def record_success(self, host: str = "") -> None:
        async with self._lock:
            self._error_counts.pop(host, None)
            self._last_error_times.pop(host, None)

    async def aclose(self) -> None:
        """Close the current and any retired clients; a later lease opens a new one."""
        async with self._lock:
            if self._client is not None:
                await self._close(self._client, "shared")
            for client in self._retired.values():
                await self._close(client, "retired")
            self._client = None
            self._retired.clear()
            self._leases.clear()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            logger.debug(
                "Creating shared HTTP client (max_connections=%d, timeout=%.1fs)",
                self._limits.max_connections,
                self.request_timeout,
            )
            self._client = httpx.AsyncClient(
                limits=self._limits,
                timeout=build_timeout(self.request_timeout),
                follow_redirects=True,
                headers=DEFAULT_BROWSER_HEADERS,
                transport=self._transport,
            )
        return self._client

    async def _recreate_if_unhealthy(self, host: str) -> None:
        if self._client is None:
            return

        errors = self._error_counts.get(host, 0)
        unhealthy = (
            errors >= HEALTH_ERROR_THRESHOLD
            and (time.time() - self._last_error_times.get(host, 0.0)) < HEALTH_TIMEOUT_SECONDS
        )
        if not unhealthy:
            return

        logger.warning(
            "Recreating HTTP client after %d consecutive errors for %s", errors, host or "<unknown host>"
        )
        old = self._client
        self._client = None
        self._error_counts.pop(host, None)
        self._last_error_times.pop(host, None)

        if self._leases.get(id(old)):
            logger.debug("Deferring close of replaced HTTP client until %d leases finish", self._leases[id(old)])
            self._retired[id(old)] = old
        else:
            await self._close(old, "replaced")

    async def _close(self, client: httpx.AsyncClient, label: str) -> None:
        if client.is_closed:
            return
        if self._transport is not None and client is not self._client:
            # The injected transport is still serving the current client
            logger.debug("Dropping %s HTTP client without closing the shared transport", label)
            return
        try:
            await client.aclose()
            logger.debug("Closed %s HTTP client", label)
        except httpx.HTTPError as e:
            logger.warning("Error closing %s HTTP client: %s", label, e)
