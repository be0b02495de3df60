"""
URL Prober for liveness checking.

This module provides an async HTTP prober that classifies a single URL as
active, inactive or errored. Probing never raises: every transport failure
is converted into an errored result with a categorized error kind.
"""

import itertools
import socket
import time
from typing import Optional

import httpx

from .config import ProbeConfig
from .enums import ProbeErrorKind, ProbeStatus
from .models import ProbeResult, utc_now

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

# Client errors that still prove the server is up
ACTIVE_CLIENT_ERRORS = frozenset({401, 403, 429})

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
    "name resolution",
)

_REFUSED_MARKERS = (
    "connection refused",
    "connect call failed",
)


def is_active_status(status_code: int) -> bool:
    """Any response below 500 from a real server counts as reachable."""
    if status_code in ACTIVE_CLIENT_ERRORS:
        return True
    return 200 <= status_code < 500


def _causes(exc: BaseException):
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_transport_error(exc: BaseException) -> ProbeErrorKind:
    """
    Categorize a transport failure.

    Args:
        exc: The exception raised by the HTTP client

    Returns:
        timeout, dns_error, connection_refused or network_error
    """
    for error in _causes(exc):
        if isinstance(error, (httpx.TimeoutException, TimeoutError)):
            return ProbeErrorKind.TIMEOUT
        if isinstance(error, socket.gaierror):
            return ProbeErrorKind.DNS_ERROR
        if isinstance(error, ConnectionRefusedError):
            return ProbeErrorKind.CONNECTION_REFUSED

    message = " ".join(str(error) for error in _causes(exc)).lower()
    if any(marker in message for marker in _DNS_MARKERS):
        return ProbeErrorKind.DNS_ERROR
    if any(marker in message for marker in _REFUSED_MARKERS):
        return ProbeErrorKind.CONNECTION_REFUSED
    return ProbeErrorKind.NETWORK_ERROR


class UrlProber:
    """
    Async URL liveness prober.

    Issues one request per probe with an enforced timeout, a rotating
    User-Agent and cache-busting headers. Owns its ``httpx.AsyncClient``
    unless one is injected.
    """

    def __init__(
        self,
        config: Optional[ProbeConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the prober.

        Args:
            config: Probe configuration (method, timeout)
            client: Optional shared HTTP client; not closed by the prober
        """
        self._config = config or ProbeConfig()
        self._client = client
        self._owns_client = client is None
        self._user_agents = itertools.cycle(USER_AGENTS)

    async def __aenter__(self) -> "UrlProber":
        """Async context manager entry."""
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._config.timeout_seconds),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": next(self._user_agents),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
        }

    async def probe(
        self,
        url: str,
        timeout: Optional[float] = None,
        identity: Optional[str] = None,
    ) -> ProbeResult:
        """
        Probe a URL once.

        Args:
            url: Target URL
            timeout: Per-request timeout in seconds (defaults to the config)
            identity: Identity of the monitored item, carried into the result

        Returns:
            ProbeResult; never raises for transport or HTTP failures
        """
        client = self._ensure_client()
        timeout = timeout if timeout is not None else self._config.timeout_seconds
        start_time = time.perf_counter()

        try:
            response = await client.request(
                self._config.method,
                url,
                headers=self._headers(),
                timeout=httpx.Timeout(timeout),
            )
        except httpx.InvalidURL as e:
            return self._error_result(url, identity, start_time, ProbeErrorKind.NETWORK_ERROR, e)
        except Exception as e:
            return self._error_result(url, identity, start_time, classify_transport_error(e), e)

        status = (
            ProbeStatus.ACTIVE
            if is_active_status(response.status_code)
            else ProbeStatus.INACTIVE
        )
        return ProbeResult(
            identity=identity or url,
            url=url,
            status=status,
            status_code=response.status_code,
            latency_ms=self._elapsed_ms(start_time),
            at=utc_now(),
        )

    def _error_result(
        self,
        url: str,
        identity: Optional[str],
        start_time: float,
        kind: ProbeErrorKind,
        error: Exception,
    ) -> ProbeResult:
        return ProbeResult(
            identity=identity or url,
            url=url,
            status=ProbeStatus.ERROR,
            latency_ms=self._elapsed_ms(start_time),
            error_kind=kind.value,
            error=str(error) or type(error).__name__,
            at=utc_now(),
        )

    def _elapsed_ms(self, start_time: float) -> int:
        """Calculate elapsed time in whole milliseconds."""
        return int((time.perf_counter() - start_time) * 1000)

    async def close(self) -> None:
        """Close the HTTP client if this prober created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None if self._owns_client else self._client
