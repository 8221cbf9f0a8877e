"""
Rate-limited HTTP client for supplier APIs

Every outbound call to one supplier passes through that supplier's RateGate:
requests are serialized FIFO and consecutive request starts are spaced at
least `min_interval` seconds apart. Each call carries a hard timeout.

Unlike a generic resilient client this one NEVER retries. A timeout, a
network failure, a 429 or a non-2xx response is converted into the
supplier error taxonomy and handed back to the caller, which decides
whether to try again on a later pass.

v1.1.0: Retry-After parsing accepts both delta-seconds and HTTP dates
v1.0.0: Initial per-supplier gate
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from dropship_engine.core.config import settings
from dropship_engine.core.exceptions import (
    MalformedResponseError,
    RateLimitedError,
    RemoteError,
    SupplierTimeoutError,
    SupplierTransportError,
)

logger = logging.getLogger(__name__)

BODY_EXCERPT_LENGTH = 200
DEFAULT_RETRY_AFTER_SECONDS = 1.0


class RateGate:
    """
    Minimum-spacing gate for one supplier.

    The lock is held for the whole request, so requests leave in the order
    they queued and never overlap. Start timestamps are taken from `clock`
    after any sleep, which makes the spacing checkable with a fake clock.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "supplier",
    ):
        self.min_interval = min_interval
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: Optional[float] = None

    def seconds_until_open(self) -> float:
        if self._last_start is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - self._last_start))

    @asynccontextmanager
    async def slot(self):
        """Acquire the gate, wait out the remaining spacing, then yield."""
        async with self._lock:
            wait = self.seconds_until_open()
            if wait > 0:
                logger.debug(f"[RATE_GATE] {self.name}: waiting {wait:.2f}s")
                await self._sleep(wait)
            self._last_start = self._clock()
            yield


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Parse Retry-After header, returns seconds from now."""
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return None

    try:
        # Try as seconds first
        return max(0.0, float(retry_after))
    except ValueError:
        pass

    try:
        # Try as HTTP date
        dt = parsedate_to_datetime(retry_after)
        return max(0.0, dt.timestamp() - time.time())
    except (ValueError, TypeError):
        pass

    return None


class SupplierHTTPClient:
    """
    Async HTTP client bound to one supplier base URL and one RateGate.

    Usage:
        async with SupplierHTTPClient("https://api.example.com/", name="cj") as client:
            payload = await client.request_json("GET", "v1/product/list")
    """

    def __init__(
        self,
        base_url: str,
        name: str = "supplier",
        min_request_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        gate: Optional[RateGate] = None,
    ):
        self.base_url = base_url
        self.name = name
        self.timeout = timeout if timeout is not None else settings.SUPPLIER_REQUEST_TIMEOUT_SECONDS
        self.default_headers = {
            "User-Agent": settings.SUPPLIER_USER_AGENT,
            "Accept": "application/json",
            **(default_headers or {}),
        }
        self.gate = gate or RateGate(
            min_request_interval
            if min_request_interval is not None
            else settings.SUPPLIER_MIN_REQUEST_INTERVAL_SECONDS,
            name=name,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self

    async def close(self):
        """Close the client. Use this when not using context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send one request through the gate.

        Raises:
            SupplierTimeoutError: the call exceeded `timeout`
            SupplierTransportError: network-level failure
            RateLimitedError: HTTP 429
            RemoteError: any other non-2xx status
        """
        await self.init()

        async with self.gate.slot():
            try:
                response = await asyncio.wait_for(
                    self._client.request(method, path, params=params, json=json, headers=headers),
                    timeout=self.timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                logger.warning(f"[RATE_GATE] {self.name}: {method} {path} timed out after {self.timeout}s")
                raise SupplierTimeoutError(
                    f"{self.name} {method} {path} timed out after {self.timeout}s",
                    details={"path": path},
                ) from e
            except httpx.TransportError as e:
                logger.warning(f"[RATE_GATE] {self.name}: {method} {path} transport error: {e}")
                raise SupplierTransportError(
                    f"{self.name} {method} {path} failed: {e}",
                    details={"path": path},
                ) from e

        logger.debug(f"[RATE_GATE] {self.name}: {method} {path} -> {response.status_code}")

        if response.status_code == 429:
            wait = parse_retry_after(response)
            if wait is None:
                wait = DEFAULT_RETRY_AFTER_SECONDS
            logger.warning(f"[429] {self.name}: rate limited, retry after {wait:.1f}s")
            raise RateLimitedError(
                f"{self.name} rate limited (HTTP 429), retry after {wait:.0f}s",
                wait_seconds=wait,
            )

        if not response.is_success:
            excerpt = response.text[:BODY_EXCERPT_LENGTH]
            raise RemoteError(
                f"{self.name} {method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                body_excerpt=excerpt,
            )

        return response

    async def request_json(self, method: str, path: str, **kwargs) -> Any:
        """Like request(), but returns the decoded JSON body."""
        response = await self.request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.name} {method} {path} returned non-JSON body",
                details={"body_excerpt": response.text[:BODY_EXCERPT_LENGTH]},
            ) from e
