"""
Resilient HTTP Client for External API Calls

- Exponential backoff with jitter to prevent thundering herd
- 429 detection with Retry-After header respect
- Retry is opt-in per request: only idempotent calls may be replayed.
  A carrier write (order creation, AWB assignment, pickup) is sent exactly
  once; replaying it could create a duplicate shipment.

Non-2xx responses are returned, not raised. Callers decide how to map the
carrier's error body.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.5           # Base delay in seconds
    max_delay: float = 8.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)

    # Status codes that should trigger retry
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


class ResilientHTTPClient:
    """
    Async HTTP client with retry/backoff for idempotent requests.

    Usage:
        async with ResilientHTTPClient(base_url="https://api.example.com") as client:
            response = await client.get("/data")                   # retried
            response = await client.post("/orders", json=body, retry=False)
    """

    def __init__(
        self,
        base_url: str = "",
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self.transport = transport

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
                transport=self.transport,
            )
        return self

    async def close(self):
        """Close the client. Use this when not using context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
        """
        cfg = self.retry_config

        delay = cfg.base_delay * (cfg.exponential_base ** attempt)
        jitter = delay * cfg.jitter_factor * (2 * random.random() - 1)
        delay += jitter

        return max(0.0, min(delay, cfg.max_delay))

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Parse Retry-After header, returns seconds to wait."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None

        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass

        try:
            from email.utils import parsedate_to_datetime
            dt = parsedate_to_datetime(retry_after)
            return max(0.0, dt.timestamp() - time.time())
        except (ValueError, TypeError):
            pass

        return None

    async def request(
        self,
        method: str,
        url: str,
        retry: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """
        Make an HTTP request.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Target URL, relative to base_url
            retry: Replay on timeouts, connection errors and retryable statuses.
                Pass False for non-idempotent calls.
            **kwargs: Additional arguments passed to httpx

        Returns:
            httpx.Response (any status)

        Raises:
            httpx.RequestError: Transport failure on the final attempt
        """
        if not self._client:
            await self.init()

        cfg = self.retry_config
        attempts = cfg.max_retries + 1 if retry else 1
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            is_last = attempt == attempts - 1
            try:
                logger.debug(f"[HTTP] {method} {url} (attempt {attempt + 1}/{attempts})")
                response = await self._client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_exception = e
                if is_last:
                    break
                delay = self._calculate_backoff(attempt)
                logger.warning(f"[HTTP] {method} {url}: {type(e).__name__}, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            if response.status_code in cfg.retryable_status_codes and not is_last:
                delay = self._parse_retry_after(response)
                if delay is None:
                    delay = self._calculate_backoff(attempt)
                delay = min(delay, cfg.max_delay)
                logger.warning(
                    f"[HTTP] {method} {url}: status {response.status_code}, "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1})"
                )
                await asyncio.sleep(delay)
                continue

            return response

        logger.error(f"[HTTP] {method} {url}: all {attempts} attempts failed")
        raise last_exception

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """GET request (retried by default)."""
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        """POST request (pass retry=False for non-idempotent bodies)."""
        return await self.request("POST", url, **kwargs)
