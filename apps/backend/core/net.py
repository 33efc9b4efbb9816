"""
HTTP client with retries, backoff and per-host throttling for source adapters.
"""
import os
import time
import asyncio
import logging
from typing import Optional, Dict, Tuple, Any
from urllib.parse import urlparse

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

logger = logging.getLogger(__name__)

DEFAULT_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 2
MAX_BODY_KB = 4096


class RateLimiter:
    """Simple token bucket rate limiter for throttling"""

    def __init__(self, requests_per_minute: int, burst: int = 5):
        self.requests_per_minute = max(1, requests_per_minute)
        self.burst = max(1, burst)
        # Refill rate: tokens per second
        self.refill_rate = self.requests_per_minute / 60.0
        self.tokens = float(self.burst)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def wait_if_needed(self):
        """Wait if necessary to respect rate limit"""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_refill
            self.tokens = min(self.burst, self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return

            wait_time = (1.0 - self.tokens) / self.refill_rate
            logger.debug(f"[rate_limiter] Waiting {wait_time:.2f}s for rate limit")
            await asyncio.sleep(wait_time)
            self.tokens = 0.0
            self.last_refill = time.monotonic()


class HTTPClient:
    """HTTP client with politeness, retries, and throttling support"""

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        requests_per_minute: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_agent = user_agent or os.getenv("JOBLINK_SCRAPER_UA", DEFAULT_UA)
        self.timeout = httpx.Timeout(timeout)
        self.requests_per_minute = requests_per_minute or int(os.getenv("JOBLINK_SCRAPER_RPM", "30"))
        # Injected in tests (httpx.MockTransport)
        self.transport = transport
        self._rate_limiters: Dict[str, RateLimiter] = {}

    def _get_rate_limiter(self, url: str) -> RateLimiter:
        host = urlparse(url).netloc or "default"
        if host not in self._rate_limiters:
            self._rate_limiters[host] = RateLimiter(self.requests_per_minute)
        return self._rate_limiters[host]

    def _get_headers(self, custom_headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.8,*/*;q=0.7",
            "Accept-Language": "en-US,en;q=0.5",
        }
        if custom_headers:
            headers.update(custom_headers)
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self.transport)

    @retry(
        stop=stop_after_attempt(MAX_RETRIES + 1),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        reraise=True
    )
    async def fetch(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Dict[str, str], str]:
        """
        GET a URL with retries on timeouts and connection errors.

        Returns:
            (status_code, headers, text)
        """
        await self._get_rate_limiter(url).wait_if_needed()

        async with self._client() as client:
            start_time = time.time()
            try:
                response = await client.get(url, params=params, headers=self._get_headers(headers))
            except httpx.TimeoutException as e:
                logger.error(f"[net] Timeout fetching {url}: {e}")
                raise
            except httpx.ConnectError as e:
                logger.error(f"[net] Connection error fetching {url}: {e}")
                raise

            elapsed_ms = int((time.time() - start_time) * 1000)
            content = response.content
            if len(content) > MAX_BODY_KB * 1024:
                logger.warning(f"[net] Content too large: {len(content)} bytes (limit: {MAX_BODY_KB}KB) - {url}")
                content = content[:MAX_BODY_KB * 1024]

            logger.info(f"[net] GET {response.status_code} {url} ({len(content)} bytes, {elapsed_ms}ms)")
            text = content.decode(response.encoding or "utf-8", errors="replace")
            return response.status_code, dict(response.headers), text

    async def head(self, url: str) -> Tuple[int, Dict[str, str]]:
        """Send HEAD request to check resource availability"""
        async with self._client() as client:
            try:
                response = await client.head(url, headers=self._get_headers())
            except Exception as e:
                logger.error(f"[net] HEAD request failed for {url}: {e}")
                raise
            logger.info(f"[net] HEAD {response.status_code} {url}")
            return response.status_code, dict(response.headers)


def parse_retry_after(headers: Dict[str, str]) -> Optional[int]:
    value = headers.get("retry-after") or headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        return None
