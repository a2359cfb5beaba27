"""Rate limiting and retry utilities for calls to the recording API."""
import asyncio
import time
from typing import Any, Callable, Optional
import httpx
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.exceptions import TransferFailure

logger = get_logger("zoom.rate_limiter")


class RetryableStatus(Exception):
    """Raised for responses that should be retried with backoff (429 and 5xx)."""

    def __init__(self, status_code: int, wait_seconds: float = 0.0):
        self.status_code = status_code
        self.wait_seconds = wait_seconds
        super().__init__(f"Retryable HTTP status: {status_code}")


class RateLimiter:
    """Sliding window rate limiter for API calls."""

    def __init__(self, max_calls: int = 2, time_window: float = 1.0):
        self.max_calls = max_calls
        self.time_window = time_window
        self.calls = []
        self._lock = asyncio.Lock()

    @classmethod
    def per_second(cls, max_rps: float) -> "RateLimiter":
        # Fractional rates become one call per 1/rps seconds
        if max_rps >= 1:
            return cls(max_calls=int(max_rps), time_window=1.0)
        return cls(max_calls=1, time_window=1.0 / max_rps if max_rps > 0 else 1.0)

    async def acquire(self):
        """Acquire permission to make an API call, blocking if necessary."""
        while True:
            async with self._lock:
                now = time.monotonic()
                self.calls = [call_time for call_time in self.calls if now - call_time < self.time_window]

                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    return

                wait_time = self.time_window - (now - min(self.calls))

            if wait_time > 0:
                logger.debug("Rate limit reached, waiting",
                             wait_seconds=round(wait_time, 3),
                             current_calls=len(self.calls),
                             max_calls=self.max_calls)
                await asyncio.sleep(wait_time)


class ExponentialBackoff:
    """Exponential backoff utility for retrying failed requests."""

    def __init__(self,
                 max_retries: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 exponential_base: float = 2.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

    async def execute(self,
                      func: Callable,
                      *args,
                      retry_on_exceptions: tuple = (Exception,),
                      **kwargs) -> Any:
        """Execute function with exponential backoff retry logic."""
        for attempt in range(self.max_retries + 1):
            try:
                result = await func(*args, **kwargs)
                if attempt > 0:
                    logger.info("Request succeeded after retry", attempt=attempt)
                return result

            except retry_on_exceptions as e:
                if attempt == self.max_retries:
                    logger.error("All retry attempts exhausted",
                                 attempts=attempt + 1,
                                 final_error=str(e))
                    raise

                delay = self.delay_for(attempt)
                if isinstance(e, RetryableStatus) and e.wait_seconds:
                    delay = max(delay, min(e.wait_seconds, self.max_delay))

                logger.warning("Request failed, retrying with backoff",
                               attempt=attempt + 1,
                               max_attempts=self.max_retries + 1,
                               delay_seconds=delay,
                               error=str(e))
                await asyncio.sleep(delay)


class RateLimitedHTTPClient:
    """HTTP client wrapper with built-in rate limiting and retry logic.

    Transport errors, 429 and 5xx responses are retried with backoff. When the
    retries run out the failure surfaces as ``TransferFailure``. Every other
    status, 401/403 included, is returned to the caller untouched.
    """

    def __init__(self,
                 rate_limiter: Optional[RateLimiter] = None,
                 backoff: Optional[ExponentialBackoff] = None):
        self.rate_limiter = rate_limiter or RateLimiter()
        self.backoff = backoff or ExponentialBackoff(max_retries=3)
        self.logger = get_logger("zoom.http_client")

    async def request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        async def _make_request():
            await self.rate_limiter.acquire()

            self.logger.debug("Making HTTP request", method=method, url=url.split("?")[0])
            response = await client.request(method.upper(), url, **kwargs)

            if response.status_code == 429:
                retry_after = response.headers.get("retry-after", "5")
                try:
                    wait_time = float(retry_after)
                except ValueError:
                    wait_time = 5.0
                self.logger.warning("Server rate limit hit",
                                    wait_seconds=wait_time,
                                    status_code=response.status_code)
                raise RetryableStatus(response.status_code, wait_time)

            if response.status_code >= 500:
                self.logger.warning("Server error from provider", status_code=response.status_code)
                raise RetryableStatus(response.status_code)

            return response

        try:
            return await self.backoff.execute(
                _make_request,
                retry_on_exceptions=(httpx.TransportError, RetryableStatus),
            )
        except httpx.TransportError as e:
            raise TransferFailure(f"{method.upper()} {url.split('?')[0]} failed: {e}") from e
        except RetryableStatus as e:
            raise TransferFailure(f"{method.upper()} {url.split('?')[0]} returned {e.status_code}") from e


def build_api_http_client(max_rps: float, base_delay: float = 1.0) -> RateLimitedHTTPClient:
    return RateLimitedHTTPClient(
        rate_limiter=RateLimiter.per_second(max_rps),
        backoff=ExponentialBackoff(max_retries=2, base_delay=base_delay, max_delay=30.0),  # 3 attempts
    )
