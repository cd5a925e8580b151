"""
Async HTTP client for the review site built on httpx.

``fetch`` never raises: every failure comes back as a ``FetchResult`` with
``success=False``. Requests are rate limited with a token bucket and retried
with exponential backoff on timeouts, transport errors, 429 and 5xx.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Deque, Dict, List, Optional

import httpx
from fake_useragent import UserAgent

from core.exponential_backoff import ErrorType, ExponentialBackoff, classify_status
from core.types import FetchResult

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

HISTORY_LIMIT = 1000


class TokenBucket:
    """Token bucket rate limiter for async callers."""

    def __init__(self, capacity: int, refill_rate_per_second: float):
        self.capacity = capacity
        self.refill_rate = refill_rate_per_second
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_consume(self) -> bool:
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    async def wait_for_token(self) -> None:
        async with self._lock:
            while not self.try_consume():
                await asyncio.sleep(max(0.01, (1 - self.tokens) / self.refill_rate))


@dataclass
class RequestHistoryEntry:
    url: str
    timestamp: datetime
    success: bool
    duration: float
    retry_count: int
    status_code: Optional[int] = None


class CatalogHttpClient:
    """
    Rate-limited httpx client returning ``FetchResult`` objects.

    Example:
        >>> async with CatalogHttpClient() as client:
        ...     result = await client.fetch("https://htreviews.org/tobaccos/brands")
    """

    def __init__(
        self,
        request_timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay_base: float = 1.0,
        retry_delay_max: float = 30.0,
        rate_limit_rps: float = 2.0,
        rate_limit_burst: int = 5,
        user_agents: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.backoff = ExponentialBackoff(
            {
                "base_delay_seconds": retry_delay_base,
                "max_delay_seconds": retry_delay_max,
                "max_attempts": max_retries,
                "jitter": True,
            }
        )
        self.rate_limiter = TokenBucket(rate_limit_burst, rate_limit_rps)
        self.user_agents = list(user_agents) if user_agents else self._load_user_agents()
        self._user_agent_index = 0
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self.request_history: Deque[RequestHistoryEntry] = deque(maxlen=HISTORY_LIMIT)
        self.iteration = 0

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "CatalogHttpClient":
        return cls(
            request_timeout=settings.request_timeout,
            max_retries=settings.http_max_retries,
            retry_delay_base=settings.http_retry_delay_base,
            retry_delay_max=settings.http_retry_delay_max,
            rate_limit_rps=settings.rate_limit_rps,
            rate_limit_burst=settings.rate_limit_burst,
            user_agents=settings.user_agents or None,
            **kwargs,
        )

    def _load_user_agents(self) -> List[str]:
        try:
            ua = UserAgent()
            agents = [ua.random for _ in range(len(DEFAULT_USER_AGENTS))]
        except Exception as e:  # noqa: BLE001 - fake_useragent data may be unavailable
            self.logger.warning(f"Failed to initialize UserAgent: {e}")
            return list(DEFAULT_USER_AGENTS)
        return list(dict.fromkeys(agents)) or list(DEFAULT_USER_AGENTS)

    def _next_user_agent(self) -> str:
        agent = self.user_agents[self._user_agent_index % len(self.user_agents)]
        self._user_agent_index += 1
        return agent

    async def __aenter__(self) -> "CatalogHttpClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.request_timeout),
                follow_redirects=True,
                transport=self._transport,
                headers={
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.9,ru;q=0.8",
                },
            )
        return self.client

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url`` and report the outcome as data."""
        client = self._ensure_client()
        start = time.monotonic()
        retry_count = 0

        while True:
            await self.rate_limiter.wait_for_token()
            error_type: Optional[ErrorType] = None
            status_code: Optional[int] = None

            try:
                response = await client.get(
                    url, headers={"User-Agent": self._next_user_agent()}
                )
                status_code = response.status_code
                error_type = classify_status(status_code)
                if error_type is None:
                    result = FetchResult(
                        success=True,
                        url=str(response.url),
                        content=response.text,
                        status_code=status_code,
                        duration=time.monotonic() - start,
                        retry_count=retry_count,
                    )
                    self._record(result)
                    return result
                error_message = f"HTTP {status_code} for {url}"
            except httpx.TimeoutException as e:
                error_type = ErrorType.TIMEOUT
                error_message = f"Request timed out: {e}"
            except httpx.TransportError as e:
                error_type = ErrorType.NETWORK
                error_message = f"Network error: {e}"
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                error_type = ErrorType.UNKNOWN
                error_message = f"HTTP error: {e}"

            if self.backoff.should_retry(retry_count, error_type):
                delay = self.backoff.calculate_delay(retry_count, error_type)
                retry_count += 1
                self.logger.warning(
                    f"Request failed ({error_message}), retrying in {delay:.2f}s "
                    f"(attempt {retry_count}/{self.max_retries})"
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                continue

            result = FetchResult(
                success=False,
                url=url,
                status_code=status_code,
                error=error_message,
                duration=time.monotonic() - start,
                retry_count=retry_count,
            )
            self._record(result)
            return result

    def _record(self, result: FetchResult) -> None:
        self.iteration += 1
        self.request_history.append(
            RequestHistoryEntry(
                url=result.url,
                timestamp=datetime.now(UTC),
                success=result.success,
                duration=result.duration,
                retry_count=result.retry_count,
                status_code=result.status_code,
            )
        )

    def reset_iteration_state(self) -> None:
        self.iteration = 0
        self.request_history.clear()

    def get_stats(self) -> Dict[str, Any]:
        total = len(self.request_history)
        successful = sum(1 for entry in self.request_history if entry.success)
        durations = [entry.duration for entry in self.request_history]
        return {
            "total_requests": total,
            "successful_requests": successful,
            "failed_requests": total - successful,
            "success_rate": successful / total if total else 0.0,
            "avg_response_time": sum(durations) / total if total else 0.0,
            "total_retries": sum(entry.retry_count for entry in self.request_history),
        }
