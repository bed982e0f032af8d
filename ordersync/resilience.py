"""
Resilience patterns for outbound marketplace requests.

- Retry with exponential backoff and jitter, classifying HTTP statuses
- Token bucket rate limiter

Usage:
    response = await send_with_retry(
        lambda: client.get(url, headers=headers),
        config=RetryConfig(),
        describe="orders page 3",
    )
"""
import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from ordersync.config import RetrySettings, config as app_config
from ordersync.exceptions import MarketplaceConnectionError
from ordersync.observability import get_logger, metrics

logger = get_logger(__name__)

# Credential problems: returned at once, the caller must refresh first
FATAL_STATUSES = frozenset({401, 403})

# Transient upstream failures worth another attempt
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

# Awaitable notifier: (message, error_code) -> None
Notifier = Callable[[str, str], Awaitable[None]]


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    The delay before retry N (0-based) is
    base_delay * exponential_base ** N plus uniform jitter in [0, jitter).
    """
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 1.0  # seconds

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            exponential_base=settings.exponential_base,
            jitter=settings.jitter,
        )


def backoff_delay(
    attempt: int,
    config: Optional[RetryConfig] = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait after a failed attempt (0-based)."""
    config = config or RetryConfig()
    return config.base_delay * (config.exponential_base ** attempt) + rand() * config.jitter


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUSES


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    config: Optional[RetryConfig] = None,
    describe: str = "request",
    notify: Optional[Notifier] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> httpx.Response:
    """
    Send one request with status classification and backoff.

    - 401/403 are returned immediately (one warning is sent)
    - 429/500/502/503/504 and network errors are retried
    - any other status is returned as-is
    - after the last attempt a retryable status returns the last response,
      while a network error raises MarketplaceConnectionError

    Only the first retry of a request sends a warning through `notify`.

    Args:
        send: Zero-argument coroutine factory performing the request
        config: Retry budget
        describe: Short label used in logs
        notify: Optional warning sink
        sleep: Injected for tests

    Returns:
        The final httpx.Response
    """
    config = config or RetryConfig.from_settings(app_config.retry)
    last_attempt = config.max_attempts - 1

    for attempt in range(config.max_attempts):
        metrics.incr("requests")
        try:
            response = await send()
        except httpx.TransportError as e:
            if attempt >= last_attempt:
                logger.error(
                    f"{describe}: network error after {config.max_attempts} attempts",
                    extra={"error": str(e)}
                )
                if notify:
                    await notify(
                        f"Connection error after {config.max_attempts} attempts: {e}",
                        "NETWORK_ERROR",
                    )
                raise MarketplaceConnectionError(
                    f"{describe} failed after {config.max_attempts} attempts",
                    {"error": str(e)},
                    attempts=config.max_attempts,
                ) from e
            reason = f"network error ({type(e).__name__})"
            warning, code = "Connection error, retrying...", "NETWORK_ERROR"
        else:
            status = response.status_code
            if status in FATAL_STATUSES:
                metrics.incr("credential_rejections")
                logger.error(f"{describe}: authentication error {status}")
                if notify:
                    await notify(
                        f"Authentication error {status}. Check that the account is still connected.",
                        str(status),
                    )
                return response
            if not is_retryable_status(status):
                if status >= 400:
                    logger.warning(f"{describe}: HTTP {status} (not retryable)")
                return response
            if attempt >= last_attempt:
                logger.warning(
                    f"{describe}: HTTP {status} after {config.max_attempts} attempts"
                )
                return response
            reason = f"HTTP {status}"
            warning, code = f"Temporary marketplace error {status}, retrying...", str(status)

        delay = backoff_delay(attempt, config)
        metrics.incr("retries")
        logger.warning(
            f"{describe}: {reason}, attempt {attempt + 1}/{config.max_attempts}, "
            f"retrying in {delay:.2f}s",
            extra={"attempt": attempt + 1, "delay": round(delay, 3)}
        )
        if notify and attempt == 0:
            await notify(warning, code)
        await sleep(delay)

    # max_attempts < 1
    raise MarketplaceConnectionError(f"{describe} was never attempted", attempts=0)


# ═══════════════════════════════════════════════════════════════════════════════
# RATE LIMITER
# ═══════════════════════════════════════════════════════════════════════════════

class RateLimiter:
    """
    Paces marketplace requests: `burst` at once, then `rate` per second.

    A caller past the budget books its token anyway and sleeps off the
    deficit, so concurrent waiters are spaced 1/rate apart.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._clock = clock
        self._sleep = sleep
        self._stamp = clock()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.rate)
            self._stamp = now
            self._tokens -= 1
            wait = -self._tokens / self.rate if self._tokens < 0 else 0.0
        if wait > 0:
            await self._sleep(wait)
