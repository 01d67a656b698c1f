"""Rate-limited executor for outbound provider calls.

Every provider call goes through a single RateLimitedExecutor, which:
    - bounds concurrent in-flight calls with a semaphore
    - retries TransientError with exponential backoff
    - waits exactly the provider-declared delay on ThrottledError
    - re-raises AuthError and SkippableError immediately

Retries are an explicit loop carrying (attempts_remaining, delay), so the
call stack never grows with the number of attempts.

Example:
    executor = RateLimitedExecutor(max_concurrency=5, max_retries=3)
    response = await executor.call(client.get, "/user", description="github user")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from contextsync.constants import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_THROTTLE_WAITS,
)
from contextsync.exceptions import (
    AuthError,
    SkippableError,
    ThrottledError,
    TransientError,
)
from contextsync.logging import get_logger
from contextsync.models import ExecutorConfig

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RequestPacer:
    """Sliding-window pacer limiting calls per minute.

    Used for providers that document a per-minute ceiling (Slack tier limits)
    so that we slow down before the provider has to throttle us.
    """

    def __init__(
        self,
        requests_per_minute: int,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pacer.

        Args:
            requests_per_minute: Maximum requests allowed per minute.
            sleep: Awaitable sleep, injectable for tests.
            clock: Monotonic clock, injectable for tests.
        """
        self._requests_per_minute = requests_per_minute
        self._sleep = sleep
        self._clock = clock
        self._request_times: list[float] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait if necessary to respect the per-minute budget."""
        async with self._lock:
            now = self._clock()
            minute_ago = now - 60
            self._request_times = [t for t in self._request_times if t > minute_ago]

            if len(self._request_times) >= self._requests_per_minute:
                # Wait until the oldest request leaves the window
                sleep_time = 60 - (now - self._request_times[0]) + 0.1
                if sleep_time > 0:
                    logger.debug("Pacing provider calls", extra={"sleep_seconds": sleep_time})
                    await self._sleep(sleep_time)

            self._request_times.append(self._clock())


class RateLimitedExecutor:
    """Bounded-concurrency executor with retry and backoff.

    Attributes:
        max_concurrency: Size of the in-flight call pool.
        max_retries: Transient retries before the error surfaces.
        base_delay: First backoff delay in seconds, doubled on each retry.
        max_delay: Cap on a single backoff delay.
        max_throttle_waits: Provider-declared waits honoured per call.
    """

    def __init__(
        self,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        max_throttle_waits: int = DEFAULT_MAX_THROTTLE_WAITS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_throttle_waits = max_throttle_waits
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @classmethod
    def from_config(
        cls, config: ExecutorConfig, sleep: Sleep = asyncio.sleep
    ) -> RateLimitedExecutor:
        """Create an executor from configuration."""
        return cls(
            max_concurrency=config.max_concurrency,
            max_retries=config.max_retries,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            max_throttle_waits=config.max_throttle_waits,
            sleep=sleep,
        )

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        description: str = "",
        pacer: RequestPacer | None = None,
        **kwargs: Any,
    ) -> T:
        """Run one provider call inside the pool, retrying as classified.

        Args:
            func: Coroutine function performing the call.
            *args: Positional arguments for func.
            description: Short label used in log messages.
            pacer: Optional per-provider pacer acquired before each attempt.
            **kwargs: Keyword arguments for func.

        Returns:
            Whatever func returns.

        Raises:
            AuthError: Immediately, without retrying.
            SkippableError: Immediately, for the caller to count.
            ThrottledError: When max_throttle_waits is exhausted.
            TransientError: When max_retries is exhausted.
        """
        async with self._semaphore:
            attempts_remaining = self.max_retries
            delay = self.base_delay
            throttle_waits = 0

            while True:
                if pacer is not None:
                    await pacer.acquire()
                try:
                    return await func(*args, **kwargs)

                except AuthError:
                    logger.warning("Provider rejected credential", extra={"call": description})
                    raise

                except SkippableError as e:
                    logger.debug(
                        "Skipping provider resource",
                        extra={"call": description, "status_code": e.status_code},
                    )
                    raise

                except ThrottledError as e:
                    if throttle_waits >= self.max_throttle_waits:
                        logger.warning(
                            "Provider still throttling, giving up",
                            extra={"call": description, "waits": throttle_waits},
                        )
                        raise
                    throttle_waits += 1
                    logger.info(
                        "Provider throttled, waiting",
                        extra={"call": description, "retry_after": e.retry_after},
                    )
                    await self._sleep(e.retry_after)

                except TransientError as e:
                    if attempts_remaining <= 0:
                        logger.warning(
                            "Transient failure, retries exhausted",
                            extra={"call": description, "error": e.message},
                        )
                        raise
                    logger.info(
                        "Transient failure, backing off",
                        extra={
                            "call": description,
                            "delay_seconds": delay,
                            "attempts_remaining": attempts_remaining,
                        },
                    )
                    await self._sleep(delay)
                    attempts_remaining -= 1
                    delay = min(delay * 2, self.max_delay)

    async def gather(self, *aws: Awaitable[T]) -> list[T | BaseException]:
        """Run awaitables concurrently, returning exceptions in place.

        Concurrency is still bounded by the pool when the awaitables
        route their provider calls through `call`.
        """
        return list(await asyncio.gather(*aws, return_exceptions=True))

    async def bounded(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run a non-provider coroutine under the concurrency bound, without retries."""
        async with self._semaphore:
            return await func(*args, **kwargs)
