"""Rate limiting and bounded retry for remote calls.

The limiter holds its own last-invocation timestamp, so pacing is shared by
every call routed through the same instance and nothing else.
"""

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, stop_after_attempt

from ..errors import ExhaustedRetries

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Enforces a minimum interval between consecutive invocations."""

    def __init__(
        self,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize rate limiter.

        Args:
            min_interval: Default minimum seconds between invocations
            clock: Monotonic clock (injectable for tests)
            sleep: Sleep function (injectable for tests)
        """
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._last_call: float | None = None

    @property
    def last_call(self) -> float | None:
        """Clock reading of the most recent invocation, if any."""
        return self._last_call

    def wait(self, min_interval: float | None = None) -> float:
        """Block until the interval since the previous invocation has elapsed.

        Args:
            min_interval: Override for this call

        Returns:
            Seconds spent waiting
        """
        interval = self.min_interval if min_interval is None else min_interval
        waited = 0.0

        if self._last_call is not None:
            elapsed = self.clock() - self._last_call
            if elapsed < interval:
                waited = interval - elapsed
                logger.debug(f"Rate limiting: waiting {waited:.2f}s")
                self.sleep(waited)

        self._last_call = self.clock()
        return waited


class RetryRateLimiter:
    """Wraps remote calls with pacing and exponential-backoff retry.

    Example:
        >>> limiter = RetryRateLimiter(RateLimiter(min_interval=1.0))
        >>> rows = limiter.execute(client.get_match_list, max_retries=3, backoff_base=2)
    """

    def __init__(
        self,
        limiter: RateLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize retry wrapper.

        Args:
            limiter: Shared rate limiter (a fresh one if None)
            sleep: Sleep used between retry attempts
        """
        self.limiter = limiter or RateLimiter()
        self.sleep = sleep

    def execute(
        self,
        operation: Callable[[], T],
        max_retries: int = 3,
        backoff_base: float = 2.0,
        min_interval: float | None = None,
        on_error: Callable[[BaseException, int], Any] | None = None,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        description: str = "remote call",
    ) -> T:
        """Run ``operation`` with pacing and bounded retry.

        Args:
            operation: Zero-argument callable performing the remote call
            max_retries: Total number of attempts
            backoff_base: Delay before attempt n+1 is backoff_base ** (n - 1)
            min_interval: Minimum seconds since the previous invocation
            on_error: Callback(error, attempt_number) after each failed attempt
            retry_on: Exception types that are retried; others propagate as-is
            description: Label used in log messages

        Returns:
            Result of the first successful invocation

        Raises:
            ExhaustedRetries: If every attempt failed with a retryable error
        """
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        def _paced() -> T:
            self.limiter.wait(min_interval)
            return operation()

        def _after_attempt(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            attempt = retry_state.attempt_number
            logger.warning(f"{description}: attempt {attempt}/{max_retries} failed: {error}")
            if on_error is not None:
                on_error(error, attempt)

        def _backoff(retry_state: RetryCallState) -> float:
            delay = backoff_base ** (retry_state.attempt_number - 1)
            logger.debug(f"{description}: retrying in {delay} seconds...")
            return delay

        retrying = Retrying(
            stop=stop_after_attempt(max_retries),
            wait=_backoff,
            retry=retry_if_exception_type(retry_on),
            after=_after_attempt,
            sleep=self.sleep,
        )

        try:
            return retrying(_paced)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            logger.error(
                f"{description}: max retries ({max_retries}) exceeded. Last error: {last_error}"
            )
            raise ExhaustedRetries(last_error, attempts) from last_error
