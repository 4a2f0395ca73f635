"""
Bounded retry for render calls.

Built on tenacity: a fixed attempt budget, exponential backoff clamped to
[min_delay, max_delay], and only RenderErrors marked retryable are tried
again. When the budget is exhausted the last error is re-raised unchanged.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .errors import RenderError
from .logging_conf import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Only transient render failures are worth another attempt."""
    return isinstance(exc, RenderError) and exc.retryable


class RetryPolicy:
    """
    Wraps an async callable with retries and backoff.

    Defaults mirror the render path: 2 retries (3 attempts total) with
    backoff between 0.5s and 1.5s.
    """

    def __init__(
        self,
        retries: int = 2,
        min_delay: float = 0.5,
        max_delay: float = 1.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize retry policy.

        Args:
            retries: Retries after the first attempt
            min_delay: Lower bound on the wait between attempts (seconds)
            max_delay: Upper bound on the wait between attempts (seconds)
            sleep: Async sleep used between attempts (injectable for tests)
        """
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self.retries = retries
        self.min_delay = min_delay
        self.max_delay = max(max_delay, min_delay)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            retries=settings.render_retries,
            min_delay=settings.retry_min_delay,
            max_delay=settings.retry_max_delay,
        )

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(
                multiplier=self.min_delay,
                min=self.min_delay,
                max=self.max_delay,
            ),
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Call fn(*args, **kwargs) under the retry policy."""
        return await self._retrying()(fn, *args, **kwargs)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            wait_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            cause=getattr(exc, "cause", None),
            error=str(exc),
        )
