"""
Retry with exponential backoff for a single transport attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .cancellation import CancellationToken, race
from .exceptions import CancellationError, ProviderHTTPError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

RETRYABLE_ERROR_PATTERNS = (
    "econnreset",
    "etimedout",
    "enotfound",
    "econnrefused",
    "fetch failed",
    "network",
    "socket hang up",
    "resource exhausted",
    "rate limit",
)


def is_retryable_error(error: BaseException) -> bool:
    """
    Decide whether a failed attempt is worth repeating.

    Cancellation is never retried. HTTP errors are judged by status code only,
    transport errors always retry, anything else by its message.
    """
    if isinstance(error, CancellationError):
        return False
    if isinstance(error, ProviderHTTPError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, httpx.TransportError):
        return True
    message = f"{type(error).__name__} {error}".lower()
    return any(pattern in message for pattern in RETRYABLE_ERROR_PATTERNS)


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff around one asynchronous unit of work.

    The policy knows nothing about conversations: callers wrap a single HTTP
    attempt, never a whole tool-loop turn.

    Attributes:
        max_attempts: Total attempts including the first (1 = no retry).
        initial_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for the exponential delay, in seconds.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        cancellation: Optional[CancellationToken] = None,
    ) -> T:
        """
        Run `fn` until it succeeds, fails with a non-retryable error, or the
        attempts are exhausted.

        Args:
            fn: Zero-argument coroutine factory; called once per attempt.
            cancellation: Optional token observed before and during each
                attempt and during backoff sleeps.

        Returns:
            Whatever `fn` returns on its successful attempt.

        Raises:
            CancellationError: The token fired; no further attempt is made.
            Exception: The last failure, unchanged.
        """

        async def _sleep(seconds: float) -> None:
            if cancellation is None:
                await asyncio.sleep(seconds)
            else:
                await cancellation.sleep(seconds)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.initial_delay, max=self.max_delay)
            + wait_random(0, self.initial_delay * 0.25),
            retry=retry_if_exception(is_retryable_error),
            sleep=_sleep,
            before_sleep=before_sleep_log(logger, logging.INFO),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                if cancellation is not None:
                    cancellation.raise_if_cancelled()
                result = await race(fn(), cancellation)
        return result


DEFAULT_RETRY_POLICY = RetryPolicy()
