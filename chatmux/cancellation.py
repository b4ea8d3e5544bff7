"""
Cooperative cancellation shared by HTTP sends, stream reads and retry sleeps.
"""

import asyncio
import contextlib
from typing import Awaitable, Optional, TypeVar

from .exceptions import CancellationError

T = TypeVar("T")


class CancellationToken:
    """
    A one-shot cancellation flag that async code can wait on.

    Once cancelled the token stays cancelled. The same token is threaded
    through every suspension point of a send_prompt call.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, raising CancellationError as soon as the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise CancellationError()


async def race(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """
    Await `awaitable` unless `token` fires first.

    On cancellation the pending work is cancelled and CancellationError is
    raised. A result that arrived alongside the cancellation is closed if it
    has `aclose`. Without a token this is a plain await.
    """
    if token is None:
        return await awaitable

    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CancellationError()
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if not token.cancelled:
        return work.result()

    # Cancellation wins even when the work finished (or failed) in the same tick.
    if work.done():
        if not work.cancelled() and work.exception() is None:
            await _release(work.result())
    else:
        work.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work
    raise CancellationError()


async def _release(result: object) -> None:
    aclose = getattr(result, "aclose", None)
    if aclose is not None:
        with contextlib.suppress(Exception):
            await aclose()
