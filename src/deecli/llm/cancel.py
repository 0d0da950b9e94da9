"""Cancellation tokens for outbound requests.

A ``CancelToken`` is created by the conversation service at dispatch time
and handed to every operation of that turn.  It fires either when
``cancel()`` is called or when its deadline passes.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, TypeVar

from .errors import CancelledRequestError

T = TypeVar("T")


class CancelToken:
    """Explicit cancellation plus an optional deadline."""

    def __init__(self, timeout: float | None = None) -> None:
        self._event = asyncio.Event()
        self._timeout = timeout
        self._deadline = (
            time.monotonic() + timeout if timeout is not None else None
        )

    def cancel(self) -> None:
        self._event.set()

    @property
    def user_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self.user_cancelled or self.expired

    def remaining(self) -> float | None:
        """Seconds until the deadline, ``None`` when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def error(self) -> CancelledRequestError:
        if self.user_cancelled:
            return CancelledRequestError()
        return CancelledRequestError(
            f"request deadline exceeded after {self._timeout:g}s",
            user_initiated=False,
        )

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.error()

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds unless the token fires first."""
        self.raise_if_cancelled()
        remaining = self.remaining()
        hits_deadline = remaining is not None and remaining <= delay
        wait = remaining if hits_deadline else delay
        try:
            await asyncio.wait_for(self._event.wait(), timeout=wait)
        except asyncio.TimeoutError:
            if hits_deadline:
                raise self.error() from None
        self.raise_if_cancelled()

    async def run(self, aw: Awaitable[T]) -> T:
        """Await *aw*, abandoning it as soon as the token fires."""
        task = asyncio.ensure_future(aw)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise self.error()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise self.error()
