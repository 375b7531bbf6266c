"""Cooperative cancellation token for start attempts and background loops.

One CancelToken is created per start attempt and passed explicitly through
every probe. Probes call raise_if_cancelled() at loop heads and use sleep()
or run() for every blocking wait, so a cancel request interrupts the wait
at once instead of after the current delay elapses.

Child tokens (child()) are cancelled with their parent but can also be
cancelled alone; the serial capture task uses one so the orchestrator can
stop it without cancelling the start itself.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

from vm_workspaces.exceptions import StartCancelledError

T = TypeVar("T")


class CancelToken:
    """Cancellation signal shared by one start attempt."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[CancelToken] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation to this token and all of its children. Idempotent."""
        if self._event.is_set():
            return
        self._event.set()
        for child in self._children:
            child.cancel()
        self._children.clear()

    def child(self) -> CancelToken:
        """Create a linked token cancelled whenever this one is."""
        token = CancelToken()
        if self.cancelled:
            token.cancel()
        else:
            self._children.append(token)
        return token

    def raise_if_cancelled(self) -> None:
        """Raises:
        StartCancelledError: If cancellation was signalled.
        """
        if self._event.is_set():
            raise StartCancelledError

    async def wait(self) -> None:
        """Block until cancellation is signalled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, aborting early on cancellation.

        Raises:
            StartCancelledError: If cancelled before or during the sleep.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise StartCancelledError

    async def run(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await `awaitable`, abandoning it on cancellation or timeout.

        Args:
            awaitable: Operation to run.
            timeout: Optional deadline in seconds.

        Returns:
            The awaitable's result.

        Raises:
            StartCancelledError: Cancellation was signalled first.
            TimeoutError: The deadline passed first.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StartCancelledError
        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        if self._event.is_set():
            raise StartCancelledError
        raise TimeoutError
