# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Cooperative cancellation shared by every sleep and wait of an application.

A :class:`CancellationTokenSource` is created once (optionally bounded by a timeout) and
its :class:`CancellationToken` is passed by argument to everything that may block.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar
from .exceptions import OperationCancelled

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class CancellationTokenSource:
    """Issues a CancellationToken and requests cancellation on it.

    Must be created within a running event loop.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        """
        :param float timeout: Seconds after which cancellation is requested automatically
        """
        self._event = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None
        if timeout is not None:
            if timeout < 0:
                raise ValueError("'timeout' cannot be negative")
            self._timer = asyncio.get_running_loop().call_later(timeout, self._expire)
        self.token = CancellationToken(self._event)

    def _expire(self) -> None:
        logger.info("Cancellation source timed out")
        self._timer = None
        self.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        if not self._event.is_set():
            logger.debug("Cancellation requested")
            self._event.set()

    def dispose(self) -> None:
        """Release the timer, if any, without requesting cancellation"""
        if self._timer:
            self._timer.cancel()
            self._timer = None


class CancellationToken:
    """Observes cancellation requested on a CancellationTokenSource"""

    def __init__(self, event: asyncio.Event) -> None:
        self._event = event

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def raise_if_cancellation_requested(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Cancellation was requested")

    async def wait(self) -> None:
        """Wait until cancellation is requested"""
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for the delay unless cancellation is requested first

        :raises: OperationCancelled if cancellation is requested before the delay elapses
        """
        self.raise_if_cancellation_requested()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            # Slept the full delay
            return
        raise OperationCancelled("Cancellation was requested during a delay")

    async def run(self, awaitable: Awaitable[_T]) -> _T:
        """Await an awaitable unless cancellation is requested first, in which case it
        is cancelled.

        :returns: The result of the awaitable
        :raises: OperationCancelled if cancellation is requested before it completes
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled("Cancellation was requested")
        task = asyncio.ensure_future(awaitable)
        cancel_waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                [task, cancel_waiter], return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if task in done:
            # Completed, even if cancellation was also requested in the meantime
            return task.result()

        task.cancel()
        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Cancelled operation ended with {!r}".format(task.exception()))
        raise OperationCancelled("Cancellation was requested during an operation")
