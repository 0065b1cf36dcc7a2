"""Trailing-edge debouncer on the running event loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """Collapse bursts of trigger() calls into one callback.

    Each trigger() restarts a *delay*-second timer; the callback runs once
    the timer expires with no further triggers. A coroutine returned by the
    callback is scheduled as a task, which cancel() also cancels.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Any],
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._delay = delay
        self._callback = callback
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self.fired = 0

    @property
    def pending(self) -> bool:
        """True while a timer is armed."""
        return self._handle is not None

    @property
    def running(self) -> bool:
        """True while a task started by the callback is unfinished."""
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.fired += 1
        logger.debug("Debounce window (%gs) elapsed; firing", self._delay)
        try:
            result = self._callback()
        except Exception as exc:
            logger.error("Debounced callback raised %s: %s", type(exc).__name__, exc)
            return
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result, loop=self._loop)

    async def flush(self) -> None:
        """Fire now if a timer is armed, then wait for the resulting task."""
        if self._handle is not None:
            self._handle.cancel()
            self._fire()
        if self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    def cancel(self) -> None:
        """Disarm the timer and cancel a running callback task."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
