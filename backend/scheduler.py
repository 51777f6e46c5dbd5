"""
Timer scheduling used by the search loop.

The controller only needs "run this every N seconds" and "run this once
after N seconds". Keeping that behind a small interface lets tests drive
the state machine with a virtual clock instead of real sleeps.
"""

import asyncio
from typing import Callable, Optional


class TimerHandle:
    def cancel(self):
        raise NotImplementedError


class Scheduler:
    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError


class _LoopTimer(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self):
        self._handle.cancel()


class _RepeatingLoopTimer(TimerHandle):
    """Re-arms itself after each run until cancelled."""

    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback: Callable[[], None]):
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = loop.call_later(interval, self._run)

    def _run(self):
        if self._cancelled:
            return
        self._handle = self._loop.call_later(self._interval, self._run)
        self._callback()

    def cancel(self):
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return _LoopTimer(self.loop.call_later(delay, callback))

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        return _RepeatingLoopTimer(self.loop, interval, callback)
