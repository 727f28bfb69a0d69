"""
Scheduler — Cancellable delayed callbacks.

The reply projector and block pipeline never touch raw timer handles; they
ask a ``Scheduler`` to run a callback later and keep the returned
``ScheduledCallback`` to cancel it. Production code uses the running asyncio
loop, tests use ``ManualScheduler`` and move a virtual clock forward.

Usage:
    from chatrelay.agent.scheduler import ManualScheduler

    clock = ManualScheduler()
    handle = clock.call_later(0.75, flush)
    clock.advance(0.75)   # runs flush()
"""

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple


class ScheduledCallback(ABC):
    """Handle for a callback scheduled to run later."""

    @abstractmethod
    def cancel(self) -> None:
        """Prevent the callback from running. Safe to call more than once."""

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        ...


class Scheduler(ABC):
    @abstractmethod
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> ScheduledCallback:
        """Run ``callback`` once, ``delay_s`` seconds from now."""


# ------------------------------------------------------------------
# asyncio
# ------------------------------------------------------------------

class _LoopCallback(ScheduledCallback):
    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()


class LoopScheduler(Scheduler):
    """Schedules on the running asyncio loop (or an explicit one)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> ScheduledCallback:
        loop = self._loop or asyncio.get_running_loop()
        return _LoopCallback(loop.call_later(max(delay_s, 0.0), callback))


# ------------------------------------------------------------------
# Virtual clock
# ------------------------------------------------------------------

class _ManualCallback(ScheduledCallback):
    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self._cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler driven by ``advance()``.

    Callbacks scheduled while advancing run in the same ``advance()`` call if
    they fall due before the target time.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, _ManualCallback]] = []
        self._seq = itertools.count()

    @property
    def now(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        """Number of callbacks still waiting to run."""
        return sum(1 for _, _, cb in self._queue if not cb.cancelled)

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> ScheduledCallback:
        handle = _ManualCallback(self._now + max(delay_s, 0.0), callback)
        heapq.heappush(self._queue, (handle.due, next(self._seq), handle))
        return handle

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running due callbacks in order. Returns how many ran."""
        target = self._now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = due
            handle.fired = True
            handle.callback()
            ran += 1
        self._now = target
        return ran
