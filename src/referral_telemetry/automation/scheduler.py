"""Timer scheduling for retries, polling and periodic updates.

Callbacks never block the caller: work is handed to a scheduler and runs
when its delay elapses.  ``ThreadScheduler`` uses daemon timer threads;
``ManualScheduler`` keeps a virtual clock so tests can step through backoff
without waiting.
"""

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    def __init__(self):
        self.cancelled = False
        self._timer: Optional[threading.Timer] = None

    def cancel(self):
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()


def _run_safely(callback: Callable[[], None]):
    try:
        callback()
    except Exception as e:
        logger.error(f"Scheduled callback failed: {e}")


class Scheduler(ABC):
    """Source of time and deferred execution."""

    @abstractmethod
    def now(self) -> float:
        """Seconds on a monotonic clock."""
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        pass

    def every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        handle = TimerHandle()

        def tick():
            if handle.cancelled:
                return
            _run_safely(callback)
            if not handle.cancelled:
                inner = self.call_later(interval, tick)
                handle._timer = inner._timer

        first = self.call_later(interval, tick)
        handle._timer = first._timer
        return handle

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


class ThreadScheduler(Scheduler):
    """Scheduler backed by daemon ``threading.Timer`` threads."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()

        def fire():
            if not handle.cancelled:
                _run_safely(callback)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle


class ManualScheduler(Scheduler):
    """Virtual-time scheduler; nothing runs until ``advance`` is called."""

    def __init__(self, start: float = 0.0, wall_clock: Optional[datetime] = None):
        self._now = start
        self._queue: List[Tuple[float, int, TimerHandle, Callable[[], None]]] = []
        self._counter = itertools.count()
        self._wall_start = wall_clock or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        return self._wall_start + timedelta(seconds=self._now)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        heapq.heappush(self._queue, (self._now + delay, next(self._counter), handle, callback))
        return handle

    def every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()

        def tick():
            if handle.cancelled:
                return
            _run_safely(callback)
            if not handle.cancelled:
                heapq.heappush(
                    self._queue,
                    (self._now + interval, next(self._counter), handle, tick),
                )

        heapq.heappush(self._queue, (self._now + interval, next(self._counter), handle, tick))
        return handle

    @property
    def pending(self) -> int:
        """Number of callbacks still waiting to run."""
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    def next_delay(self) -> Optional[float]:
        """Seconds until the next live callback, or None when idle."""
        for due, _, handle, _ in sorted(self._queue):
            if not handle.cancelled:
                return max(0.0, due - self._now)
        return None

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due."""
        target = self._now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            self._now = due
            if handle.cancelled:
                continue
            _run_safely(callback)
            ran += 1
        self._now = target
        return ran

    def run_until_idle(self, limit: int = 1000) -> int:
        """Run one-shot work until the queue drains (periodic jobs keep it busy)."""
        ran = 0
        while ran < limit:
            delay = self.next_delay()
            if delay is None:
                break
            ran += self.advance(delay)
        return ran
