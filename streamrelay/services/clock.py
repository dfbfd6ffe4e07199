"""
StreamRelay - Clock service.
Wall-clock time and cancellable timers, with a controllable fake for tests.
"""

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def _run_guarded(fn: Callable, kind: str):
    try:
        fn()
    except Exception as e:
        logger.error(f"Timer callback failed ({kind}): {e}", exc_info=True)


class TimerHandle:
    """Handle returned by set_timeout / set_interval."""

    def __init__(self, cancel_fn: Optional[Callable] = None):
        self._cancel_fn = cancel_fn
        self.cancelled = False

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        if self._cancel_fn:
            self._cancel_fn()


class Clock:
    """Time source used by every time-dependent component."""

    def now(self) -> float:
        """Wall-clock time in milliseconds since the epoch."""
        raise NotImplementedError

    def monotonic(self) -> float:
        """Monotonic time in milliseconds, for measuring durations."""
        raise NotImplementedError

    def set_timeout(self, fn: Callable, delay_ms: float) -> TimerHandle:
        raise NotImplementedError

    def set_interval(self, fn: Callable, period_ms: float) -> TimerHandle:
        raise NotImplementedError


class SystemClock(Clock):
    """Clock backed by the system time and daemon threads."""

    def now(self) -> float:
        return time.time() * 1000

    def monotonic(self) -> float:
        return time.monotonic() * 1000

    def set_timeout(self, fn: Callable, delay_ms: float) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay_ms) / 1000, _run_guarded, args=(fn, "timeout"))
        timer.daemon = True
        timer.start()
        return TimerHandle(timer.cancel)

    def set_interval(self, fn: Callable, period_ms: float) -> TimerHandle:
        stop = threading.Event()
        period = max(0.001, period_ms / 1000)

        def loop():
            while not stop.wait(period):
                _run_guarded(fn, "interval")

        thread = threading.Thread(target=loop, daemon=True, name="streamrelay-interval")
        thread.start()
        return TimerHandle(stop.set)


class FakeClock(Clock):
    """
    Manually driven clock for tests.

    Timers fire only from advance() or set(), in due-time order, on the
    calling thread.
    """

    def __init__(self, start_ms: float = 0):
        self._now = float(start_ms)
        self._seq = itertools.count()
        self._timers: List[Tuple[float, int, dict]] = []
        self._lock = threading.RLock()

    def now(self) -> float:
        return self._now

    def monotonic(self) -> float:
        return self._now

    def _schedule(self, fn: Callable, delay_ms: float, period_ms: Optional[float]) -> TimerHandle:
        entry = {"fn": fn, "period": period_ms, "active": True}

        def cancel():
            entry["active"] = False

        with self._lock:
            heapq.heappush(self._timers, (self._now + max(0.0, delay_ms), next(self._seq), entry))
        return TimerHandle(cancel)

    def set_timeout(self, fn: Callable, delay_ms: float) -> TimerHandle:
        return self._schedule(fn, delay_ms, None)

    def set_interval(self, fn: Callable, period_ms: float) -> TimerHandle:
        return self._schedule(fn, period_ms, max(1.0, period_ms))

    def pending(self) -> int:
        """Number of timers still scheduled."""
        with self._lock:
            return sum(1 for _, _, entry in self._timers if entry["active"])

    def advance(self, ms: float):
        """Move time forward, firing every timer that falls due."""
        self._run_until(self._now + ms)

    def set(self, ms: float):
        """Jump to an absolute time. Moving forward fires due timers."""
        if ms <= self._now:
            self._now = float(ms)
            return
        self._run_until(ms)

    def _run_until(self, target: float):
        while True:
            with self._lock:
                if not self._timers or self._timers[0][0] > target:
                    break
                due, _, entry = heapq.heappop(self._timers)
                if not entry["active"]:
                    continue
                self._now = max(self._now, due)
                if entry["period"] is not None:
                    heapq.heappush(self._timers, (due + entry["period"], next(self._seq), entry))
                else:
                    entry["active"] = False
            _run_guarded(entry["fn"], "fake")
        self._now = float(target)
