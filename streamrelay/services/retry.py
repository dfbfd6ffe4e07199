"""
StreamRelay - Retry service.
Per-connection exponential backoff with jitter and reconnect scheduling.
"""

import logging
import random
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

from streamrelay.errors import PlatformConnectionError, classify_error
from streamrelay.services.clock import Clock, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class RetryBudget:
    """Retry state for one named connection."""
    attempts: int = 0
    last_delay: float = 0.0
    timer: Optional[TimerHandle] = None
    gave_up: bool = False


class RetryController:
    """
    Schedules reconnect attempts for named connections.

    Delays grow as ``initial * base ** (attempt - 1)`` up to the cap. Each
    delay is jittered downward by up to ``jitter`` of its value and never
    falls below the previous delay, so successive failures produce
    non-decreasing delays until the cap.
    """

    def __init__(self, config, clock: Clock, rng: Optional[random.Random] = None):
        self.clock = clock
        self.initial_ms = float(config.RETRY_INITIAL_DELAY) * 1000
        self.base = float(config.RETRY_BACKOFF_BASE)
        self.cap_ms = float(config.RETRY_BACKOFF_MAX) * 1000
        self.jitter = float(config.RETRY_JITTER)
        self.max_attempts = int(config.RETRY_MAX_ATTEMPTS or 0)
        self._rng = rng or random.Random()

        self._budgets: Dict[str, RetryBudget] = {}
        self._lock = Lock()

    def _budget(self, name: str) -> RetryBudget:
        budget = self._budgets.get(name)
        if budget is None:
            budget = self._budgets[name] = RetryBudget()
        return budget

    def _ceiling(self, attempt: int) -> float:
        if attempt <= 0:
            return self.initial_ms
        try:
            raw = self.initial_ms * (self.base ** (attempt - 1))
        except OverflowError:
            raw = self.cap_ms
        return min(self.cap_ms, raw)

    def increment_retry_count(self, name: str) -> float:
        """Count a failed attempt and return the delay before the next one, in ms."""
        with self._lock:
            budget = self._budget(name)
            budget.attempts += 1
            ceiling = self._ceiling(budget.attempts)
            delay = ceiling * (1 - self.jitter * self._rng.random())
            delay = min(self.cap_ms, max(delay, budget.last_delay))
            budget.last_delay = delay
            logger.debug(f"{name}: retry attempt {budget.attempts}, next delay {delay:.0f}ms")
            return delay

    def reset_retry_count(self, name: str):
        """Forget previous failures after a successful connection."""
        with self._lock:
            budget = self._budget(name)
            if budget.attempts:
                logger.debug(f"{name}: reset retry count from {budget.attempts}")
            budget.attempts = 0
            budget.last_delay = 0.0
            budget.gave_up = False
            timer, budget.timer = budget.timer, None
        if timer:
            timer.cancel()

    def get_retry_count(self, name: str) -> int:
        with self._lock:
            budget = self._budgets.get(name)
            return budget.attempts if budget else 0

    def has_exceeded_max_retries(self, name: str) -> bool:
        if self.max_attempts <= 0:
            return False
        return self.get_retry_count(name) >= self.max_attempts

    def is_pending(self, name: str) -> bool:
        with self._lock:
            budget = self._budgets.get(name)
            return bool(budget and budget.timer and not budget.timer.cancelled)

    def cancel(self, name: str):
        """Cancel any scheduled reconnect for a connection."""
        with self._lock:
            budget = self._budgets.get(name)
            timer = budget.timer if budget else None
            if budget:
                budget.timer = None
        if timer:
            timer.cancel()
            logger.debug(f"{name}: cancelled pending reconnect")

    def handle_connection_error(self, name: str, error: BaseException,
                                reconnect_fn: Callable[[], object],
                                cleanup_fn: Optional[Callable[[], object]] = None) -> Optional[float]:
        """
        Clean up after a failure and schedule a reconnect.

        Returns:
            The scheduled delay in ms, or None when no retry was scheduled
        """
        if cleanup_fn:
            try:
                cleanup_fn()
            except Exception as e:
                logger.error(f"{name}: cleanup failed: {e}")

        kind = classify_error(error)
        if kind == "auth":
            logger.warning(f"{name}: authentication rejected, not retrying ({error})")
            return None
        if kind == "fatal":
            logger.error(f"{name}: fatal connection error, not retrying ({error})")
            return None

        if self.has_exceeded_max_retries(name):
            with self._lock:
                self._budget(name).gave_up = True
            logger.error(f"{name}: maximum retries reached ({self.max_attempts}), halting reconnect attempts")
            return None

        delay = self.increment_retry_count(name)
        attempt = self.get_retry_count(name)
        logger.warning(f"{name}: connection failed (attempt {attempt}): {error}")
        logger.info(f"{name}: retrying in {delay / 1000:.1f} seconds")

        def run():
            with self._lock:
                budget = self._budget(name)
                if budget.timer is not handle:
                    return
                budget.timer = None
            logger.debug(f"{name}: executing reconnect attempt {attempt + 1}")
            try:
                reconnect_fn()
            except Exception as e:
                self.handle_connection_error(name, e, reconnect_fn, cleanup_fn)

        with self._lock:
            budget = self._budget(name)
            previous = budget.timer
            handle = self.clock.set_timeout(run, delay)
            budget.timer = handle
        if previous:
            previous.cancel()
        return delay

    def statistics(self) -> Dict[str, dict]:
        with self._lock:
            return {
                name: {
                    "count": budget.attempts,
                    "last_delay_ms": round(budget.last_delay),
                    "next_delay_ms": round(self._ceiling(budget.attempts + 1)),
                    "pending": bool(budget.timer and not budget.timer.cancelled),
                    "gave_up": budget.gave_up,
                }
                for name, budget in self._budgets.items()
            }
