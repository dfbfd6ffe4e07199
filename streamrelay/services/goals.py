"""
StreamRelay - Goal tracker service.
Keeps per-platform donation totals with at-most-once counting per event.
"""

import logging
import math
from collections import defaultdict
from threading import Lock
from typing import Dict, Optional

from streamrelay.services.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class FingerprintRegistry:
    """Remembers event fingerprints seen within a time window."""

    def __init__(self, clock: Clock, window: int = 3600, max_entries: int = 10000):
        """
        Initialize the registry.

        Args:
            clock: Time source
            window: Time window in seconds a fingerprint is remembered
            max_entries: Upper bound on remembered fingerprints
        """
        self.clock = clock
        self.window_ms = window * 1000
        self.max_entries = max_entries
        self.seen: Dict[str, float] = {}
        self._lock = Lock()

    def check_and_add(self, fingerprint: str) -> bool:
        """Return True if the fingerprint was already seen, recording it otherwise."""
        with self._lock:
            now = self.clock.monotonic()

            # Clean old entries
            self.seen = {k: v for k, v in self.seen.items() if now - v < self.window_ms}

            if fingerprint in self.seen:
                return True

            if len(self.seen) >= self.max_entries:
                oldest = min(self.seen, key=self.seen.get)
                del self.seen[oldest]
            self.seen[fingerprint] = now
            return False


class GoalTracker:
    """Additive per-platform totals fed by admitted gifts."""

    def __init__(self, clock: Optional[Clock] = None, window: int = 3600):
        self.clock = clock or SystemClock()
        self._registry = FingerprintRegistry(self.clock, window=window)
        self._totals: Dict[str, float] = defaultdict(float)
        self._lock = Lock()

    def add(self, platform: str, amount, fingerprint: str = "") -> bool:
        """
        Add an amount to a platform total.

        Returns:
            True if the total changed
        """
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            logger.debug(f"Skipping goal update for {platform}: amount {amount!r} is not a number")
            return False
        if not math.isfinite(amount) or amount <= 0:
            logger.debug(f"Skipping goal update for {platform}: amount {amount!r}")
            return False
        if fingerprint and self._registry.check_and_add(fingerprint):
            logger.debug(f"Goal already counted for event {fingerprint}")
            return False

        with self._lock:
            self._totals[platform] += amount
            total = self._totals[platform]
        logger.info(f"Goal total for {platform}: {total:g} (+{amount:g})")
        return True

    def totals(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._totals)

    def reset(self):
        with self._lock:
            self._totals.clear()
