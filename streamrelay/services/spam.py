"""
StreamRelay - Spam detection service.
Suppresses floods of low-value gifts and replaces them with one summary.
"""

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Optional, Set, Tuple

from streamrelay.models.events import GiftEvent
from streamrelay.services.clock import Clock, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class SpamWindow:
    """Low-value gifts seen from one user in the current detection window."""
    platform: str
    user_id: str
    username: str
    started_at: float
    gifts: int = 0
    total_value: float = 0.0
    currency: str = ""
    suppressed: int = 0
    gift_types: Set[str] = field(default_factory=set)
    timer: Optional[TimerHandle] = None


class SpamDetector:
    """Per-user low-value gift flood detection."""

    def __init__(self, config, clock: Clock, on_summary: Optional[Callable[[dict], None]] = None):
        self.clock = clock
        self.on_summary = on_summary
        self.enabled = bool(getattr(config, "SPAM_ENABLED", True))
        self.low_value_threshold = float(config.SPAM_LOW_VALUE_THRESHOLD)
        self.window_ms = float(config.SPAM_DETECTION_WINDOW) * 1000
        self.max_individual = int(config.SPAM_MAX_INDIVIDUAL_NOTIFICATIONS)

        self._windows: Dict[Tuple[str, str], SpamWindow] = {}
        self._lock = Lock()

    def is_low_value(self, gift: GiftEvent) -> bool:
        unit = gift.unit_amount if gift.unit_amount > 0 else gift.amount
        return 0 < unit <= self.low_value_threshold

    def is_suppressed(self, gift: GiftEvent) -> bool:
        """
        Record a gift and decide whether it should be hidden.

        Returns:
            True when the gift is part of a flood and must not be displayed
        """
        if not self.enabled or gift.is_error or not self.is_low_value(gift):
            return False

        key = (gift.platform.value, gift.user.id)
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = SpamWindow(
                    platform=gift.platform.value,
                    user_id=gift.user.id,
                    username=gift.username,
                    started_at=self.clock.now(),
                    currency=gift.currency,
                )
                window.timer = self.clock.set_timeout(lambda: self._close_window(key, window), self.window_ms)
                self._windows[key] = window

            window.gifts += 1
            window.total_value += gift.amount
            window.gift_types.add(gift.gift_type)
            if window.gifts <= self.max_individual:
                return False
            window.suppressed += 1

        logger.debug(f"Suppressing low-value gift from {gift.username} ({window.gifts} in window)")
        return True

    def _close_window(self, key: Tuple[str, str], window: SpamWindow):
        with self._lock:
            if self._windows.get(key) is not window:
                return
            del self._windows[key]

        if not window.suppressed:
            return

        summary = {
            "platform": window.platform,
            "user_id": window.user_id,
            "username": window.username,
            "total_gifts": window.gifts,
            "suppressed": window.suppressed,
            "total_value": window.total_value,
            "currency": window.currency,
            "gift_types": sorted(window.gift_types),
        }
        logger.info(
            f"Spam summary for {window.username}: {window.gifts} gifts, "
            f"{window.suppressed} suppressed"
        )
        if self.on_summary:
            self.on_summary(summary)

    def active_windows(self) -> int:
        with self._lock:
            return len(self._windows)

    def cancel_all(self):
        """Drop every open window without publishing summaries."""
        with self._lock:
            windows = list(self._windows.values())
            self._windows.clear()
        for window in windows:
            if window.timer:
                window.timer.cancel()
