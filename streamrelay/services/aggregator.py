"""
StreamRelay - Gift aggregator service.
Merges bursts of identical gifts into a single aggregated gift event.
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from streamrelay.models.events import GiftEvent, Platform
from streamrelay.services.clock import Clock, TimerHandle

logger = logging.getLogger(__name__)

BucketKey = Tuple[str, str, str, str]

# Only TikTok sends gift streaks; everything else is delivered as it arrives
AGGREGATED_PLATFORMS = {Platform.TIKTOK}


@dataclass
class GiftBucket:
    """Gifts accumulated for one (platform, user, gift type, currency) key."""
    key: BucketKey
    window_id: str
    first: GiftEvent
    last: GiftEvent
    first_seen: float
    last_seen: float
    count: int = 0
    amount: float = 0.0
    contributions: int = 0
    streak_count: int = 0
    combo_end: bool = False
    timer: Optional[TimerHandle] = None
    flushed: bool = False


class GiftAggregator:
    """
    Aggregates TikTok gifts per (platform, user id, gift type, currency).

    Gifts from other platforms, and gifts without a currency, pass
    straight through so amounts in different currencies never merge.

    A bucket is flushed exactly once: on a combo-end frame, after
    GIFT_AGGREGATION_WINDOW_MS of quiescence, or on flush_all(). Every
    event leaving the aggregator, aggregated or passed through, is handed
    to ``on_flush`` outside the aggregator lock.
    """

    def __init__(self, config, clock: Clock, on_flush: Callable[[GiftEvent], None]):
        self.clock = clock
        self.on_flush = on_flush
        self.enabled = bool(config.GIFT_AGGREGATION_ENABLED)
        self.window_ms = float(config.GIFT_AGGREGATION_WINDOW_MS)

        self._buckets: Dict[BucketKey, GiftBucket] = {}
        self._lock = Lock()
        self._stats = {"received": 0, "flushed": 0, "passed_through": 0, "held": 0, "duplicates": 0}

    @staticmethod
    def bucket_key(gift: GiftEvent) -> BucketKey:
        return (gift.platform.value, gift.user.id, gift.gift_type, gift.currency)

    @staticmethod
    def aggregates(gift: GiftEvent) -> bool:
        return gift.platform in AGGREGATED_PLATFORMS and bool((gift.currency or "").strip())

    def add(self, gift: GiftEvent):
        """Accept a normalized gift."""
        with self._lock:
            self._stats["received"] += 1

        if gift.is_error or not self.aggregates(gift):
            self._pass_through(gift)
            return

        if not self.enabled:
            if gift.combo and not gift.repeat_end:
                # Only the final frame of a streak carries the full count
                with self._lock:
                    self._stats["held"] += 1
                logger.debug(f"Holding in-progress streak frame from {gift.username} ({gift.gift_type} x{gift.count})")
                return
            self._pass_through(gift)
            return

        flushed = None
        with self._lock:
            key = self.bucket_key(gift)
            now = self.clock.monotonic()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = GiftBucket(
                    key=key,
                    window_id=uuid.uuid4().hex,
                    first=gift,
                    last=gift,
                    first_seen=now,
                    last_seen=now,
                )
                self._buckets[key] = bucket

            delta = self._contribution(bucket, gift)
            if delta > 0:
                bucket.count += delta
                bucket.amount += delta * gift.unit_amount if gift.cumulative else gift.amount
                bucket.contributions += 1
                bucket.last = gift
                bucket.last_seen = now
                self._restart_timer(bucket)
            else:
                self._stats["duplicates"] += 1
                logger.debug(f"Ignoring repeated streak frame for {key} (count {gift.count})")

            if gift.repeat_end:
                bucket.combo_end = True
                flushed = self._take(bucket)

        if flushed is not None:
            self._emit(flushed, "combo end")

    def _contribution(self, bucket: GiftBucket, gift: GiftEvent) -> int:
        if not gift.cumulative:
            return gift.count
        previous = bucket.streak_count
        bucket.streak_count = gift.count
        if gift.count > previous:
            return gift.count - previous
        if gift.count == previous:
            return 0
        # Count went backwards, a new streak started in the same bucket
        return gift.count

    def _restart_timer(self, bucket: GiftBucket):
        if bucket.timer:
            bucket.timer.cancel()
        key = bucket.key
        bucket.timer = self.clock.set_timeout(lambda: self._on_window_expired(key, bucket), self.window_ms)

    def _on_window_expired(self, key: BucketKey, bucket: GiftBucket):
        with self._lock:
            if self._buckets.get(key) is not bucket:
                return
            event = self._take(bucket)
        if event is not None:
            self._emit(event, "window expired")

    def _take(self, bucket: GiftBucket) -> Optional[GiftEvent]:
        """Remove a bucket and build its event. Caller holds the lock."""
        if bucket.flushed:
            return None
        bucket.flushed = True
        if self._buckets.get(bucket.key) is bucket:
            del self._buckets[bucket.key]
        if bucket.timer:
            bucket.timer.cancel()
            bucket.timer = None
        if bucket.count <= 0:
            return None
        self._stats["flushed"] += 1
        return dataclasses.replace(
            bucket.first,
            user=bucket.last.user,
            count=bucket.count,
            amount=bucket.amount,
            aggregated=True,
            aggregated_count=bucket.count,
            aggregation_window_id=bucket.window_id,
            message_id=bucket.window_id,
            repeat_end=bucket.combo_end,
            raw=bucket.last.raw,
            id="",
        )

    def _pass_through(self, gift: GiftEvent):
        with self._lock:
            self._stats["passed_through"] += 1
        self.on_flush(gift)

    def _emit(self, event: GiftEvent, reason: str):
        logger.debug(
            f"Flushing {event.platform.value} gift bucket for {event.username}: "
            f"{event.gift_type} x{event.count} ({reason})"
        )
        try:
            self.on_flush(event)
        except Exception as e:
            logger.error(f"Aggregated gift delivery failed: {e}")

    def flush_all(self, platform: Optional[Platform] = None) -> int:
        """
        Force a flush of every open bucket, or only those of one platform.

        Returns:
            Number of events emitted
        """
        with self._lock:
            events: List[GiftEvent] = []
            for key, bucket in list(self._buckets.items()):
                if platform is not None and key[0] != platform.value:
                    continue
                event = self._take(bucket)
                if event is not None:
                    events.append(event)

        for event in events:
            self._emit(event, "forced")
        return len(events)

    def pending(self) -> int:
        with self._lock:
            return len(self._buckets)

    def statistics(self) -> dict:
        with self._lock:
            return dict(self._stats, open_buckets=len(self._buckets), enabled=self.enabled)
