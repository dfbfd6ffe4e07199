"""
StreamRelay - Event router service.
Runs raw platform events through normalization, aggregation and the gate,
then dispatches them to the output sink, goal tracker and data log.
"""

import logging
from collections import defaultdict
from threading import Lock
from typing import Callable, List, Optional

from streamrelay.errors import CooldownBlock, ErrorReporter, ParseError, ValidationError
from streamrelay.models.events import (
    CanonicalEvent,
    ConnectionStateEvent,
    ErrorEvent,
    GiftEvent,
    RawEvent,
)
from streamrelay.services.aggregator import GiftAggregator
from streamrelay.services.bus import (
    CONNECTION_STATE,
    ERROR_EVENT,
    RAW_EVENT,
    SPAM_SUMMARY,
    EventBus,
)
from streamrelay.services.clock import Clock
from streamrelay.services.datalog import DataLogger
from streamrelay.services.gate import REASON_OLD, REASON_SPAM, CooldownGate
from streamrelay.services.goals import GoalTracker
from streamrelay.services.normalizer import EventNormalizer
from streamrelay.services.sink import OutputSink

logger = logging.getLogger(__name__)

PUBLISHED_STATES = {"ready", "closed", "failed"}


class EventRouter:
    """Dispatches events from the bus to the output stage."""

    def __init__(self, config, bus: EventBus, clock: Clock, normalizer: EventNormalizer,
                 gate: CooldownGate, goals: GoalTracker, sink: OutputSink,
                 datalog: Optional[DataLogger] = None, reporter: Optional[ErrorReporter] = None):
        self.config = config
        self.bus = bus
        self.clock = clock
        self.normalizer = normalizer
        self.gate = gate
        self.goals = goals
        self.sink = sink
        self.datalog = datalog
        self.reporter = reporter or ErrorReporter(logger)
        self.aggregator = GiftAggregator(config, clock, self._on_gift_ready)

        self._unsubscribers: List[Callable[[], bool]] = []
        self._lock = Lock()
        self._received = 0
        self._admitted = 0
        self._parse_errors = 0
        self._dropped = defaultdict(int)
        self._validation_drops = defaultdict(int)

    def start(self):
        """Subscribe to connector output on the bus."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.bus.subscribe(RAW_EVENT, self.handle_raw_event, context="EventRouter"),
            self.bus.subscribe(CONNECTION_STATE, self.handle_connection_state, context="EventRouter"),
            self.bus.subscribe(ERROR_EVENT, self.handle_error_event, context="EventRouter"),
        ]
        logger.info("Event router started")

    def stop(self):
        """Unsubscribe and flush open gift buckets."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        flushed = self.aggregator.flush_all()
        if flushed:
            logger.info(f"Flushed {flushed} pending gift aggregation(s) on shutdown")

    # --- pipeline -----------------------------------------------------------

    def handle_raw_event(self, raw: RawEvent):
        with self._lock:
            self._received += 1

        if self.datalog:
            self.datalog.log(raw.platform.value, raw.kind, raw.payload, raw.received_at)

        try:
            event = self.normalizer.normalize(raw)
        except ValidationError as e:
            with self._lock:
                self._validation_drops[raw.kind] += 1
            self.reporter.report("validation", raw.kind, e, raw.payload)
            return
        except ParseError as e:
            with self._lock:
                self._parse_errors += 1
            self.reporter.report("parse", raw.kind, e, None)
            return

        if event is None:
            return

        if isinstance(event, GiftEvent):
            # Stale frames never enter a bucket
            if self.gate.is_stale(event, raw.opened_at):
                self._drop(event, REASON_OLD)
                return
            self.aggregator.add(event)
            return

        self.dispatch(event, raw.opened_at)

    def _on_gift_ready(self, gift: GiftEvent):
        self.dispatch(gift)

    def dispatch(self, event: CanonicalEvent, opened_at: Optional[float] = None) -> bool:
        """
        Gate an event and deliver it.

        Returns:
            True if the event was admitted
        """
        try:
            self.gate.admit(event, opened_at)
        except CooldownBlock as e:
            self._drop(event, e.reason)
            if e.reason == REASON_SPAM:
                # Hidden from display but still real money
                self._count_goal(event)
            return False

        with self._lock:
            self._admitted += 1
        self._publish(event.to_payload())

        if isinstance(event, GiftEvent):
            self._count_goal(event)
        return True

    def _drop(self, event: CanonicalEvent, reason: str):
        with self._lock:
            self._dropped[reason] += 1
        logger.debug(f"Dropped {event.platform.value} {event.event_type.value} from {event.username}: {reason}")

    def _count_goal(self, gift: GiftEvent):
        if gift.is_error:
            return
        self.goals.add(gift.platform.value, gift.total, gift.id)

    def _publish(self, payload: dict):
        try:
            self.sink.publish(payload)
        except Exception as e:
            logger.error(f"Output sink failed for {payload.get('type')} event: {e}")

    # --- connection and error events ----------------------------------------

    def handle_connection_state(self, event: ConnectionStateEvent):
        if event.state in ("closed", "failed"):
            self.aggregator.flush_all(event.platform)
        if event.state in PUBLISHED_STATES:
            self._publish(event.to_payload())

    def handle_error_event(self, event: ErrorEvent):
        self._publish(event.to_payload())

    def handle_spam_summary(self, summary: dict):
        """Publish the single notification that replaces a suppressed gift flood."""
        self.bus.emit(SPAM_SUMMARY, summary)
        self._publish({
            "platform": summary.get("platform"),
            "type": "gift",
            "data": dict(summary, spam_summary=True),
        })

    # --- status -------------------------------------------------------------

    def statistics(self) -> dict:
        with self._lock:
            stats = {
                "received": self._received,
                "admitted": self._admitted,
                "parse_errors": self._parse_errors,
                "dropped": dict(self._dropped),
                "validation_drops": dict(self._validation_drops),
            }
        stats["aggregator"] = self.aggregator.statistics()
        return stats
