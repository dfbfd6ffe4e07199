"""
StreamRelay - Event bus service.
Publish/subscribe hub with per-handler isolation and statistics.
"""

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Set

from streamrelay.services.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

HANDLER_ERROR = "handler-error"
RAW_EVENT = "raw-event"
CONNECTION_STATE = "connection:state"
CONNECTION_AUTH_FAILED = "connection:auth-failed"
ERROR_EVENT = "error-event"
SPAM_SUMMARY = "spam:summary"
MAX_ARG_LENGTH = 100
CIRCULAR_SENTINEL = "[Circular Object]"


def _json_default(obj: Any):
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    return str(obj)


def summarize_arg(arg: Any) -> Any:
    """Render a handler argument for error reports."""
    if arg is None or isinstance(arg, (bool, int, float)):
        return arg
    if isinstance(arg, str):
        return arg[:MAX_ARG_LENGTH]
    try:
        text = json.dumps(arg, default=_json_default)
    except (ValueError, RecursionError):
        return CIRCULAR_SENTINEL
    except TypeError:
        text = repr(arg)
    return text[:MAX_ARG_LENGTH]


async def _await(awaitable):
    return await awaitable


@dataclass
class Subscription:
    """A registered handler."""
    event: str
    handler: Callable
    once: bool = False
    context: Any = None
    fired: bool = False

    @property
    def context_name(self) -> str:
        if self.context is None:
            return "unknown"
        if isinstance(self.context, str):
            return self.context
        return type(self.context).__name__


@dataclass
class EventStats:
    emitted: int = 0
    success: int = 0
    error: int = 0
    total_duration: float = 0.0
    avg_duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "emitted": self.emitted,
            "success": self.success,
            "error": self.error,
            "total_duration": self.total_duration,
            "avg_duration": self.avg_duration,
        }


class EventBus:
    """
    Publish/subscribe hub.

    Handlers on the same event run in subscription order on the emitting
    thread. A handler that returns an awaitable has it run on the bus
    executor; its outcome is tracked when it completes. A failing handler
    is counted and reported through a ``handler-error`` event, and never
    stops the remaining handlers.
    """

    def __init__(self, clock: Optional[Clock] = None, max_listeners: int = 50,
                 debug: bool = False, max_workers: int = 4):
        self.clock = clock or SystemClock()
        self.max_listeners = max_listeners
        self.debug = debug
        self.max_workers = max_workers

        self._handlers: Dict[str, List[Subscription]] = defaultdict(list)
        self._stats: Dict[str, EventStats] = {}
        self._lock = RLock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()

    def subscribe(self, event: str, handler: Callable, once: bool = False,
                  context: Any = None) -> Callable[[], bool]:
        """
        Register a handler.

        Returns:
            A function that removes this subscription when called
        """
        if not callable(handler):
            raise TypeError(f"Handler for event '{event}' must be callable")

        subscription = Subscription(event=event, handler=handler, once=once, context=context)
        with self._lock:
            self._handlers[event].append(subscription)
            count = len(self._handlers[event])

        if count > self.max_listeners:
            logger.warning(
                f"Event '{event}' has {count} listeners (max {self.max_listeners}); possible leak"
            )
        if self.debug:
            logger.debug(f"Subscribed to '{event}' (once={once}, total={count})")

        def unsubscribe() -> bool:
            return self._remove(subscription)

        return unsubscribe

    def unsubscribe(self, event: str, handler: Callable, context: Any = None) -> bool:
        """Remove the first subscription matching handler and context."""
        with self._lock:
            for subscription in self._handlers.get(event, []):
                if subscription.handler == handler and subscription.context is context:
                    return self._remove(subscription)
        logger.warning(f"Handler not found for unsubscription from '{event}'")
        return False

    def _remove(self, subscription: Subscription) -> bool:
        with self._lock:
            handlers = self._handlers.get(subscription.event, [])
            if subscription in handlers:
                handlers.remove(subscription)
                if not handlers:
                    self._handlers.pop(subscription.event, None)
                return True
        return False

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, []))

    def listener_summary(self) -> Dict[str, int]:
        with self._lock:
            return {event: len(handlers) for event, handlers in self._handlers.items()}

    def emit(self, event: str, *args) -> bool:
        """
        Deliver an event to its handlers.

        Returns:
            True if at least one handler was registered
        """
        with self._lock:
            selected = []
            for subscription in list(self._handlers.get(event, [])):
                if subscription.once:
                    if subscription.fired:
                        continue
                    # Removed before the body runs so re-entrant emits skip it
                    subscription.fired = True
                    self._remove(subscription)
                selected.append(subscription)
            self._stat(event).emitted += 1

        if self.debug:
            logger.debug(f"Emitting '{event}' to {len(selected)} handler(s)")

        for subscription in selected:
            self._invoke(subscription, args)

        if not selected and self.debug:
            logger.debug(f"No listeners for '{event}'")
        return bool(selected)

    def _invoke(self, subscription: Subscription, args: tuple):
        started = self.clock.monotonic()
        try:
            result = subscription.handler(*args)
        except Exception as e:
            self._record(subscription.event, "error", started)
            self._report_failure(subscription, args, e)
            return

        if inspect.isawaitable(result):
            future = self._get_executor().submit(self._run_async, subscription, args, started, result)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._forget)
            return

        self._record(subscription.event, "success", started)

    def _run_async(self, subscription: Subscription, args: tuple, started: float, awaitable):
        # Outcome is recorded on the worker so wait_idle sees it
        try:
            asyncio.run(_await(awaitable))
        except Exception as e:
            self._record(subscription.event, "error", started)
            self._report_failure(subscription, args, e)
        else:
            self._record(subscription.event, "success", started)

    def _forget(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def _report_failure(self, subscription: Subscription, args: tuple, error: BaseException):
        logger.error(f"Handler error for '{subscription.event}': {error}")

        if subscription.event == HANDLER_ERROR:
            # A failing handler-error handler is only logged
            return

        self.emit(HANDLER_ERROR, {
            "event_name": subscription.event,
            "error": error,
            "context": subscription.context_name,
            "args": [summarize_arg(arg) for arg in args],
        })

    def _stat(self, event: str) -> EventStats:
        stats = self._stats.get(event)
        if stats is None:
            stats = self._stats[event] = EventStats()
        return stats

    def _record(self, event: str, outcome: str, started: float):
        duration = max(0.0, self.clock.monotonic() - started)
        with self._lock:
            stats = self._stat(event)
            setattr(stats, outcome, getattr(stats, outcome) + 1)
            stats.total_duration += duration
            stats.avg_duration = stats.total_duration / (stats.success + stats.error)

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="streamrelay-bus"
                )
            return self._executor

    def statistics(self, event: Optional[str] = None) -> dict:
        """Per-event counters, or the counters for one event."""
        with self._lock:
            if event is not None:
                return self._stat(event).to_dict()
            return {name: stats.to_dict() for name, stats in self._stats.items()}

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for running async handlers. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def reset(self):
        """Drop every subscription and all statistics."""
        with self._lock:
            self._handlers.clear()
            self._stats.clear()
        if self.debug:
            logger.debug("Event bus reset")

    def shutdown(self):
        with self._lock:
            executor, self._executor = self._executor, None
        if executor:
            executor.shutdown(wait=False)
