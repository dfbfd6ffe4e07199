"""
StreamRelay - Connection lifecycle.
State machine, open timeout and keep-alive shared by the platform connectors.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Optional

from streamrelay.errors import ParseError, PlatformConnectionError, classify_error
from streamrelay.models.events import ConnectionStateEvent, ErrorEvent, Platform, iso_from_ms
from streamrelay.services.bus import CONNECTION_AUTH_FAILED, CONNECTION_STATE, ERROR_EVENT, EventBus
from streamrelay.services.clock import Clock, TimerHandle
from streamrelay.services.retry import RetryController

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    FAILED = "failed"
    CLOSING = "closing"
    CLOSED = "closed"


ACTIVE_STATES = {
    ConnectionState.CONNECTING,
    ConnectionState.OPEN,
    ConnectionState.AUTHENTICATING,
    ConnectionState.READY,
}


@dataclass
class ConnectionStatus:
    """Point-in-time view of one connection."""
    name: str
    platform: str
    stream_id: Optional[str]
    state: str
    opened_at: Optional[float]
    retry_count: int
    last_error: Optional[str]
    auth_failed: bool

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "platform": self.platform,
            "stream_id": self.stream_id,
            "state": self.state,
            "opened_at": iso_from_ms(self.opened_at) if self.opened_at else None,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "auth_failed": self.auth_failed,
        }


class KeepAlive:
    """Periodic ping that reports a dead peer after too many missed pongs."""

    def __init__(self, clock: Clock, interval_ms: float, max_missed: int):
        self.clock = clock
        self.interval_ms = interval_ms
        self.max_missed = max_missed
        self.missed = 0
        self._timer: Optional[TimerHandle] = None
        self._ping_fn: Optional[Callable[[], object]] = None
        self._on_timeout: Optional[Callable[[], object]] = None
        self._lock = Lock()

    def start(self, ping_fn: Callable[[], object], on_timeout: Callable[[], object]):
        self.stop()
        with self._lock:
            self.missed = 0
            self._ping_fn = ping_fn
            self._on_timeout = on_timeout
            self._timer = self.clock.set_interval(self._tick, self.interval_ms)

    def activity(self):
        """Any inbound frame or pong proves the peer is alive."""
        with self._lock:
            self.missed = 0

    def _tick(self):
        with self._lock:
            if self._timer is None:
                return
            expired = self.missed >= self.max_missed
            if not expired:
                self.missed += 1
            ping_fn, on_timeout = self._ping_fn, self._on_timeout

        if expired:
            self.stop()
            on_timeout()
            return
        try:
            ping_fn()
        except Exception as e:
            logger.warning(f"Keep-alive ping failed: {e}")

    def stop(self):
        with self._lock:
            timer, self._timer = self._timer, None
        if timer:
            timer.cancel()

    @property
    def running(self) -> bool:
        return self._timer is not None


class ConnectionLifecycle:
    """
    Tracks the state of one named connection and owns its timers.

    Connectors call the ``mark_*`` methods as the session progresses and
    ``handle_failure`` when the transport goes away unexpectedly. Every
    transition is published on the bus as a ConnectionStateEvent.
    """

    def __init__(self, name: str, platform: Platform, bus: EventBus, clock: Clock,
                 retry: RetryController, config, stream_id: Optional[str] = None):
        self.name = name
        self.platform = platform
        self.bus = bus
        self.clock = clock
        self.retry = retry
        self.stream_id = stream_id

        self.connect_timeout_ms = float(getattr(config, "CONNECT_TIMEOUT_MS", 15000))
        self.keepalive = KeepAlive(
            clock,
            float(getattr(config, "KEEPALIVE_INTERVAL_MS", 30000)),
            int(getattr(config, "KEEPALIVE_MAX_MISSED", 2)),
        )

        self.state = ConnectionState.IDLE
        self.opened_at: Optional[float] = None
        self.last_error: Optional[str] = None
        self.auth_failed = False
        self.stopped = False
        self._open_timer: Optional[TimerHandle] = None
        self._seq = 0
        self._lock = Lock()

    # --- transitions --------------------------------------------------------

    def _set_state(self, state: ConnectionState, reason: str = ""):
        with self._lock:
            previous = self.state
            self.state = state
            self._seq += 1
            seq = self._seq
        if previous != state:
            logger.debug(f"{self.name}: {previous.value} -> {state.value}{f' ({reason})' if reason else ''}")

        now = self.clock.now()
        self.bus.emit(CONNECTION_STATE, ConnectionStateEvent(
            platform=self.platform,
            origin_timestamp=iso_from_ms(now),
            ingest_timestamp=iso_from_ms(now),
            message_id=f"{self.name}:{seq}",
            connection=self.name,
            state=state.value,
            reason=reason,
        ))

    def begin_connect(self) -> bool:
        """Enter Connecting. Returns False if a connect is in flight or refused."""
        with self._lock:
            if self.auth_failed:
                logger.warning(f"{self.name}: refusing to connect after authentication failure")
                return False
            if self.state in ACTIVE_STATES:
                logger.debug(f"{self.name}: connect already in progress ({self.state.value})")
                return False
            self.stopped = False
        self._set_state(ConnectionState.CONNECTING)
        return True

    def arm_open_timeout(self, on_timeout: Callable[[], object]):
        self.cancel_open_timeout()
        self._open_timer = self.clock.set_timeout(on_timeout, self.connect_timeout_ms)

    def cancel_open_timeout(self):
        timer, self._open_timer = self._open_timer, None
        if timer:
            timer.cancel()

    def mark_open(self, resumed: bool = False):
        """A resumed session keeps its original open time."""
        self.cancel_open_timeout()
        if not resumed or self.opened_at is None:
            self.opened_at = self.clock.now()
        self._set_state(ConnectionState.OPEN)

    def mark_authenticating(self):
        self._set_state(ConnectionState.AUTHENTICATING)

    def mark_reconnecting(self, reason: str):
        """Server-requested move to a new socket; no retry is involved."""
        self._stop_timers()
        self._set_state(ConnectionState.CONNECTING, reason)

    def mark_ready(self, ping_fn: Optional[Callable[[], object]] = None,
                   on_keepalive_timeout: Optional[Callable[[], object]] = None):
        self.retry.reset_retry_count(self.name)
        self.last_error = None
        self._set_state(ConnectionState.READY)
        if ping_fn and on_keepalive_timeout:
            self.keepalive.start(ping_fn, on_keepalive_timeout)
        logger.info(f"{self.name}: connected")

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    # --- failures -----------------------------------------------------------

    def fail_auth(self, reason: str, cleanup_fn: Optional[Callable[[], object]] = None):
        """Permanent authentication failure: no retries, later connects refused."""
        with self._lock:
            self.auth_failed = True
        self.last_error = reason
        self._stop_timers()
        if cleanup_fn:
            self._run_cleanup(cleanup_fn)
        logger.error(f"{self.name}: authentication failed: {reason}")
        self._set_state(ConnectionState.FAILED, reason)
        self.bus.emit(CONNECTION_AUTH_FAILED, {
            "connection": self.name,
            "platform": self.platform.value,
            "reason": reason,
        })

    def fail_fatal(self, reason: str, cleanup_fn: Optional[Callable[[], object]] = None):
        """Non-auth failure that must not be retried."""
        self.last_error = reason
        self._stop_timers()
        if cleanup_fn:
            self._run_cleanup(cleanup_fn)
        logger.error(f"{self.name}: {reason}, not reconnecting")
        self._set_state(ConnectionState.FAILED, reason)

    def handle_failure(self, error: BaseException, reconnect_fn: Callable[[], object],
                       cleanup_fn: Callable[[], object]) -> Optional[float]:
        """
        Close down after an unexpected loss and let the retry controller decide.

        Returns:
            The reconnect delay in ms, or None when no retry was scheduled
        """
        if self.stopped:
            return None
        if classify_error(error) == "auth":
            self.fail_auth(str(error), cleanup_fn)
            return None
        self.last_error = str(error)
        self._stop_timers()
        self._set_state(ConnectionState.CLOSING, str(error))
        delay = self.retry.handle_connection_error(self.name, error, reconnect_fn, cleanup_fn)

        if delay is None:
            self._set_state(ConnectionState.FAILED, str(error))
        else:
            self._set_state(ConnectionState.CLOSED, str(error))
        return delay

    def report_error(self, category: str, message: str):
        """Surface a non-fatal problem as an Error event."""
        now = self.clock.now()
        self.bus.emit(ERROR_EVENT, ErrorEvent(
            platform=self.platform,
            origin_timestamp=iso_from_ms(now),
            ingest_timestamp=iso_from_ms(now),
            message_id=f"{self.name}:error:{now}",
            category=category,
            message=message,
        ))

    # --- shutdown -----------------------------------------------------------

    def shutdown(self, cleanup_fn: Callable[[], object]):
        """Requested disconnect: cancel every timer and close without retry."""
        with self._lock:
            self.stopped = True
            was_closed = self.state in (ConnectionState.CLOSED, ConnectionState.IDLE)
        self.retry.cancel(self.name)
        self._stop_timers()
        if not was_closed:
            self._set_state(ConnectionState.CLOSING, "disconnect requested")
        self._run_cleanup(cleanup_fn)
        if not was_closed:
            self._set_state(ConnectionState.CLOSED, "disconnect requested")

    def _stop_timers(self):
        self.cancel_open_timeout()
        self.keepalive.stop()

    def _run_cleanup(self, cleanup_fn: Callable[[], object]):
        try:
            cleanup_fn()
        except Exception as e:
            logger.error(f"{self.name}: cleanup failed: {e}")

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            name=self.name,
            platform=self.platform.value,
            stream_id=self.stream_id,
            state=self.state.value,
            opened_at=self.opened_at,
            retry_count=self.retry.get_retry_count(self.name),
            last_error=self.last_error,
            auth_failed=self.auth_failed,
        )


class ManagedSocket:
    """
    Owns the current transport of a connector.

    Callbacks from a transport that has since been replaced or closed are
    ignored, so a late close from an old socket can never tear down a new
    session. Frames are decoded from JSON before reaching ``on_frame``.

    During a handover the outgoing transport keeps delivering messages
    until release_previous() closes it.
    """

    def __init__(self, lifecycle: ConnectionLifecycle, transport_factory: Callable,
                 reconnect_fn: Callable[[], object], on_open: Callable[[], object],
                 on_frame: Callable[[dict], object],
                 on_close: Optional[Callable[[int, str], bool]] = None):
        self.lifecycle = lifecycle
        self.transport_factory = transport_factory
        self.reconnect_fn = reconnect_fn
        self.on_open = on_open
        self.on_frame = on_frame
        self.on_close = on_close
        self._transport = None
        self._previous = None
        self._lock = Lock()

    @property
    def name(self) -> str:
        return self.lifecycle.name

    def open(self, url: str, headers: Optional[dict] = None) -> bool:
        """Create and start a transport. Failures are routed to the retry controller."""
        try:
            transport = self.transport_factory(
                url,
                headers=headers,
                open_timeout=self.lifecycle.connect_timeout_ms / 1000,
                name=self.name,
            )
            transport.on("open", lambda: self._dispatch(transport, self._handle_open))
            transport.on("message", lambda text: self._dispatch(transport, self._handle_message, text))
            transport.on("close", lambda code, reason: self._dispatch(transport, self._handle_close, code, reason))
            transport.on("error", lambda error: self._dispatch(transport, self._handle_error, error))
            transport.on("pong", lambda: self._dispatch(transport, self.lifecycle.keepalive.activity))
            with self._lock:
                self._transport = transport
            self.lifecycle.arm_open_timeout(self._handle_open_timeout)
            transport.open()
        except Exception as e:
            logger.error(f"{self.name}: could not open transport: {e}")
            self.fail(PlatformConnectionError.transient(f"could not open transport: {e}"))
            return False
        return True

    def _dispatch(self, transport, handler: Callable, *args):
        with self._lock:
            current = transport is self._transport
            draining = transport is self._previous
        if current or (draining and handler == self._handle_message):
            handler(*args)

    def _handle_open(self):
        with self._lock:
            resumed = self._previous is not None
        self.lifecycle.mark_open(resumed=resumed)
        self.on_open()

    def _handle_message(self, text):
        self.lifecycle.keepalive.activity()
        try:
            payload = json.loads(text)
        except (TypeError, ValueError) as e:
            self.parse_error(f"invalid JSON frame: {e}")
            return
        if not isinstance(payload, dict):
            self.parse_error("frame is not a JSON object")
            return
        try:
            self.on_frame(payload)
        except ParseError as e:
            self.parse_error(str(e))
        except Exception as e:
            logger.error(f"{self.name}: failed to handle frame: {e}")

    def _handle_close(self, code: int, reason: str):
        self.detach()
        if self.lifecycle.stopped or self.lifecycle.auth_failed:
            return
        if self.lifecycle.state == ConnectionState.FAILED:
            return
        if self.on_close and self.on_close(code, reason):
            return
        self.fail(PlatformConnectionError.transient(f"connection closed ({code}): {reason or 'no reason'}", code=code))

    def _handle_error(self, error: BaseException):
        kind = classify_error(error)
        if kind == "auth":
            self.lifecycle.fail_auth(str(error), self.close)
        elif kind == "api":
            logger.warning(f"{self.name}: API error, reconnecting: {error}")
            self.lifecycle.last_error = str(error)
            with self._lock:
                transport = self._transport
            if transport:
                transport.close(1000, "api error")
        else:
            logger.warning(f"{self.name}: transport error: {error}")

    def _handle_open_timeout(self):
        if self.lifecycle.state != ConnectionState.CONNECTING:
            return
        timeout = self.lifecycle.connect_timeout_ms
        self.fail(PlatformConnectionError.transient(f"open timed out after {timeout:.0f}ms", code="ETIMEDOUT"))

    def keepalive_expired(self):
        self.fail(PlatformConnectionError.transient("keep-alive timeout", code="ETIMEDOUT"))

    def fail(self, error: BaseException) -> Optional[float]:
        return self.lifecycle.handle_failure(error, self.reconnect_fn, self.close)

    def parse_error(self, message: str):
        logger.warning(f"{self.name}: {message}")
        self.lifecycle.report_error("parse", message)

    def detach(self):
        with self._lock:
            transport, self._transport = self._transport, None
        return transport

    def close(self, code: int = 1000, reason: str = "disconnect"):
        """Detach and close the current transport and any outgoing one."""
        transport = self.detach()
        if transport:
            transport.close(code, reason)
        self.release_previous(code, reason)

    def handover(self, url: str, headers: Optional[dict] = None) -> bool:
        """Open a replacement transport while the current one keeps delivering messages."""
        with self._lock:
            previous, self._transport = self._transport, None
            stale, self._previous = self._previous, previous
        if stale:
            stale.close(1000, "superseded")
        return self.open(url, headers)

    def release_previous(self, code: int = 1000, reason: str = "handover complete"):
        """Close the outgoing transport of a handover, if any."""
        with self._lock:
            previous, self._previous = self._previous, None
        if previous:
            previous.close(code, reason)

    def send(self, frame):
        with self._lock:
            transport = self._transport
        if transport is None:
            raise ConnectionError(f"{self.name}: no open transport")
        transport.send(frame)

    def ping(self):
        with self._lock:
            transport = self._transport
        if transport is not None:
            transport.ping()

    def start_keepalive(self):
        self.lifecycle.keepalive.start(self.ping, self.keepalive_expired)
