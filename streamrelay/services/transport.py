"""
StreamRelay - WebSocket transport.
Thin event-style adapter over the websockets sync client.
"""

import json
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from websockets.exceptions import ConnectionClosed, InvalidStatus
from websockets.sync.client import connect as ws_connect

logger = logging.getLogger(__name__)

ABNORMAL_CLOSURE = 1006
TRANSPORT_EVENTS = ("open", "message", "close", "error", "pong")


class WebSocketTransport:
    """
    WebSocket client that reports activity through callbacks.

    Callbacks are registered with ``on(name, cb)`` for open, message,
    close, error and pong. A reader thread delivers them in order, and
    close is always the last callback a transport fires.
    """

    def __init__(self, url: str, headers: Optional[dict] = None, open_timeout: float = 15.0,
                 ping_timeout: float = 10.0, name: str = "websocket"):
        self.url = url
        self.headers = headers or {}
        self.open_timeout = open_timeout
        self.ping_timeout = ping_timeout
        self.name = name

        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._ws = None
        self._thread: Optional[threading.Thread] = None
        self._open = False
        self._close_requested = False
        self._closed = False
        self._lock = threading.Lock()

    def on(self, event: str, callback: Callable) -> "WebSocketTransport":
        if event not in TRANSPORT_EVENTS:
            raise ValueError(f"Unknown transport event: {event}")
        self._handlers[event].append(callback)
        return self

    def _fire(self, event: str, *args):
        for callback in list(self._handlers.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"{self.name}: {event} callback failed: {e}")

    def open(self):
        """Start connecting in the background."""
        if self._thread is not None:
            raise RuntimeError(f"{self.name}: transport already opened")
        self._thread = threading.Thread(target=self._run, name=f"streamrelay-{self.name}", daemon=True)
        self._thread.start()

    def _run(self):
        try:
            ws = ws_connect(
                self.url,
                additional_headers=self.headers or None,
                open_timeout=self.open_timeout,
                ping_interval=None,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            self._fire("error", e)
            self._finish(status, f"HTTP {status}")
            return
        except Exception as e:
            self._fire("error", e)
            self._finish(ABNORMAL_CLOSURE, str(e))
            return

        with self._lock:
            self._ws = ws
            cancelled = self._close_requested
            self._open = not cancelled
        if cancelled:
            ws.close()
            self._finish(1000, "closed before open")
            return

        self._fire("open")
        try:
            for message in ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._fire("message", message)
        except ConnectionClosed:
            pass
        except Exception as e:
            self._fire("error", e)

        self._finish(ws.close_code or ABNORMAL_CLOSURE, ws.close_reason or "")

    def _finish(self, code: int, reason: str):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._open = False
        self._fire("close", code, reason)

    def is_open(self) -> bool:
        with self._lock:
            return self._open

    def send(self, frame):
        """Send a text frame. Dicts and lists are JSON encoded."""
        if not isinstance(frame, str):
            frame = json.dumps(frame)
        with self._lock:
            ws = self._ws if self._open else None
        if ws is None:
            raise ConnectionError(f"{self.name}: transport is not open")
        ws.send(frame)

    def ping(self):
        """Send a ping; ``pong`` fires when the peer answers."""
        with self._lock:
            ws = self._ws if self._open else None
        if ws is None:
            return
        waiter = ws.ping()

        def wait_for_pong():
            if waiter.wait(self.ping_timeout):
                self._fire("pong")

        threading.Thread(target=wait_for_pong, daemon=True).start()

    def close(self, code: int = 1000, reason: str = ""):
        with self._lock:
            self._close_requested = True
            ws = self._ws
        if ws is not None:
            try:
                ws.close(code, reason)
            except Exception as e:
                logger.debug(f"{self.name}: error while closing: {e}")
