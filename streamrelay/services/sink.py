"""
StreamRelay - Output sink service.
Delivers finished notification payloads to browser clients.
"""

import copy
import logging
from collections import deque
from threading import Lock
from typing import Deque, List

from flask_socketio import SocketIO

logger = logging.getLogger(__name__)


class OutputSink:
    """Port for delivering payloads of the form {platform, type, data}."""

    def publish(self, payload: dict):
        raise NotImplementedError


class MemorySink(OutputSink):
    """Keeps published payloads in memory. Used when no browser output is wired."""

    def __init__(self, maxlen: int = 500):
        self.payloads: Deque[dict] = deque(maxlen=maxlen)
        self._lock = Lock()

    def publish(self, payload: dict):
        with self._lock:
            self.payloads.append(copy.deepcopy(payload))

    def recent(self, limit: int = 50) -> List[dict]:
        with self._lock:
            return list(self.payloads)[-limit:]


class SocketIOSink(OutputSink):
    """Emits each payload as a ``notification`` Socket.IO event."""

    def __init__(self, socketio: SocketIO, namespace: str = "/", history: int = 50):
        self.socketio = socketio
        self.namespace = namespace
        self._recent: Deque[dict] = deque(maxlen=history)
        self._lock = Lock()

    def publish(self, payload: dict):
        data = copy.deepcopy(payload)
        with self._lock:
            self._recent.append(data)
        self.socketio.emit("notification", data, namespace=self.namespace)
        logger.debug(f"Sent {data.get('type')} notification from {data.get('platform')} to browser")

    def recent(self, limit: int = 50) -> List[dict]:
        with self._lock:
            return copy.deepcopy(list(self._recent)[-limit:])
