"""
StreamRelay - StreamElements connector.
Auxiliary follow feed covering YouTube and Twitch followers.
"""

import logging
from typing import List

from streamrelay.models.events import Platform, RawEvent
from streamrelay.services.bus import RAW_EVENT, EventBus
from streamrelay.services.clock import Clock
from streamrelay.services.connection import ConnectionLifecycle, ConnectionStatus, ManagedSocket
from streamrelay.services.retry import RetryController
from streamrelay.services.transport import WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_STREAMELEMENTS_WEBSOCKET_URL = "wss://astro.streamelements.com"


class StreamElementsConnector:
    """Follow notifications from the StreamElements Astro socket."""

    platform = Platform.STREAMELEMENTS

    def __init__(self, config, bus: EventBus, clock: Clock, retry: RetryController,
                 transport_factory=WebSocketTransport, name: str = "streamelements"):
        self.config = config
        self.bus = bus
        self.clock = clock
        self.name = name
        self.token = getattr(config, "STREAMELEMENTS_JWT_TOKEN", "") or ""
        self.url = getattr(config, "STREAMELEMENTS_WEBSOCKET_URL", "") or DEFAULT_STREAMELEMENTS_WEBSOCKET_URL
        self.youtube_channel_id = getattr(config, "STREAMELEMENTS_YOUTUBE_CHANNEL_ID", "") or ""
        self.twitch_channel_id = getattr(config, "STREAMELEMENTS_TWITCH_CHANNEL_ID", "") or ""

        self.lifecycle = ConnectionLifecycle(name, Platform.STREAMELEMENTS, bus, clock, retry, config)
        self.socket = ManagedSocket(
            self.lifecycle,
            transport_factory,
            reconnect_fn=self.connect,
            on_open=self._on_open,
            on_frame=self._on_frame,
        )

    @property
    def topics(self) -> List[str]:
        return [
            f"channel.follow.{channel_id}"
            for channel_id in (self.youtube_channel_id, self.twitch_channel_id)
            if channel_id
        ]

    def connect(self) -> bool:
        if not self.token:
            logger.warning("StreamElements JWT token not configured, connector disabled")
            return False
        if not self.lifecycle.begin_connect():
            return False
        logger.info("Connecting to StreamElements")
        return self.socket.open(self.url)

    def disconnect(self):
        self.lifecycle.shutdown(self.socket.close)

    def is_connected(self) -> bool:
        return self.lifecycle.is_ready

    def status(self) -> ConnectionStatus:
        return self.lifecycle.status()

    # --- protocol -----------------------------------------------------------

    def _on_open(self):
        self.lifecycle.mark_authenticating()
        self.socket.send({"type": "auth", "token": self.token})

    def _on_frame(self, message: dict):
        frame_type = message.get("type")
        if frame_type == "auth":
            self._handle_auth(message)
        elif frame_type == "ping":
            logger.debug(f"{self.name}: received ping, sending pong")
            self.socket.send({"type": "pong"})
        elif frame_type == "pong":
            self.lifecycle.keepalive.activity()
        elif frame_type == "event":
            self._handle_event(message)
        else:
            logger.debug(f"{self.name}: unknown message type: {frame_type}")

    def _handle_auth(self, message: dict):
        if not message.get("success"):
            reason = message.get("error") or "unknown error"
            self.lifecycle.fail_auth(f"authentication failed: {reason}", self.socket.close)
            return

        logger.debug(f"{self.name}: authentication successful")
        topics = self.topics
        if not topics:
            logger.warning(f"{self.name}: no channel ids configured, no follow topics subscribed")
        for topic in topics:
            self.socket.send({"type": "subscribe", "topic": topic})
            logger.debug(f"{self.name}: subscribed to {topic}")

        self.lifecycle.mark_ready()
        self.lifecycle.keepalive.start(
            lambda: self.socket.send({"type": "ping"}),
            self.socket.keepalive_expired,
        )

    def _handle_event(self, message: dict):
        data = message.get("data") if isinstance(message.get("data"), dict) else {}
        self.bus.emit(RAW_EVENT, RawEvent(
            connection=self.name,
            platform=Platform.STREAMELEMENTS,
            kind="follow",
            payload=data,
            received_at=self.clock.now(),
            opened_at=self.lifecycle.opened_at,
        ))
