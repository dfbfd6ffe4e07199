"""
StreamRelay - TikTok connector.
Receives TikTok LIVE events from a WebSocket relay keyed by username.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from streamrelay.errors import PlatformConnectionError
from streamrelay.models.events import Platform, RawEvent
from streamrelay.services.bus import RAW_EVENT, EventBus
from streamrelay.services.clock import Clock
from streamrelay.services.connection import ConnectionLifecycle, ConnectionStatus, ManagedSocket
from streamrelay.services.retry import RetryController
from streamrelay.services.transport import WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_TIKTOK_WEBSOCKET_URL = "wss://ws.eulerstream.com"

# Relay frame type -> normalizer kind
TIKTOK_KINDS = {
    "chat": "chat",
    "WebcastChatMessage": "chat",
    "gift": "gift",
    "WebcastGiftMessage": "gift",
    "follow": "follow",
    "subscribe": "subscribe",
    "roomUser": "roomUser",
    "viewerCount": "roomUser",
    "viewer_count": "roomUser",
    "WebcastRoomUserSeqMessage": "roomUser",
}

READY_FRAMES = {"connected", "roomInfo"}
IGNORED_FRAMES = {"member", "join", "WebcastMemberMessage", "workerInfo", "like", "share"}

CLOSE_INVALID_OPTIONS = 4401
CLOSE_NOT_LIVE = 4404
CLOSE_TOO_MANY_CONNECTIONS = 4429

CLOSE_REASONS = {
    4005: "stream ended",
    4006: "no messages timeout",
    CLOSE_INVALID_OPTIONS: "invalid options provided",
    CLOSE_NOT_LIVE: "user is not live",
    CLOSE_TOO_MANY_CONNECTIONS: "too many connections",
    4500: "TikTok closed connection unexpectedly",
}


def is_follow_action(data: dict) -> bool:
    """Social frames carry follows alongside shares."""
    display_text = data.get("displayText") if isinstance(data.get("displayText"), dict) else {}
    pattern = str(display_text.get("defaultPattern") or "").lower()
    return data.get("actionType") == "follow" or data.get("displayType") == "follow" or "follow" in pattern


class TikTokConnector:
    """Connection to a TikTok LIVE relay for one username."""

    platform = Platform.TIKTOK

    def __init__(self, config, bus: EventBus, clock: Clock, retry: RetryController,
                 transport_factory=WebSocketTransport, name: str = "tiktok"):
        self.config = config
        self.bus = bus
        self.clock = clock
        self.name = name
        self.username = (config.TIKTOK_USERNAME or "").strip().lstrip("@")
        self.api_key = getattr(config, "TIKTOK_API_KEY", "") or ""
        self.base_url = getattr(config, "TIKTOK_WEBSOCKET_URL", "") or DEFAULT_TIKTOK_WEBSOCKET_URL
        self.room_id: Optional[str] = None

        self.lifecycle = ConnectionLifecycle(
            name, Platform.TIKTOK, bus, clock, retry, config, stream_id=self.username
        )
        self.socket = ManagedSocket(
            self.lifecycle,
            transport_factory,
            reconnect_fn=self.connect,
            on_open=self._on_open,
            on_frame=self._on_frame,
            on_close=self._on_close,
        )

    def build_url(self) -> str:
        params = {"uniqueId": self.username}
        if self.api_key:
            params["apiKey"] = self.api_key
        return f"{self.base_url}?{urlencode(params)}"

    def connect(self) -> bool:
        if not self.username:
            logger.warning("TikTok username not configured, connector disabled")
            return False
        if not self.lifecycle.begin_connect():
            return False
        logger.info(f"Connecting to TikTok LIVE for @{self.username}")
        return self.socket.open(self.build_url())

    def disconnect(self):
        self.lifecycle.shutdown(self.socket.close)

    def is_connected(self) -> bool:
        return self.lifecycle.is_ready

    def status(self) -> ConnectionStatus:
        return self.lifecycle.status()

    # --- transport callbacks ------------------------------------------------

    def _on_open(self):
        logger.debug(f"{self.name}: relay socket open, waiting for room info")

    def _mark_ready(self):
        if self.lifecycle.is_ready:
            return
        self.lifecycle.mark_ready()
        self.socket.start_keepalive()

    def _on_frame(self, payload: dict):
        messages = payload.get("messages")
        if isinstance(messages, list):
            for message in messages:
                if isinstance(message, dict):
                    self._handle_message(message)
            return
        self._handle_message(payload)

    def _handle_message(self, message: dict):
        frame_type = message.get("type")
        data = message.get("data") if isinstance(message.get("data"), dict) else {}

        if frame_type in READY_FRAMES:
            room_info = data.get("roomInfo") if isinstance(data.get("roomInfo"), dict) else data
            self.room_id = str(room_info.get("roomId") or room_info.get("id") or "") or self.room_id
            self._mark_ready()
            return
        if frame_type == "error":
            error_message = str(data.get("message") or message.get("message") or "unknown relay error")
            logger.warning(f"{self.name}: relay error: {error_message}")
            self.lifecycle.report_error("upstream", error_message)
            return
        if frame_type in IGNORED_FRAMES:
            return

        kind = TIKTOK_KINDS.get(frame_type)
        if frame_type in ("social", "WebcastSocialMessage") and is_follow_action(data):
            kind = "follow"
        if kind is None:
            logger.debug(f"{self.name}: ignoring '{frame_type}' frame")
            return

        # Some relays skip the room info frame and start streaming events
        self._mark_ready()
        self.bus.emit(RAW_EVENT, RawEvent(
            connection=self.name,
            platform=Platform.TIKTOK,
            kind=kind,
            payload=data,
            received_at=self.clock.now(),
            opened_at=self.lifecycle.opened_at,
            stream_id=self.username,
        ))

    def _on_close(self, code: int, reason: str) -> bool:
        description = CLOSE_REASONS.get(code, reason or f"close code {code}")
        if code == CLOSE_INVALID_OPTIONS:
            self.lifecycle.fail_auth(f"{description} ({code})", self.socket.close)
            return True
        if code in (CLOSE_NOT_LIVE, CLOSE_TOO_MANY_CONNECTIONS):
            self.socket.fail(PlatformConnectionError.fatal(f"{description} ({code})", code=code))
            return True
        return False
