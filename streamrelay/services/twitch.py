"""
StreamRelay - Twitch EventSub connector.
Receives Twitch events over the EventSub WebSocket transport.
"""

import logging
from typing import Dict, List, Optional

import httpx

from streamrelay.errors import API_CODES, PlatformConnectionError
from streamrelay.models.events import Platform, RawEvent
from streamrelay.services.bus import RAW_EVENT, EventBus
from streamrelay.services.clock import Clock
from streamrelay.services.connection import ConnectionLifecycle, ConnectionStatus, ManagedSocket
from streamrelay.services.retry import RetryController
from streamrelay.services.transport import WebSocketTransport

logger = logging.getLogger(__name__)

# Twitch API endpoints
TWITCH_API_URL = "https://api.twitch.tv/helix"
TWITCH_EVENTSUB_URL = f"{TWITCH_API_URL}/eventsub/subscriptions"
TWITCH_EVENTSUB_WEBSOCKET_URL = "wss://eventsub.wss.twitch.tv/ws?keepalive_timeout_seconds=30"

AUTH_STATUS_CODES = (401, 403)


class TwitchConnector:
    """EventSub WebSocket session for one broadcaster."""

    # EventSub subscription type -> version
    SUBSCRIPTION_TYPES = {
        "channel.chat.message": "1",
        "channel.follow": "2",
        "channel.cheer": "1",
        "channel.subscribe": "1",
        "channel.subscription.message": "1",
        "channel.subscription.gift": "1",
        "channel.raid": "1",
    }

    platform = Platform.TWITCH

    def __init__(self, config, bus: EventBus, clock: Clock, retry: RetryController,
                 transport_factory=WebSocketTransport, name: str = "twitch"):
        self.config = config
        self.bus = bus
        self.clock = clock
        self.name = name
        self.websocket_url = getattr(config, "TWITCH_EVENTSUB_WEBSOCKET_URL", "") or TWITCH_EVENTSUB_WEBSOCKET_URL

        self.session_id: Optional[str] = None
        self._subscriptions: Dict[str, str] = {}  # type -> subscription_id
        self._reconnect_url: Optional[str] = None

        self.lifecycle = ConnectionLifecycle(
            name, Platform.TWITCH, bus, clock, retry, config,
            stream_id=config.TWITCH_BROADCASTER_ID or None,
        )
        self.socket = ManagedSocket(
            self.lifecycle,
            transport_factory,
            reconnect_fn=self.connect,
            on_open=self._on_open,
            on_frame=self._on_frame,
        )

    def connect(self) -> bool:
        if not self.config.TWITCH_CLIENT_ID or not self.config.TWITCH_ACCESS_TOKEN:
            logger.warning("Twitch credentials not configured, connector disabled")
            return False
        if not self.lifecycle.begin_connect():
            return False
        # A fresh session needs fresh subscriptions
        self._reconnect_url = None
        self._subscriptions = {}
        logger.info("Connecting to Twitch EventSub")
        return self.socket.open(self.websocket_url)

    def disconnect(self):
        self.lifecycle.shutdown(self.socket.close)

    def is_connected(self) -> bool:
        return self.lifecycle.is_ready

    def status(self) -> ConnectionStatus:
        return self.lifecycle.status()

    # --- EventSub messages ----------------------------------------------------

    def _on_open(self):
        logger.debug(f"{self.name}: socket open, waiting for session_welcome")

    def _on_frame(self, message: dict):
        metadata = message.get("metadata") if isinstance(message.get("metadata"), dict) else {}
        payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}
        message_type = metadata.get("message_type")

        if message_type == "session_welcome":
            self._handle_welcome(payload)
        elif message_type == "session_keepalive":
            self.lifecycle.keepalive.activity()
        elif message_type == "notification":
            self._handle_notification(metadata, payload)
        elif message_type == "session_reconnect":
            self._handle_reconnect(payload)
        elif message_type == "revocation":
            subscription = payload.get("subscription") or {}
            reason = f"subscription {subscription.get('type')} revoked: {subscription.get('status')}"
            logger.warning(f"{self.name}: {reason}")
            self._subscriptions.pop(subscription.get("type"), None)
            self.lifecycle.report_error("revocation", reason)
        else:
            logger.debug(f"{self.name}: unknown message type: {message_type}")

    def _handle_welcome(self, payload: dict):
        session = payload.get("session") or {}
        self.session_id = session.get("id")
        if not self.session_id:
            self.socket.parse_error("session_welcome without a session id")
            return

        resumed = self._reconnect_url is not None
        self._reconnect_url = None
        if resumed:
            # The new session is live, the old socket can go
            self.socket.release_previous(1000, "session reconnect")
        if not resumed:
            self.lifecycle.mark_authenticating()
            for sub_type, version in self.SUBSCRIPTION_TYPES.items():
                status = self._create_subscription(sub_type, version)
                if status in AUTH_STATUS_CODES:
                    self.lifecycle.fail_auth(
                        f"subscription {sub_type} rejected with {status}", self.socket.close
                    )
                    return
                if str(status) in API_CODES:
                    reason = f"subscription {sub_type} failed with {status}"
                    self.lifecycle.report_error("api", reason)
                    self.socket.fail(PlatformConnectionError.transient(reason, code=status))
                    return

        self.lifecycle.mark_ready()
        self.socket.start_keepalive()

    def _handle_notification(self, metadata: dict, payload: dict):
        subscription = payload.get("subscription") or {}
        sub_type = subscription.get("type") or metadata.get("subscription_type")
        event = payload.get("event")
        if not sub_type or not isinstance(event, dict):
            self.socket.parse_error("notification without subscription type or event")
            return

        data = dict(event)
        data.setdefault("timestamp", metadata.get("message_timestamp"))
        data.setdefault("message_id", metadata.get("message_id"))
        self.bus.emit(RAW_EVENT, RawEvent(
            connection=self.name,
            platform=Platform.TWITCH,
            kind=sub_type,
            payload=data,
            received_at=self.clock.now(),
            opened_at=self.lifecycle.opened_at,
            stream_id=self.lifecycle.stream_id,
        ))

    def _handle_reconnect(self, payload: dict):
        session = payload.get("session") or {}
        url = session.get("reconnect_url")
        if not url:
            self.socket.parse_error("session_reconnect without a reconnect url")
            return
        logger.info(f"{self.name}: server requested reconnect")
        self._reconnect_url = url
        self.lifecycle.mark_reconnecting("session reconnect")
        self.socket.handover(url)

    # --- Helix API ------------------------------------------------------------

    def _condition(self, sub_type: str) -> Dict[str, str]:
        broadcaster_id = self.config.TWITCH_BROADCASTER_ID
        if sub_type == "channel.raid":
            return {"to_broadcaster_user_id": broadcaster_id}
        if sub_type == "channel.follow":
            return {"broadcaster_user_id": broadcaster_id, "moderator_user_id": broadcaster_id}
        if sub_type == "channel.chat.message":
            return {"broadcaster_user_id": broadcaster_id, "user_id": broadcaster_id}
        return {"broadcaster_user_id": broadcaster_id}

    def _create_subscription(self, sub_type: str, version: str) -> int:
        """
        Create an EventSub subscription bound to the current session.

        Returns:
            The HTTP status code, or 0 if the request failed
        """
        payload = {
            "type": sub_type,
            "version": version,
            "condition": self._condition(sub_type),
            "transport": {
                "method": "websocket",
                "session_id": self.session_id,
            },
        }
        try:
            response = httpx.post(TWITCH_EVENTSUB_URL, json=payload, headers=self._get_headers())
        except httpx.HTTPError as e:
            logger.error(f"Subscription creation error for {sub_type}: {e}")
            return 0

        if response.status_code in (200, 202):
            data = response.json()
            sub_id = data["data"][0]["id"]
            self._subscriptions[sub_type] = sub_id
            logger.info(f"Created subscription: {sub_type} ({sub_id})")
        else:
            logger.error(f"Failed to create subscription {sub_type}: {response.status_code} - {response.text}")
        return response.status_code

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for Twitch API requests."""
        return {
            "Authorization": f"Bearer {self.config.TWITCH_ACCESS_TOKEN}",
            "Client-Id": self.config.TWITCH_CLIENT_ID,
            "Content-Type": "application/json",
        }

    @property
    def subscriptions(self) -> List[str]:
        return sorted(self._subscriptions)
