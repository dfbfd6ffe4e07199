"""
StreamRelay - YouTube LiveChat connector.
Receives live chat for one YouTube stream from a LiveChat relay socket.
"""

import logging
from typing import Optional
from urllib.parse import quote

from streamrelay.errors import PlatformConnectionError
from streamrelay.models.events import Platform, RawEvent
from streamrelay.services.bus import RAW_EVENT, EventBus
from streamrelay.services.clock import Clock
from streamrelay.services.connection import ConnectionLifecycle, ConnectionStatus, ManagedSocket
from streamrelay.services.resolver import ChannelResolver
from streamrelay.services.retry import RetryController
from streamrelay.services.transport import WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_YOUTUBE_ADAPTER_URL = "ws://localhost:3001/livechat?videoId={video_id}&channelId={channel_id}"


class YouTubeConnector:
    """
    LiveChat session for a single stream.

    One connector exists per configured stream id so several streams can
    be followed at once.
    """

    platform = Platform.YOUTUBE

    def __init__(self, config, bus: EventBus, clock: Clock, retry: RetryController,
                 resolver: Optional[ChannelResolver] = None, video_id: str = "",
                 transport_factory=WebSocketTransport, name: Optional[str] = None):
        self.config = config
        self.bus = bus
        self.clock = clock
        self.resolver = resolver
        self.video_id = video_id
        self.name = name or (f"youtube:{video_id}" if video_id else "youtube")
        self.url_template = getattr(config, "YOUTUBE_ADAPTER_URL", "") or DEFAULT_YOUTUBE_ADAPTER_URL
        self.channel_handle = getattr(config, "YOUTUBE_CHANNEL_HANDLE", "") or ""
        self.channel_id: Optional[str] = getattr(config, "YOUTUBE_CHANNEL_ID", "") or None

        self.lifecycle = ConnectionLifecycle(
            self.name, Platform.YOUTUBE, bus, clock, retry, config, stream_id=video_id or None
        )
        self.socket = ManagedSocket(
            self.lifecycle,
            transport_factory,
            reconnect_fn=self.connect,
            on_open=self._on_open,
            on_frame=self._on_frame,
        )

    def build_url(self) -> str:
        return self.url_template.format(
            video_id=quote(self.video_id or "", safe=""),
            channel_id=quote(self.channel_id or "", safe=""),
        )

    def connect(self) -> bool:
        if not self.video_id and not (self.channel_id or self.channel_handle):
            logger.warning("No YouTube stream id or channel configured, connector disabled")
            return False
        if not self.lifecycle.begin_connect():
            return False

        if not self.channel_id and self.channel_handle and self.resolver:
            self.channel_id = self.resolver.resolve(self.channel_handle, owner=self)
            if self.lifecycle.stopped:
                return False
            if not self.channel_id and not self.video_id:
                self.socket.fail(PlatformConnectionError.transient(
                    f"could not resolve channel handle {self.channel_handle}"
                ))
                return False

        logger.info(f"Connecting to YouTube live chat ({self.video_id or self.channel_id})")
        return self.socket.open(self.build_url())

    def disconnect(self):
        if self.resolver:
            self.resolver.cancel_owner(self)
        self.lifecycle.shutdown(self.socket.close)

    def is_connected(self) -> bool:
        return self.lifecycle.is_ready

    def status(self) -> ConnectionStatus:
        return self.lifecycle.status()

    # --- relay frames ---------------------------------------------------------

    def _on_open(self):
        logger.debug(f"{self.name}: relay socket open, waiting for start")

    def _mark_ready(self):
        if self.lifecycle.is_ready:
            return
        self.lifecycle.mark_ready()
        self.socket.start_keepalive()

    def _on_frame(self, message: dict):
        frame_type = message.get("type")
        data = message.get("data")

        if frame_type == "start":
            backlog = data.get("actions") if isinstance(data, dict) else None
            if backlog:
                logger.debug(f"{self.name}: skipping {len(backlog)} backlog action(s)")
            self._mark_ready()
        elif frame_type == "chat-update":
            self._mark_ready()
            items = data if isinstance(data, list) else [data]
            for item in items:
                if isinstance(item, dict):
                    self._emit_chat(item)
        elif frame_type == "error":
            text = data.get("message") if isinstance(data, dict) else data
            logger.warning(f"{self.name}: live chat error: {text}")
            self.lifecycle.report_error("upstream", str(text or "unknown live chat error"))
        elif frame_type == "end":
            logger.info(f"{self.name}: stream ended")
            self.lifecycle.shutdown(self.socket.close)
        else:
            logger.debug(f"{self.name}: ignoring '{frame_type}' frame")

    def _emit_chat(self, item: dict):
        self.bus.emit(RAW_EVENT, RawEvent(
            connection=self.name,
            platform=Platform.YOUTUBE,
            kind="chat",
            payload=item,
            received_at=self.clock.now(),
            opened_at=self.lifecycle.opened_at,
            stream_id=self.video_id or None,
        ))
