"""
StreamRelay - Tests for the platform connectors.
"""

import json

import httpx
import pytest
from unittest.mock import Mock

from streamrelay.models.events import Platform
from streamrelay.services.bus import CONNECTION_AUTH_FAILED, CONNECTION_STATE, ERROR_EVENT, RAW_EVENT
from streamrelay.services.retry import RetryController
from streamrelay.services.streamelements import StreamElementsConnector
from streamrelay.services.tiktok import TikTokConnector
from streamrelay.services.twitch import TwitchConnector
from streamrelay.services.youtube import YouTubeConnector


class MockConfig:
    """Mock configuration for testing."""
    CONNECT_TIMEOUT_MS = 15000
    KEEPALIVE_INTERVAL_MS = 30000
    KEEPALIVE_MAX_MISSED = 2

    RETRY_INITIAL_DELAY = 1.0
    RETRY_BACKOFF_BASE = 2
    RETRY_BACKOFF_MAX = 30
    RETRY_JITTER = 0.0
    RETRY_MAX_ATTEMPTS = 0

    TIKTOK_USERNAME = "@streamer"
    TIKTOK_API_KEY = ""
    TIKTOK_WEBSOCKET_URL = "wss://relay.test"

    STREAMELEMENTS_JWT_TOKEN = "jwt-token"
    STREAMELEMENTS_WEBSOCKET_URL = "wss://astro.test"
    STREAMELEMENTS_YOUTUBE_CHANNEL_ID = "yt-channel"
    STREAMELEMENTS_TWITCH_CHANNEL_ID = ""

    TWITCH_CLIENT_ID = "client-id"
    TWITCH_ACCESS_TOKEN = "access-token"
    TWITCH_BROADCASTER_ID = "1234"
    TWITCH_EVENTSUB_WEBSOCKET_URL = "wss://eventsub.test/ws"

    YOUTUBE_ADAPTER_URL = "ws://adapter.test/livechat?videoId={video_id}&channelId={channel_id}"
    YOUTUBE_CHANNEL_HANDLE = ""
    YOUTUBE_CHANNEL_ID = ""


class FakeTransport:
    """In-memory transport driven by the test."""

    def __init__(self, url, headers=None, open_timeout=15.0, name="websocket"):
        self.url = url
        self.headers = headers
        self.open_timeout = open_timeout
        self.name = name
        self.handlers = {}
        self.sent = []
        self.pings = 0
        self.opened = False
        self.closed = None

    def on(self, event, callback):
        self.handlers.setdefault(event, []).append(callback)
        return self

    def fire(self, event, *args):
        for callback in self.handlers.get(event, []):
            callback(*args)

    def open(self):
        self.opened = True

    def is_open(self):
        return self.opened and self.closed is None

    def send(self, frame):
        self.sent.append(frame)

    def ping(self):
        self.pings += 1

    def close(self, code=1000, reason=""):
        self.closed = (code, reason)

    # Test helpers

    def accept(self):
        self.fire("open")

    def receive(self, frame):
        self.fire("message", json.dumps(frame))

    def drop(self, code, reason=""):
        self.fire("close", code, reason)


class TransportFactory:
    """Records every transport a connector creates."""

    def __init__(self):
        self.transports = []

    def __call__(self, url, **kwargs):
        transport = FakeTransport(url, **kwargs)
        self.transports.append(transport)
        return transport

    @property
    def last(self):
        return self.transports[-1]


@pytest.fixture
def factory():
    return TransportFactory()


@pytest.fixture
def retry(clock):
    return RetryController(MockConfig(), clock)


@pytest.fixture
def recorded(bus):
    """Collect connection states, raw events, errors and auth failures."""
    events = {"states": [], "raw": [], "errors": [], "auth": []}
    bus.subscribe(CONNECTION_STATE, lambda event: events["states"].append(event.state))
    bus.subscribe(RAW_EVENT, events["raw"].append)
    bus.subscribe(ERROR_EVENT, events["errors"].append)
    bus.subscribe(CONNECTION_AUTH_FAILED, events["auth"].append)
    return events


@pytest.fixture
def tiktok(bus, clock, retry, factory):
    return TikTokConnector(MockConfig(), bus, clock, retry, transport_factory=factory)


def connect_ready(connector, factory, frame):
    """Open a connector and bring it to ready with the given frame."""
    assert connector.connect() is True
    factory.last.accept()
    factory.last.receive(frame)
    return factory.last


class TestTikTokConnector:
    """Tests for the TikTok relay connector."""

    def test_build_url_strips_at(self, tiktok):
        assert tiktok.build_url() == "wss://relay.test?uniqueId=streamer"

    def test_build_url_with_api_key(self, bus, clock, retry, factory):
        class KeyConfig(MockConfig):
            TIKTOK_API_KEY = "secret"

        connector = TikTokConnector(KeyConfig(), bus, clock, retry, transport_factory=factory)
        assert connector.build_url() == "wss://relay.test?uniqueId=streamer&apiKey=secret"

    def test_connect_without_username(self, bus, clock, retry, factory):
        class NoUserConfig(MockConfig):
            TIKTOK_USERNAME = ""

        connector = TikTokConnector(NoUserConfig(), bus, clock, retry, transport_factory=factory)
        assert connector.connect() is False
        assert factory.transports == []

    def test_connect_passes_timeout_and_name(self, tiktok, factory):
        tiktok.connect()
        transport = factory.last
        assert transport.opened is True
        assert transport.open_timeout == 15.0
        assert transport.name == "tiktok"

    def test_ready_on_room_info(self, tiktok, factory, recorded, clock):
        tiktok.connect()
        factory.last.accept()
        assert tiktok.lifecycle.opened_at == clock.now()
        assert not tiktok.is_connected()

        factory.last.receive({"type": "roomInfo", "data": {"roomId": "7001"}})

        assert tiktok.is_connected()
        assert tiktok.room_id == "7001"
        assert recorded["states"] == ["connecting", "open", "ready"]

    def test_second_connect_is_ignored_while_active(self, tiktok, factory):
        tiktok.connect()
        assert tiktok.connect() is False
        assert len(factory.transports) == 1

    def test_chat_frame_emits_raw_event(self, tiktok, factory, recorded, clock):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.receive({"type": "chat", "data": {"comment": "hi", "msgId": "m1"}})

        assert len(recorded["raw"]) == 1
        raw = recorded["raw"][0]
        assert raw.platform == Platform.TIKTOK
        assert raw.kind == "chat"
        assert raw.payload == {"comment": "hi", "msgId": "m1"}
        assert raw.connection == "tiktok"
        assert raw.stream_id == "streamer"
        assert raw.opened_at == clock.now()

    def test_event_frame_marks_ready_without_room_info(self, tiktok, factory, recorded):
        tiktok.connect()
        factory.last.accept()
        factory.last.receive({"type": "gift", "data": {"giftId": 5}})

        assert tiktok.is_connected()
        assert recorded["raw"][0].kind == "gift"

    def test_batched_messages(self, tiktok, factory, recorded):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.receive({"messages": [
            {"type": "WebcastChatMessage", "data": {"comment": "a"}},
            {"type": "member", "data": {}},
            {"type": "WebcastRoomUserSeqMessage", "data": {"viewerCount": 12}},
        ]})

        assert [raw.kind for raw in recorded["raw"]] == ["chat", "roomUser"]

    def test_social_follow_frame(self, tiktok, factory, recorded):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.receive({"type": "social", "data": {"displayType": "pm_mt_msg_viewer_share"}})
        factory.last.receive({"type": "social", "data": {"displayText": {"defaultPattern": "{0:user} followed the host"}}})

        assert [raw.kind for raw in recorded["raw"]] == ["follow"]

    def test_relay_error_frame(self, tiktok, factory, recorded):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.receive({"type": "error", "data": {"message": "rate limited"}})

        assert recorded["errors"][0].category == "upstream"
        assert recorded["errors"][0].message == "rate limited"
        assert tiktok.is_connected()

    def test_invalid_json_reports_parse_error(self, tiktok, factory, recorded):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.fire("message", "not json")
        factory.last.fire("message", "[1, 2]")

        assert [error.category for error in recorded["errors"]] == ["parse", "parse"]
        assert tiktok.is_connected()

    def test_invalid_options_close_is_auth_failure(self, tiktok, factory, recorded, retry):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.drop(4401, "")

        assert tiktok.lifecycle.auth_failed is True
        assert tiktok.status().state == "failed"
        assert not retry.is_pending("tiktok")
        assert recorded["auth"][0]["connection"] == "tiktok"
        assert "invalid options" in recorded["auth"][0]["reason"]

        # Later connects are refused
        assert tiktok.connect() is False
        assert len(factory.transports) == 1

    def test_not_live_close_is_fatal(self, tiktok, factory, recorded, retry):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.drop(4404, "")

        assert tiktok.status().state == "failed"
        assert tiktok.lifecycle.auth_failed is False
        assert not retry.is_pending("tiktok")
        assert recorded["auth"] == []
        assert "not live" in tiktok.status().last_error

    def test_abnormal_close_reconnects_and_resets(self, tiktok, factory, recorded, retry, clock):
        """A dropped session is retried, and readiness resets the retry counter."""
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.drop(1006, "")

        assert tiktok.status().state == "closed"
        assert retry.is_pending("tiktok")
        assert retry.get_retry_count("tiktok") == 1

        clock.advance(1000)
        assert len(factory.transports) == 2
        assert tiktok.status().state == "connecting"

        factory.last.accept()
        factory.last.receive({"type": "roomInfo", "data": {"roomId": "7001"}})
        assert tiktok.is_connected()
        assert retry.get_retry_count("tiktok") == 0
        assert tiktok.status().last_error is None

    def test_stale_transport_close_is_ignored(self, tiktok, factory, clock):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        old = factory.last
        old.drop(1006, "")
        clock.advance(1000)
        factory.last.accept()

        old.drop(1006, "late close")

        assert tiktok.status().state == "open"
        assert len(factory.transports) == 2

    def test_open_timeout(self, tiktok, factory, retry, clock):
        tiktok.connect()
        clock.advance(15000)

        assert tiktok.status().state == "closed"
        assert "timed out" in tiktok.status().last_error
        assert factory.last.closed is None or factory.last.closed[0] == 1000
        assert retry.is_pending("tiktok")

    def test_keepalive_pings_and_expires(self, tiktok, factory, retry, clock):
        transport = connect_ready(tiktok, factory, {"type": "connected", "data": {}})

        clock.advance(60000)
        assert transport.pings == 2
        assert tiktok.is_connected()

        clock.advance(30000)
        assert tiktok.status().state == "closed"
        assert "keep-alive" in tiktok.status().last_error
        assert retry.is_pending("tiktok")

    def test_pong_keeps_connection_alive(self, tiktok, factory, clock):
        transport = connect_ready(tiktok, factory, {"type": "connected", "data": {}})

        for _ in range(5):
            clock.advance(30000)
            transport.fire("pong")

        assert tiktok.is_connected()
        assert transport.pings == 5

    def test_disconnect_closes_without_retry(self, tiktok, factory, recorded, retry, clock):
        transport = connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        tiktok.disconnect()

        assert transport.closed == (1000, "disconnect")
        assert tiktok.status().state == "closed"
        assert not retry.is_pending("tiktok")

        # The transport's own close callback arrives after detaching
        transport.drop(1000, "disconnect")
        clock.advance(60000)
        assert len(factory.transports) == 1
        assert recorded["states"][-2:] == ["closing", "closed"]

    def test_disconnect_cancels_scheduled_reconnect(self, tiktok, factory, retry, clock):
        connect_ready(tiktok, factory, {"type": "connected", "data": {}})
        factory.last.drop(1006, "")
        tiktok.disconnect()

        clock.advance(5000)
        assert len(factory.transports) == 1
        assert not retry.is_pending("tiktok")

    def test_transport_factory_failure_schedules_retry(self, bus, clock, retry):
        factory = Mock(side_effect=OSError("no route"))
        connector = TikTokConnector(MockConfig(), bus, clock, retry, transport_factory=factory)

        assert connector.connect() is False
        assert retry.is_pending("tiktok")
        assert "no route" in connector.status().last_error


class TestTransportErrors:
    """Tests for errors raised by the transport of a live connection."""

    READY = {"type": "connected", "data": {}}

    @pytest.mark.parametrize("error", [
        Mock(code="ECONNRESET"),
        Mock(code=None, status_code=503),
    ])
    def test_transient_error_keeps_connection(self, tiktok, factory, retry, error):
        transport = connect_ready(tiktok, factory, self.READY)
        transport.fire("error", error)

        assert tiktok.is_connected()
        assert transport.closed is None
        assert not retry.is_pending("tiktok")

    @pytest.mark.parametrize("error", [
        Mock(code=429),
        Mock(code=None, status_code=400),
    ])
    def test_api_error_closes_and_reconnects(self, tiktok, factory, retry, clock, error):
        transport = connect_ready(tiktok, factory, self.READY)
        transport.fire("error", error)

        assert transport.closed == (1000, "api error")
        assert tiktok.lifecycle.last_error == str(error)

        transport.drop(1000, "api error")

        assert tiktok.status().state == "closed"
        assert retry.is_pending("tiktok")
        assert tiktok.lifecycle.auth_failed is False

        clock.advance(1000)
        assert len(factory.transports) == 2

    def test_auth_error_fails_without_retry(self, tiktok, factory, retry, recorded):
        transport = connect_ready(tiktok, factory, self.READY)
        transport.fire("error", Mock(code=None, status_code=401))

        assert tiktok.status().state == "failed"
        assert tiktok.lifecycle.auth_failed is True
        assert transport.closed is not None
        assert not retry.is_pending("tiktok")
        assert recorded["auth"][0]["connection"] == "tiktok"

    def test_error_from_replaced_transport_is_ignored(self, tiktok, factory, retry, clock):
        old = connect_ready(tiktok, factory, self.READY)
        old.drop(1006, "abnormal")
        clock.advance(1000)
        fresh = factory.last
        fresh.accept()
        fresh.receive(self.READY)

        old.fire("error", Mock(code=None, status_code=401))

        assert tiktok.is_connected()
        assert tiktok.lifecycle.auth_failed is False


class TestStreamElementsConnector:
    """Tests for the StreamElements follow feed."""

    @pytest.fixture
    def connector(self, bus, clock, retry, factory):
        return StreamElementsConnector(MockConfig(), bus, clock, retry, transport_factory=factory)

    def test_connect_without_token(self, bus, clock, retry, factory):
        class NoTokenConfig(MockConfig):
            STREAMELEMENTS_JWT_TOKEN = ""

        connector = StreamElementsConnector(NoTokenConfig(), bus, clock, retry, transport_factory=factory)
        assert connector.connect() is False
        assert factory.transports == []

    def test_sends_auth_on_open(self, connector, factory):
        connector.connect()
        factory.last.accept()

        assert factory.last.url == "wss://astro.test"
        assert factory.last.sent == [{"type": "auth", "token": "jwt-token"}]
        assert connector.status().state == "authenticating"

    def test_subscribes_after_auth(self, connector, factory):
        connect_ready(connector, factory, {"type": "auth", "success": True})

        assert factory.last.sent[1:] == [{"type": "subscribe", "topic": "channel.follow.yt-channel"}]
        assert connector.is_connected()

    def test_failed_auth(self, connector, factory, recorded, retry):
        transport = connect_ready(connector, factory, {"type": "auth", "success": False, "error": "bad token"})

        assert connector.lifecycle.auth_failed is True
        assert transport.closed is not None
        assert "bad token" in recorded["auth"][0]["reason"]
        assert not retry.is_pending("streamelements")

    def test_answers_ping(self, connector, factory):
        connect_ready(connector, factory, {"type": "auth", "success": True})
        factory.last.receive({"type": "ping"})

        assert factory.last.sent[-1] == {"type": "pong"}

    def test_keepalive_sends_ping_frames(self, connector, factory, clock):
        transport = connect_ready(connector, factory, {"type": "auth", "success": True})
        clock.advance(30000)

        assert transport.sent[-1] == {"type": "ping"}
        transport.receive({"type": "pong"})
        clock.advance(60000)
        assert connector.is_connected()

    def test_follow_event(self, connector, factory, recorded):
        connect_ready(connector, factory, {"type": "auth", "success": True})
        factory.last.receive({"type": "event", "data": {"provider": "youtube", "username": "viewer"}})

        raw = recorded["raw"][0]
        assert raw.platform == Platform.STREAMELEMENTS
        assert raw.kind == "follow"
        assert raw.payload["username"] == "viewer"


class TestTwitchConnector:
    """Tests for the Twitch EventSub connector."""

    WELCOME = {
        "metadata": {"message_type": "session_welcome"},
        "payload": {"session": {"id": "session-1"}},
    }

    @pytest.fixture
    def connector(self, bus, clock, retry, factory):
        return TwitchConnector(MockConfig(), bus, clock, retry, transport_factory=factory)

    @pytest.fixture
    def helix(self, monkeypatch):
        """Patch the Helix subscription endpoint."""
        calls = []
        status = {"code": 202}

        def fake_post(url, json=None, headers=None):
            calls.append({"url": url, "json": json, "headers": headers})
            request = httpx.Request("POST", url)
            if status["code"] in (200, 202):
                body = {"data": [{"id": f"sub-{len(calls)}"}]}
                return httpx.Response(status["code"], json=body, request=request)
            return httpx.Response(status["code"], text="denied", request=request)

        monkeypatch.setattr("streamrelay.services.twitch.httpx.post", fake_post)
        return calls, status

    def test_connect_without_credentials(self, bus, clock, retry, factory):
        class NoTokenConfig(MockConfig):
            TWITCH_ACCESS_TOKEN = ""

        connector = TwitchConnector(NoTokenConfig(), bus, clock, retry, transport_factory=factory)
        assert connector.connect() is False

    def test_welcome_creates_subscriptions(self, connector, factory, helix):
        calls, _ = helix
        connect_ready(connector, factory, self.WELCOME)

        assert connector.is_connected()
        assert connector.session_id == "session-1"
        assert len(calls) == len(TwitchConnector.SUBSCRIPTION_TYPES)
        assert connector.subscriptions == sorted(TwitchConnector.SUBSCRIPTION_TYPES)

        first = calls[0]
        assert first["json"]["transport"] == {"method": "websocket", "session_id": "session-1"}
        assert first["headers"]["Authorization"] == "Bearer access-token"
        assert first["headers"]["Client-Id"] == "client-id"

    def test_follow_condition_includes_moderator(self, connector, helix):
        assert connector._condition("channel.follow") == {
            "broadcaster_user_id": "1234",
            "moderator_user_id": "1234",
        }
        assert connector._condition("channel.raid") == {"to_broadcaster_user_id": "1234"}

    def test_unauthorized_subscription_fails_auth(self, connector, factory, helix, recorded, retry):
        calls, status = helix
        status["code"] = 401
        transport = connect_ready(connector, factory, self.WELCOME)

        assert connector.lifecycle.auth_failed is True
        assert len(calls) == 1
        assert transport.closed is not None
        assert recorded["auth"][0]["platform"] == "twitch"
        assert not retry.is_pending("twitch")

    @pytest.mark.parametrize("code", [400, 429])
    def test_api_error_on_subscription_reconnects(self, connector, factory, helix, recorded, retry, code):
        """Test that a rejected subscription closes the session and schedules a retry."""
        calls, status = helix
        status["code"] = code
        transport = connect_ready(connector, factory, self.WELCOME)

        assert len(calls) == 1
        assert not connector.is_connected()
        assert connector.status().state == "closed"
        assert transport.closed is not None
        assert retry.is_pending("twitch")
        assert connector.lifecycle.auth_failed is False
        assert recorded["errors"][0].category == "api"
        assert str(code) in recorded["errors"][0].message

    def test_api_error_reconnect_creates_fresh_session(self, connector, factory, helix, clock):
        calls, status = helix
        status["code"] = 429
        connect_ready(connector, factory, self.WELCOME)

        status["code"] = 202
        clock.advance(1000)
        assert len(factory.transports) == 2

        fresh = factory.last
        fresh.accept()
        fresh.receive(self.WELCOME)

        assert connector.is_connected()
        assert len(calls) == 1 + len(TwitchConnector.SUBSCRIPTION_TYPES)

    def test_welcome_without_session_id(self, connector, factory, helix, recorded):
        connect_ready(connector, factory, {"metadata": {"message_type": "session_welcome"}, "payload": {}})

        assert not connector.is_connected()
        assert recorded["errors"][0].category == "parse"

    def test_notification_emits_raw_event(self, connector, factory, helix, recorded):
        connect_ready(connector, factory, self.WELCOME)
        factory.last.receive({
            "metadata": {
                "message_type": "notification",
                "message_id": "msg-1",
                "message_timestamp": "2023-11-14T22:13:20Z",
                "subscription_type": "channel.chat.message",
            },
            "payload": {
                "subscription": {"type": "channel.chat.message"},
                "event": {"chatter_user_name": "viewer", "message": {"text": "hi"}},
            },
        })

        raw = recorded["raw"][0]
        assert raw.kind == "channel.chat.message"
        assert raw.stream_id == "1234"
        assert raw.payload["message_id"] == "msg-1"
        assert raw.payload["timestamp"] == "2023-11-14T22:13:20Z"
        assert raw.payload["chatter_user_name"] == "viewer"

    @staticmethod
    def chat_notification(message_id):
        return {
            "metadata": {
                "message_type": "notification",
                "message_id": message_id,
                "subscription_type": "channel.chat.message",
            },
            "payload": {
                "subscription": {"type": "channel.chat.message"},
                "event": {"chatter_user_name": "viewer", "message": {"text": "hi"}},
            },
        }

    def test_session_reconnect_keeps_subscriptions(self, connector, factory, helix, recorded, clock):
        """Test that the old session keeps delivering until the new one is welcomed."""
        calls, _ = helix
        old = connect_ready(connector, factory, self.WELCOME)
        opened_at = connector.lifecycle.opened_at
        old.receive({
            "metadata": {"message_type": "session_reconnect"},
            "payload": {"session": {"id": "session-1", "reconnect_url": "wss://reconnect.test/ws"}},
        })

        assert old.closed is None
        assert factory.last.url == "wss://reconnect.test/ws"
        assert connector.status().state == "connecting"

        # Events still arriving on the old socket are not lost
        old.receive(self.chat_notification("during-handover"))
        assert [raw.payload["message_id"] for raw in recorded["raw"]] == ["during-handover"]

        clock.advance(100)
        new = factory.last
        new.accept()
        new.receive({
            "metadata": {"message_type": "session_welcome"},
            "payload": {"session": {"id": "session-2"}},
        })

        assert old.closed == (1000, "session reconnect")
        assert connector.is_connected()
        assert connector.session_id == "session-2"
        assert connector.lifecycle.opened_at == opened_at
        assert len(calls) == len(TwitchConnector.SUBSCRIPTION_TYPES)
        assert "authenticating" not in recorded["states"][recorded["states"].index("ready") + 1:]

        # The old socket's close must not trigger a retry
        old.drop(1000, "session reconnect")
        assert connector.is_connected()
        assert len(factory.transports) == 2

    def test_disconnect_during_handover_closes_both(self, connector, factory, helix):
        old = connect_ready(connector, factory, self.WELCOME)
        old.receive({
            "metadata": {"message_type": "session_reconnect"},
            "payload": {"session": {"id": "session-1", "reconnect_url": "wss://reconnect.test/ws"}},
        })
        connector.disconnect()

        assert old.closed is not None
        assert factory.last.closed is not None
        assert connector.status().state == "closed"

    def test_revocation_reports_error(self, connector, factory, helix, recorded):
        connect_ready(connector, factory, self.WELCOME)
        factory.last.receive({
            "metadata": {"message_type": "revocation"},
            "payload": {"subscription": {"type": "channel.cheer", "status": "authorization_revoked"}},
        })

        assert "channel.cheer" not in connector.subscriptions
        assert recorded["errors"][0].category == "revocation"

    def test_keepalive_message_counts_as_activity(self, connector, factory, helix, clock):
        transport = connect_ready(connector, factory, self.WELCOME)
        for _ in range(4):
            clock.advance(30000)
            transport.receive({"metadata": {"message_type": "session_keepalive"}, "payload": {}})

        assert connector.is_connected()


class TestYouTubeConnector:
    """Tests for the YouTube LiveChat connector."""

    @pytest.fixture
    def connector(self, bus, clock, retry, factory):
        return YouTubeConnector(MockConfig(), bus, clock, retry, video_id="abc123", transport_factory=factory)

    def test_name_includes_video_id(self, connector, bus, clock, retry, factory):
        assert connector.name == "youtube:abc123"
        assert YouTubeConnector(MockConfig(), bus, clock, retry, transport_factory=factory).name == "youtube"

    def test_build_url(self, connector):
        assert connector.build_url() == "ws://adapter.test/livechat?videoId=abc123&channelId="

    def test_connect_without_stream_or_channel(self, bus, clock, retry, factory):
        connector = YouTubeConnector(MockConfig(), bus, clock, retry, transport_factory=factory)
        assert connector.connect() is False
        assert factory.transports == []

    def test_resolves_channel_handle(self, bus, clock, retry, factory):
        class HandleConfig(MockConfig):
            YOUTUBE_CHANNEL_HANDLE = "@channel"

        resolver = Mock()
        resolver.resolve.return_value = "UC123"
        connector = YouTubeConnector(HandleConfig(), bus, clock, retry, resolver=resolver,
                                     video_id="abc123", transport_factory=factory)

        assert connector.connect() is True
        resolver.resolve.assert_called_once_with("@channel", owner=connector)
        assert factory.last.url.endswith("channelId=UC123")

    def test_unresolved_handle_without_stream_retries(self, bus, clock, retry, factory):
        class HandleConfig(MockConfig):
            YOUTUBE_CHANNEL_HANDLE = "@missing"

        resolver = Mock()
        resolver.resolve.return_value = None
        connector = YouTubeConnector(HandleConfig(), bus, clock, retry, resolver=resolver,
                                     transport_factory=factory)

        assert connector.connect() is False
        assert factory.transports == []
        assert retry.is_pending("youtube")
        assert "@missing" in connector.status().last_error

    def test_start_marks_ready(self, connector, factory):
        connect_ready(connector, factory, {"type": "start", "data": {"actions": [{}, {}]}})
        assert connector.is_connected()

    def test_chat_update_emits_each_item(self, connector, factory, recorded):
        connect_ready(connector, factory, {"type": "start", "data": {}})
        factory.last.receive({"type": "chat-update", "data": [
            {"id": "c1", "message": "hello"},
            {"id": "c2", "message": "world"},
        ]})

        assert [raw.payload["id"] for raw in recorded["raw"]] == ["c1", "c2"]
        assert all(raw.kind == "chat" and raw.stream_id == "abc123" for raw in recorded["raw"])
        assert recorded["raw"][0].connection == "youtube:abc123"

    def test_error_frame(self, connector, factory, recorded):
        connect_ready(connector, factory, {"type": "start", "data": {}})
        factory.last.receive({"type": "error", "data": {"message": "chat disabled"}})

        assert recorded["errors"][0].category == "upstream"
        assert recorded["errors"][0].message == "chat disabled"

    def test_end_frame_closes_without_retry(self, connector, factory, retry, clock):
        transport = connect_ready(connector, factory, {"type": "start", "data": {}})
        transport.receive({"type": "end"})

        assert connector.status().state == "closed"
        assert transport.closed is not None
        assert not retry.is_pending("youtube:abc123")
        clock.advance(60000)
        assert len(factory.transports) == 1

    def test_disconnect_cancels_resolution(self, bus, clock, retry, factory):
        resolver = Mock()
        connector = YouTubeConnector(MockConfig(), bus, clock, retry, resolver=resolver,
                                     video_id="abc123", transport_factory=factory)
        connector.connect()
        connector.disconnect()

        resolver.cancel_owner.assert_called_once_with(connector)
