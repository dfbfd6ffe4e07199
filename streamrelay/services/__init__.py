"""
StreamRelay - Services package.
Initialize and manage all application services.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from flask import Flask
from flask_socketio import SocketIO

from streamrelay.errors import ErrorReporter
from streamrelay.services.bus import CONNECTION_AUTH_FAILED, EventBus
from streamrelay.services.clock import Clock, SystemClock
from streamrelay.services.datalog import DataLogger
from streamrelay.services.gate import CooldownGate
from streamrelay.services.goals import GoalTracker
from streamrelay.services.normalizer import EventNormalizer
from streamrelay.services.resolver import ChannelResolver
from streamrelay.services.retry import RetryController
from streamrelay.services.router import EventRouter
from streamrelay.services.sink import OutputSink, SocketIOSink
from streamrelay.services.spam import SpamDetector

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every long-lived service of one running relay."""
    config: object
    clock: Clock
    bus: EventBus
    retry: RetryController
    normalizer: EventNormalizer
    spam: SpamDetector
    gate: CooldownGate
    goals: GoalTracker
    sink: OutputSink
    router: EventRouter
    resolver: ChannelResolver
    datalog: Optional[DataLogger] = None
    connectors: Dict[str, object] = field(default_factory=dict)
    started: bool = False

    def connector(self, name: str):
        return self.connectors.get(name)

    def connection_statuses(self) -> List[dict]:
        return [connector.status().to_dict() for connector in self.connectors.values()]

    def statistics(self) -> dict:
        return {
            "connections": self.connection_statuses(),
            "bus": self.bus.statistics(),
            "retry": self.retry.statistics(),
            "gate": self.gate.status(),
            "router": self.router.statistics(),
            "goals": self.goals.totals(),
            "spam_windows": self.spam.active_windows(),
        }


def build_runtime(config, sink: OutputSink, clock: Optional[Clock] = None,
                  transport_factory=None, resolver: Optional[ChannelResolver] = None) -> Runtime:
    """Wire the pipeline and one connector per enabled platform."""
    clock = clock or SystemClock()
    bus = EventBus(
        clock,
        max_listeners=config.EVENT_BUS_MAX_LISTENERS,
        debug=config.EVENT_BUS_DEBUG,
    )
    retry = RetryController(config, clock)
    normalizer = EventNormalizer(config)
    spam = SpamDetector(config, clock)
    gate = CooldownGate(config, clock, bus=bus, spam_detector=spam)
    goals = GoalTracker(clock, window=config.GOAL_DEDUP_WINDOW)
    datalog = DataLogger(config) if config.DATA_LOGGING_ENABLED else None
    router = EventRouter(
        config, bus, clock, normalizer, gate, goals, sink,
        datalog=datalog, reporter=ErrorReporter(logging.getLogger("streamrelay.errors")),
    )
    spam.on_summary = router.handle_spam_summary
    resolver = resolver or ChannelResolver(config)

    runtime = Runtime(
        config=config,
        clock=clock,
        bus=bus,
        retry=retry,
        normalizer=normalizer,
        spam=spam,
        gate=gate,
        goals=goals,
        sink=sink,
        router=router,
        resolver=resolver,
        datalog=datalog,
    )

    factory = {} if transport_factory is None else {"transport_factory": transport_factory}

    if config.YOUTUBE_ENABLED:
        from streamrelay.services.youtube import YouTubeConnector
        stream_ids = list(config.YOUTUBE_STREAM_IDS) or [""]
        for video_id in stream_ids:
            connector = YouTubeConnector(config, bus, clock, retry, resolver=resolver,
                                         video_id=video_id, **factory)
            runtime.connectors[connector.name] = connector
        logger.info(f"YouTube connector(s) initialized for {len(stream_ids)} stream(s)")

    if config.TIKTOK_ENABLED:
        from streamrelay.services.tiktok import TikTokConnector
        connector = TikTokConnector(config, bus, clock, retry, **factory)
        runtime.connectors[connector.name] = connector
        logger.info("TikTok connector initialized")

    if config.TWITCH_ENABLED:
        from streamrelay.services.twitch import TwitchConnector
        connector = TwitchConnector(config, bus, clock, retry, **factory)
        runtime.connectors[connector.name] = connector
        logger.info("Twitch connector initialized")

    if config.STREAMELEMENTS_ENABLED:
        from streamrelay.services.streamelements import StreamElementsConnector
        connector = StreamElementsConnector(config, bus, clock, retry, **factory)
        runtime.connectors[connector.name] = connector
        logger.info("StreamElements connector initialized")

    bus.subscribe(CONNECTION_AUTH_FAILED, _log_auth_failure, context="Runtime")
    return runtime


def _log_auth_failure(info: dict):
    logger.error(
        f"{info.get('connection')} will not reconnect until its credentials are fixed: {info.get('reason')}"
    )


def init_services(app: Flask, socketio: SocketIO, sink: Optional[OutputSink] = None,
                  clock: Optional[Clock] = None):
    """Initialize all application services."""
    config = app.streamrelay_config
    if sink is None:
        sink = SocketIOSink(socketio)
    app.runtime = build_runtime(config, sink, clock=clock)
    logger.info(f"Services initialized ({len(app.runtime.connectors)} connector(s))")


def start_services(app: Flask):
    """Start the router and open every configured connection."""
    runtime: Runtime = app.runtime
    if runtime.started:
        return
    runtime.router.start()
    runtime.started = True

    for name, connector in runtime.connectors.items():
        try:
            connector.connect()
            logger.info(f"{name} connector started")
        except Exception as e:
            logger.error(f"Failed to start {name} connector: {e}")


def stop_services(app: Flask):
    """Stop all background services."""
    runtime: Optional[Runtime] = getattr(app, "runtime", None)
    if runtime is None or not runtime.started:
        return

    for name, connector in runtime.connectors.items():
        try:
            connector.disconnect()
        except Exception as e:
            logger.error(f"Failed to stop {name} connector: {e}")

    runtime.router.stop()
    runtime.spam.cancel_all()
    if runtime.datalog:
        runtime.datalog.shutdown()
    runtime.bus.shutdown()
    runtime.started = False

    logger.info("All services stopped")
