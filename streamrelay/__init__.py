"""
StreamRelay - Live stream event relay
Flask application factory and initialization.
"""

import logging
import os
from flask import Flask, jsonify, request
from flask_socketio import SocketIO

# Global SocketIO instance
socketio = SocketIO()

# Third-party loggers that flood INFO with per-frame output
NOISY_LOGGERS = ("websockets", "httpx", "httpcore", "engineio.server", "socketio.server", "geventwebsocket")


def create_app(config_object=None, sink=None, clock=None):
    """
    Create the relay application.

    Args:
        config_object: Loaded Config; read from SETTINGS.py when omitted
        sink: Output sink for canonical events; Socket.IO broadcast when omitted
        clock: Clock shared by every service; the system clock when omitted

    Raises:
        ValueError: if the settings fail validation
    """
    if config_object is None:
        from streamrelay.config import Config
        config_object = Config()

    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.urandom(32).hex()
    app.config['DEBUG'] = config_object.WEB_DEBUG
    app.streamrelay_config = config_object

    setup_logging(config_object)

    socketio.init_app(
        app,
        cors_allowed_origins="*",
        async_mode='gevent',
        ping_interval=config_object.WEBSOCKET_PING_INTERVAL,
        ping_timeout=config_object.WEBSOCKET_PING_TIMEOUT
    )

    from streamrelay.services import init_services
    init_services(app, socketio, sink=sink, clock=clock)

    register_blueprints(app)
    register_error_handlers(app)
    register_websocket_handlers(socketio)

    platforms = ", ".join(config_object.enabled_platforms()) or "none"
    app.logger.info(f"StreamRelay initialized (platforms: {platforms})")
    return app


def setup_logging(config):
    """Configure the root logger from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    log_level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    root = logging.getLogger()

    logging.basicConfig(level=log_level, format=config.LOG_FORMAT)
    root.setLevel(log_level)

    # create_app may run more than once per process, one file handler is enough
    if config.LOG_FILE:
        path = os.path.abspath(config.LOG_FILE)
        if not any(getattr(h, "baseFilename", None) == path for h in root.handlers):
            file_handler = logging.FileHandler(path)
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(config.LOG_FORMAT))
            root.addHandler(file_handler)

    if log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    if getattr(config, "EVENT_BUS_DEBUG", False):
        logging.getLogger("streamrelay.services.bus").setLevel(logging.DEBUG)


def register_blueprints(app):
    from streamrelay.routes.health import health_bp
    from streamrelay.routes.api import api_bp

    for blueprint in (health_bp, api_bp):
        app.register_blueprint(blueprint)


def register_error_handlers(app):
    """API clients get JSON errors instead of Flask's HTML pages."""

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "not found", "path": request.path}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "method not allowed", "method": request.method}), 405

    @app.errorhandler(500)
    def internal_error(error):
        logging.getLogger(__name__).error(f"Unhandled error on {request.path}: {error}")
        return jsonify({"error": "internal server error"}), 500


def register_websocket_handlers(sio):
    from streamrelay.routes.websocket import register_handlers
    register_handlers(sio)
