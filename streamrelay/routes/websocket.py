"""
StreamRelay - WebSocket event handlers.
Handles real-time communication with browser clients.
"""

import logging
from flask import current_app
from flask_socketio import SocketIO, emit

logger = logging.getLogger(__name__)


def register_handlers(socketio: SocketIO):
    """Register WebSocket event handlers."""

    @socketio.on("connect")
    def handle_connect():
        """Handle client connection."""
        logger.info("Browser client connected")
        runtime = current_app.runtime
        emit("connected", {
            "status": "ok",
            "connections": runtime.connection_statuses(),
            "goals": runtime.goals.totals(),
        })

    @socketio.on("disconnect")
    def handle_disconnect():
        """Handle client disconnection."""
        logger.info("Browser client disconnected")

    @socketio.on("history")
    def handle_history(data=None):
        """Replay recent notifications to a client that just loaded."""
        limit = 50
        if isinstance(data, dict):
            try:
                limit = max(1, min(int(data.get("limit", limit)), 50))
            except (TypeError, ValueError):
                pass
        sink = current_app.runtime.sink
        recent = sink.recent(limit) if hasattr(sink, "recent") else []
        emit("history", {"notifications": recent})

    @socketio.on("error")
    def handle_error(data):
        """Handle client-side errors."""
        error = data.get("error", "Unknown error") if isinstance(data, dict) else data
        logger.error(f"Client error: {error}")
