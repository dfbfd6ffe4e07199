"""
StreamRelay - API routes.
REST API endpoints for inspecting and controlling the relay.
"""

import logging
from flask import Blueprint, current_app, request, jsonify

from streamrelay.models.events import Platform, RawEvent
from streamrelay.services.bus import RAW_EVENT

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


@api_bp.route("/status")
def get_status():
    """Get connection, pipeline and goal statistics."""
    runtime = current_app.runtime
    return jsonify(runtime.statistics())


@api_bp.route("/settings")
def get_settings():
    """Get current settings (non-sensitive)."""
    config = current_app.streamrelay_config
    return jsonify(config.to_public_dict())


@api_bp.route("/goals")
def get_goals():
    """Get per-platform goal totals."""
    return jsonify(current_app.runtime.goals.totals())


@api_bp.route("/goals/reset", methods=["POST"])
def reset_goals():
    """Reset goal totals."""
    current_app.runtime.goals.reset()
    return jsonify({"status": "ok"})


@api_bp.route("/connections/<name>/reconnect", methods=["POST"])
def reconnect(name: str):
    """Tear down a connection and open it again."""
    runtime = current_app.runtime
    connector = runtime.connector(name)
    if connector is None:
        return jsonify({"error": f"Unknown connection: {name}"}), 404

    if connector.lifecycle.auth_failed:
        return jsonify({
            "error": "Authentication failed for this connection, fix its credentials and restart"
        }), 409

    connector.disconnect()
    started = connector.connect()
    logger.info(f"Manual reconnect of {name} requested")

    return jsonify({
        "status": "ok" if started else "failed",
        "connection": connector.status().to_dict(),
    })


@api_bp.route("/test", methods=["POST"])
def inject_test_event():
    """Inject a raw platform event for development/testing."""
    config = current_app.streamrelay_config

    # Only allow in debug mode
    if not config.WEB_DEBUG:
        return jsonify({"error": "Test events only available in debug mode"}), 403

    runtime = current_app.runtime

    data = request.get_json(silent=True) or {}
    try:
        platform = Platform(data.get("platform", "tiktok"))
    except ValueError:
        return jsonify({"error": f"Unknown platform: {data.get('platform')}"}), 400

    kind = data.get("kind", "chat")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        return jsonify({"error": "payload must be an object"}), 400

    delivered = runtime.bus.emit(RAW_EVENT, RawEvent(
        connection="test",
        platform=platform,
        kind=kind,
        payload=payload,
        received_at=runtime.clock.now(),
    ))

    return jsonify({
        "status": "ok" if delivered else "failed",
        "platform": platform.value,
        "kind": kind,
    })
