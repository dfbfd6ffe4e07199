"""
StreamRelay - Health routes.
Liveness endpoint for container orchestration.
"""

import logging
from flask import Blueprint, current_app

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


@health_bp.route("/health")
def health_check():
    """Health check endpoint."""
    config = current_app.streamrelay_config

    if not config.HEALTH_CHECK_ENABLED:
        return "", 404

    runtime = current_app.runtime
    connections = {status["name"]: status for status in runtime.connection_statuses()}
    failed = [name for name, status in connections.items() if status["state"] == "failed"]

    # No connectors configured is a valid idle relay
    healthy = not failed

    status = {
        "status": "healthy" if healthy else "degraded",
        "services": {
            "router": "running" if runtime.started else "stopped",
            "connections": {
                name: {
                    "state": status["state"],
                    "auth_failed": status["auth_failed"],
                }
                for name, status in connections.items()
            },
        },
    }

    return status, 200 if healthy else 503
