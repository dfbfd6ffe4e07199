"""
StreamRelay - Application entry point.
"""

import logging
import sys

from streamrelay import create_app, socketio

logger = logging.getLogger(__name__)


def main():
    """Main entry point for StreamRelay."""
    try:
        app = create_app()
    except ValueError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Failed to start StreamRelay: {e}")
        sys.exit(1)

    config = app.streamrelay_config

    logger.info(f"Starting StreamRelay on {config.WEB_HOST}:{config.WEB_PORT}")

    # Start platform connections
    from streamrelay.services import start_services, stop_services
    start_services(app)

    try:
        # Run the Flask-SocketIO server
        socketio.run(
            app,
            host=config.WEB_HOST,
            port=config.WEB_PORT,
            debug=config.WEB_DEBUG,
            use_reloader=False  # Disable reloader in production
        )
    finally:
        stop_services(app)


if __name__ == "__main__":
    main()
