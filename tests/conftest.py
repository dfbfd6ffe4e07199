"""
StreamRelay - Configuration for pytest.
"""

import pytest
import sys
import os

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000


@pytest.fixture
def clock():
    """Create a manually driven clock."""
    from streamrelay.services.clock import FakeClock
    return FakeClock(START_MS)


@pytest.fixture
def bus(clock):
    """Create an event bus on the fake clock."""
    from streamrelay.services.bus import EventBus
    bus = EventBus(clock)
    yield bus
    bus.shutdown()


@pytest.fixture
def config(monkeypatch, tmp_path):
    """Create a test configuration that ignores any local SETTINGS.py."""
    from streamrelay.config import Config
    monkeypatch.setenv("STREAMRELAY_SETTINGS", str(tmp_path / "SETTINGS.py"))
    monkeypatch.setattr(Config, "_settings_paths", lambda self: [str(tmp_path / "SETTINGS.py")])
    return Config()


@pytest.fixture
def app(config):
    """Create a test Flask application."""
    from streamrelay import create_app

    app = create_app(config)
    app.config['TESTING'] = True

    yield app

    from streamrelay.services import stop_services
    stop_services(app)


@pytest.fixture
def client(app):
    """Create a test client."""
    return app.test_client()
