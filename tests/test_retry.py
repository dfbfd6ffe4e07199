"""
StreamRelay - Tests for reconnect backoff.
"""

import random

import pytest
from unittest.mock import Mock

from streamrelay.errors import PlatformConnectionError
from streamrelay.services.retry import RetryController


class MockConfig:
    """Mock configuration for testing."""
    RETRY_INITIAL_DELAY = 1.0
    RETRY_BACKOFF_BASE = 2
    RETRY_BACKOFF_MAX = 30
    RETRY_JITTER = 0.2
    RETRY_MAX_ATTEMPTS = 0


class LimitedConfig(MockConfig):
    RETRY_MAX_ATTEMPTS = 2


class NoJitterConfig(MockConfig):
    RETRY_JITTER = 0.0


@pytest.fixture
def retry(clock):
    """Create a retry controller with a seeded jitter source."""
    return RetryController(MockConfig(), clock, rng=random.Random(42))


class TestBackoff:
    """Tests for backoff delays."""

    def test_delays_without_jitter(self, clock):
        """Test the exponential growth and cap."""
        retry = RetryController(NoJitterConfig(), clock)

        delays = [retry.increment_retry_count("tiktok") for _ in range(7)]

        assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]

    def test_delays_never_decrease(self, retry):
        """Test that jittered delays are non-decreasing and bounded."""
        delays = [retry.increment_retry_count("tiktok") for _ in range(20)]

        assert delays == sorted(delays)
        assert all(0 < delay <= 30000 for delay in delays)
        # Jitter only shortens a delay, by at most 20%
        assert delays[0] >= 800

    def test_reset(self, retry):
        """Test that reset returns to the initial delay."""
        for _ in range(5):
            retry.increment_retry_count("tiktok")

        retry.reset_retry_count("tiktok")

        assert retry.get_retry_count("tiktok") == 0
        assert retry.increment_retry_count("tiktok") <= 1000

    def test_connections_are_independent(self, retry):
        """Test that each connection has its own counter."""
        retry.increment_retry_count("tiktok")
        retry.increment_retry_count("tiktok")

        assert retry.get_retry_count("tiktok") == 2
        assert retry.get_retry_count("twitch") == 0


class TestHandleConnectionError:
    """Tests for reconnect scheduling."""

    def test_schedules_reconnect(self, retry, clock):
        """Test that a transient error schedules a reconnect after the delay."""
        reconnect = Mock()
        cleanup = Mock()

        delay = retry.handle_connection_error("tiktok", ConnectionResetError("ECONNRESET"), reconnect, cleanup)

        cleanup.assert_called_once()
        assert delay is not None
        assert retry.is_pending("tiktok")

        clock.advance(delay - 1)
        reconnect.assert_not_called()

        clock.advance(1)
        reconnect.assert_called_once()
        assert not retry.is_pending("tiktok")

    def test_auth_error_not_retried(self, retry, clock):
        """Test that auth failures never schedule a reconnect."""
        reconnect = Mock()

        delay = retry.handle_connection_error(
            "twitch", PlatformConnectionError.fatal_auth("bad token", code=401), reconnect
        )

        assert delay is None
        clock.advance(600_000)
        reconnect.assert_not_called()

    def test_fatal_error_not_retried(self, retry):
        """Test that fatal errors never schedule a reconnect."""
        delay = retry.handle_connection_error(
            "tiktok", PlatformConnectionError.fatal("not live", code=4404), Mock()
        )

        assert delay is None
        assert retry.get_retry_count("tiktok") == 0

    def test_max_attempts(self, clock):
        """Test that reconnects stop after the attempt limit."""
        retry = RetryController(LimitedConfig(), clock)
        error = PlatformConnectionError.transient("dropped")

        assert retry.handle_connection_error("tiktok", error, Mock()) is not None
        assert retry.handle_connection_error("tiktok", error, Mock()) is not None
        assert retry.handle_connection_error("tiktok", error, Mock()) is None
        assert retry.statistics()["tiktok"]["gave_up"] is True

    def test_failed_reconnect_is_rescheduled(self, retry, clock):
        """Test that an exception from the reconnect itself schedules another attempt."""
        reconnect = Mock(side_effect=ConnectionRefusedError("ECONNREFUSED"))

        retry.handle_connection_error("tiktok", PlatformConnectionError.transient("dropped"), reconnect)
        clock.advance(1000)

        assert reconnect.call_count == 1
        assert retry.get_retry_count("tiktok") == 2
        assert retry.is_pending("tiktok")

    def test_cancel(self, retry, clock):
        """Test that cancel stops a scheduled reconnect."""
        reconnect = Mock()
        retry.handle_connection_error("tiktok", PlatformConnectionError.transient("dropped"), reconnect)

        retry.cancel("tiktok")
        clock.advance(600_000)

        reconnect.assert_not_called()

    def test_second_failure_replaces_pending_timer(self, retry, clock):
        """Test that only one reconnect is pending per connection."""
        reconnect = Mock()
        error = PlatformConnectionError.transient("dropped")

        retry.handle_connection_error("tiktok", error, reconnect)
        retry.handle_connection_error("tiktok", error, reconnect)
        clock.advance(600_000)

        reconnect.assert_called_once()
