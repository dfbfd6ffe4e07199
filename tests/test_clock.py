"""
StreamRelay - Tests for the clock service.
"""

from streamrelay.services.clock import FakeClock


class TestFakeClock:
    """Tests for FakeClock."""

    def test_timeout_fires_when_due(self):
        """Test that a timeout fires once its delay has passed."""
        clock = FakeClock(1000)
        fired = []
        clock.set_timeout(lambda: fired.append(clock.now()), 500)

        clock.advance(499)
        assert fired == []

        clock.advance(1)
        assert fired == [1500]
        assert clock.pending() == 0

    def test_cancelled_timeout_never_fires(self):
        """Test that cancel() stops a pending timeout."""
        clock = FakeClock()
        fired = []
        handle = clock.set_timeout(lambda: fired.append(True), 100)

        handle.cancel()
        clock.advance(1000)

        assert fired == []
        assert handle.cancelled

    def test_interval_repeats(self):
        """Test that an interval fires every period."""
        clock = FakeClock()
        ticks = []
        handle = clock.set_interval(lambda: ticks.append(clock.now()), 100)

        clock.advance(350)
        assert ticks == [100, 200, 300]

        handle.cancel()
        clock.advance(500)
        assert len(ticks) == 3

    def test_timers_fire_in_due_order(self):
        """Test that timers fire by due time, not creation order."""
        clock = FakeClock()
        order = []
        clock.set_timeout(lambda: order.append("late"), 200)
        clock.set_timeout(lambda: order.append("early"), 100)

        clock.advance(300)

        assert order == ["early", "late"]

    def test_failing_callback_does_not_stop_others(self):
        """Test that an exception in one timer is contained."""
        clock = FakeClock()
        fired = []

        def boom():
            raise RuntimeError("boom")

        clock.set_timeout(boom, 10)
        clock.set_timeout(lambda: fired.append(True), 20)

        clock.advance(50)

        assert fired == [True]

    def test_set_backwards_does_not_fire(self):
        """Test that moving time backwards only changes now()."""
        clock = FakeClock(5000)
        fired = []
        clock.set_timeout(lambda: fired.append(True), 100)

        clock.set(1000)

        assert clock.now() == 1000
        assert fired == []
