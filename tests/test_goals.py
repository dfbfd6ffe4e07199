"""
StreamRelay - Tests for goal tracking.
"""

from streamrelay.services.goals import FingerprintRegistry, GoalTracker


class TestGoalTracker:
    """Tests for GoalTracker."""

    def test_totals_are_additive_per_platform(self, clock):
        goals = GoalTracker(clock)

        assert goals.add("tiktok", 5, "a") is True
        assert goals.add("tiktok", 10, "b") is True
        assert goals.add("youtube", 2.5, "c") is True

        assert goals.totals() == {"tiktok": 15, "youtube": 2.5}

    def test_invalid_amounts_skipped(self, clock):
        goals = GoalTracker(clock)

        for amount in (0, -5, None, "10", True, float("nan"), float("inf")):
            assert goals.add("tiktok", amount) is False

        assert goals.totals() == {}

    def test_same_fingerprint_counted_once(self, clock):
        goals = GoalTracker(clock)

        goals.add("tiktok", 5, "same")
        assert goals.add("tiktok", 5, "same") is False

        assert goals.totals() == {"tiktok": 5}

    def test_fingerprint_forgotten_after_window(self, clock):
        goals = GoalTracker(clock, window=60)

        goals.add("tiktok", 5, "same")
        clock.advance(60_000)

        assert goals.add("tiktok", 5, "same") is True

    def test_reset(self, clock):
        goals = GoalTracker(clock)
        goals.add("tiktok", 5)

        goals.reset()

        assert goals.totals() == {}


class TestFingerprintRegistry:
    """Tests for FingerprintRegistry."""

    def test_bounded(self, clock):
        registry = FingerprintRegistry(clock, max_entries=2)

        registry.check_and_add("a")
        clock.advance(1)
        registry.check_and_add("b")
        clock.advance(1)
        registry.check_and_add("c")

        assert "a" not in registry.seen
        assert len(registry.seen) == 2
