"""Tests for AvailabilityTracker cooldowns and EMA health."""

import threading

import pytest

from qora_fusion.core.availability_tracker import AvailabilityTracker
from qora_fusion.core.fusion_config import AvailabilityConfig
from qora_fusion.core.fusion_types import ModelRole


class TestInitialState:

    def test_starts_from_declared_priors(self, tracker, models):
        quality = models[ModelRole.QUALITY]
        state = tracker.get_state(quality.id)

        assert state.ema_latency_ms == quality.declared_avg_latency_ms
        assert state.ema_success_rate == quality.declared_reliability
        assert state.cooldown_ms == quality.cooldown_ms
        assert state.last_invoked_at is None

    def test_all_default_models_available(self, tracker, registry):
        assert all(tracker.is_available(m.id) for m in registry)

    def test_thresholds_per_role(self, tracker, models):
        assert tracker.get_state(models[ModelRole.PRIMARY].id).success_threshold == 0.0
        assert tracker.get_state(models[ModelRole.VISION].id).success_threshold == 0.1

    def test_mapping_thresholds(self, registry, models):
        tracker = AvailabilityTracker(registry, {ModelRole.QUALITY: 0.9})

        assert tracker.is_available(models[ModelRole.QUALITY].id) is False
        assert tracker.get_state(models[ModelRole.PRIMARY].id).success_threshold == 0.0

    def test_unknown_model(self, tracker):
        with pytest.raises(KeyError):
            tracker.is_available("nobody/nothing")


class TestCooldown:

    def test_cooldown_starts_at_invocation(self, tracker, clock, models):
        quality = models[ModelRole.QUALITY].id

        tracker.mark_invoked(quality)
        assert tracker.is_available(quality) is False
        assert tracker.next_available_in_ms(quality) == pytest.approx(25_000.0)

        clock.advance(24.0)
        assert tracker.is_available(quality) is False

        clock.advance(1.0)
        assert tracker.is_available(quality) is True
        assert tracker.next_available_in_ms(quality) == 0.0

    def test_primary_has_no_cooldown(self, tracker, models):
        primary = models[ModelRole.PRIMARY].id

        tracker.mark_invoked(primary)

        assert tracker.is_available(primary) is True

    def test_outcome_refreshes_cooldown(self, tracker, clock, models):
        creative = models[ModelRole.CREATIVE].id

        tracker.mark_invoked(creative)
        clock.advance(9.0)
        tracker.record_outcome(creative, 9000.0, success=True)
        clock.advance(2.0)

        assert tracker.is_available(creative) is False


class TestHealth:

    def test_latency_and_success_ema(self, tracker, models):
        quality = models[ModelRole.QUALITY].id

        tracker.record_outcome(quality, 1000.0, success=True)

        assert tracker.ema_latency_ms(quality) == pytest.approx(0.8 * 3000.0 + 0.2 * 1000.0)
        assert tracker.success_rate(quality) == pytest.approx(0.9 * 0.78 + 0.1)

    def test_failure_lowers_success_rate(self, tracker, models):
        quality = models[ModelRole.QUALITY].id

        tracker.record_outcome(quality, 500.0, success=False)

        assert tracker.success_rate(quality) == pytest.approx(0.9 * 0.78)
        assert tracker.get_state(quality).total_failures == 1

    def test_success_rate_stays_in_bounds(self, tracker, models):
        primary = models[ModelRole.PRIMARY].id

        for _ in range(50):
            tracker.record_outcome(primary, 100.0, success=True)
        assert tracker.success_rate(primary) <= 1.0

        for _ in range(200):
            tracker.record_outcome(primary, 100.0, success=False)
        assert 0.0 <= tracker.success_rate(primary) < 0.01

    def test_failures_disable_vision_model(self, tracker, clock, models):
        vision = models[ModelRole.VISION].id

        for _ in range(4):
            tracker.record_outcome(vision, 4500.0, success=False)
        clock.advance(3600)

        assert tracker.success_rate(vision) < 0.1
        assert tracker.is_available(vision) is False

    def test_primary_never_disabled_by_threshold(self, tracker, models):
        primary = models[ModelRole.PRIMARY].id

        for _ in range(30):
            tracker.record_outcome(primary, 100.0, success=False)

        assert tracker.is_available(primary) is True

    def test_get_state_is_a_copy(self, tracker, models):
        primary = models[ModelRole.PRIMARY].id

        state = tracker.get_state(primary)
        state.ema_success_rate = 0.0

        assert tracker.success_rate(primary) == 1.0

    def test_concurrent_updates_are_counted(self, tracker, models):
        quality = models[ModelRole.QUALITY].id

        def worker():
            for _ in range(100):
                tracker.record_outcome(quality, 1000.0, success=True)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.get_state(quality).total_calls == 800


class TestSnapshot:

    def test_snapshot_fields(self, tracker, models):
        quality = models[ModelRole.QUALITY].id
        tracker.mark_invoked(quality)

        snap = tracker.snapshot()

        assert set(snap) == {m.id for m in models.values()}
        assert snap[quality]["available"] is False
        assert snap[quality]["next_available_in_ms"] > 0
        assert "ema_latency_ms" in snap[quality]

    def test_config_thresholds(self, registry, models):
        tracker = AvailabilityTracker(registry, AvailabilityConfig(creative_threshold=0.95))

        assert tracker.is_available(models[ModelRole.CREATIVE].id) is False
