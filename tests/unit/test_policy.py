"""Unit tests for the scaling policy engine."""

import pytest
from datetime import datetime, timedelta

from fleet_scaler.core.config import PolicyConfig
from fleet_scaler.core.exceptions import CapacityError, CooldownError
from fleet_scaler.core.policy import ScalingPolicyEngine
from fleet_scaler.core.types import CooldownState, ScalingAction


class TestScalingPolicyEngine:
    """Test cases for ScalingPolicyEngine."""

    @pytest.fixture
    def engine(self):
        return ScalingPolicyEngine(PolicyConfig())

    @pytest.fixture
    def now(self):
        return datetime(2024, 1, 15, 12, 0, 0)

    def test_high_cpu_scales_up(self, engine, make_snapshot, now):
        """CPU above threshold triggers scale-up with a CPU reason."""
        snapshot = make_snapshot(cpu=80.0, latency=0.3, rate=20.0, count=3)

        decision = engine.decide(snapshot, CooldownState(), now)

        assert decision.action == ScalingAction.SCALE_UP
        assert len(decision.reasons) == 1
        assert decision.reasons[0].startswith("CPU")
        assert decision.blocked_by is None

    def test_high_latency_scales_up(self, engine, make_snapshot, now):
        decision = engine.decide(make_snapshot(cpu=40.0, latency=1.5), CooldownState(), now)

        assert decision.action == ScalingAction.SCALE_UP
        assert decision.reasons[0].startswith("Latency")

    def test_high_rate_scales_up(self, engine, make_snapshot, now):
        decision = engine.decide(make_snapshot(cpu=40.0, latency=0.5, rate=80.0), CooldownState(), now)

        assert decision.action == ScalingAction.SCALE_UP
        assert decision.reasons[0].startswith("Request rate")

    def test_multiple_scale_up_reasons(self, engine, make_snapshot, now):
        decision = engine.decide(make_snapshot(cpu=90.0, latency=2.0, rate=80.0), CooldownState(), now)

        assert decision.action == ScalingAction.SCALE_UP
        assert len(decision.reasons) == 3

    def test_low_load_scales_down(self, engine, make_snapshot, now):
        """All signals low and above the minimum triggers scale-down."""
        snapshot = make_snapshot(cpu=20.0, latency=0.1, rate=5.0, count=5)

        decision = engine.decide(snapshot, CooldownState(), now)

        assert decision.action == ScalingAction.SCALE_DOWN
        assert len(decision.reasons) == 3

    def test_scale_down_cooldown_blocks(self, engine, make_snapshot, now):
        """Low load one minute after a scale-down is held by the 300s cooldown."""
        snapshot = make_snapshot(cpu=20.0, latency=0.1, rate=5.0, count=5)
        cooldown = CooldownState(last_scale_down=now - timedelta(seconds=60))

        decision = engine.decide(snapshot, cooldown, now)

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.blocked_by == "cooldown"
        assert decision.reasons

    def test_scale_up_cooldown_blocks(self, engine, make_snapshot, now):
        cooldown = CooldownState(last_scale_up=now - timedelta(seconds=179))

        decision = engine.decide(make_snapshot(cpu=90.0), cooldown, now)

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.blocked_by == "cooldown"

    def test_cooldowns_are_per_direction(self, engine, make_snapshot, now):
        """A recent scale-down does not hold back a scale-up."""
        cooldown = CooldownState(last_scale_down=now - timedelta(seconds=10))

        decision = engine.decide(make_snapshot(cpu=90.0), cooldown, now)

        assert decision.action == ScalingAction.SCALE_UP

    def test_cooldown_expires(self, engine, make_snapshot, now):
        cooldown = CooldownState(last_scale_up=now - timedelta(seconds=180))

        decision = engine.decide(make_snapshot(cpu=90.0), cooldown, now)

        assert decision.action == ScalingAction.SCALE_UP

    def test_at_maximum_blocks_scale_up(self, engine, make_snapshot, now):
        decision = engine.decide(make_snapshot(cpu=95.0, count=10), CooldownState(), now)

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.blocked_by == "capacity"

    def test_at_minimum_blocks_scale_down(self, engine, make_snapshot, now):
        decision = engine.decide(
            make_snapshot(cpu=5.0, latency=0.1, rate=1.0, count=2), CooldownState(), now
        )

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.blocked_by == "capacity"

    def test_mixed_signals_hold(self, engine, make_snapshot, now):
        """Low CPU with moderate latency does not scale down in 'all' mode."""
        decision = engine.decide(
            make_snapshot(cpu=20.0, latency=0.7, rate=5.0, count=5), CooldownState(), now
        )

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.reasons == []

    def test_any_mode_scales_down_on_one_signal(self, make_snapshot, now):
        engine = ScalingPolicyEngine(PolicyConfig(scale_down_mode="any"))

        decision = engine.decide(
            make_snapshot(cpu=20.0, latency=0.7, rate=40.0, count=5), CooldownState(), now
        )

        assert decision.action == ScalingAction.SCALE_DOWN
        assert len(decision.reasons) == 1
        assert decision.reasons[0].startswith("CPU")

    def test_scale_up_wins_over_scale_down(self, make_snapshot, now):
        """When hysteresis is misconfigured, scale-up takes priority."""
        engine = ScalingPolicyEngine(PolicyConfig(cpu_up_threshold=40.0, cpu_down_threshold=60.0))

        decision = engine.decide(
            make_snapshot(cpu=50.0, latency=0.1, rate=1.0, count=5), CooldownState(), now
        )

        assert decision.action == ScalingAction.SCALE_UP

    def test_unknown_cpu_holds(self, engine, make_snapshot, now):
        """Missing CPU readings never trigger a scale action."""
        decision = engine.decide(
            make_snapshot(cpu=None, latency=5.0, rate=500.0, count=5), CooldownState(), now
        )

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.reasons == ["No CPU readings available"]

    def test_unknown_latency_allows_scale_down(self, engine, make_snapshot, now):
        decision = engine.decide(
            make_snapshot(cpu=10.0, latency=None, rate=0.0, count=4), CooldownState(), now
        )

        assert decision.action == ScalingAction.SCALE_DOWN
        assert "Latency: no recent requests" in decision.reasons

    def test_below_minimum_restores_capacity(self, engine, make_snapshot, now):
        """Below the minimum the engine scales up without any load signal."""
        cooldown = CooldownState(last_scale_down=now)

        decision = engine.decide(make_snapshot(cpu=None, count=1), cooldown, now)

        assert decision.action == ScalingAction.SCALE_UP
        assert decision.reasons[0].startswith("Capacity")

    def test_restoration_waits_for_scale_up_cooldown(self, engine, make_snapshot, now):
        cooldown = CooldownState(last_scale_up=now - timedelta(seconds=10))

        decision = engine.decide(make_snapshot(cpu=None, count=1), cooldown, now)

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.blocked_by == "cooldown"
        assert decision.reasons[0].startswith("Capacity")
        assert decision.refusal == "Scale up in cooldown for another 170s"

    def test_above_maximum_restores_capacity(self, engine, make_snapshot, now):
        decision = engine.decide(make_snapshot(cpu=95.0, count=12), CooldownState(), now)

        assert decision.action == ScalingAction.SCALE_DOWN
        assert decision.reasons[0].startswith("Capacity")

    def test_restoration_waits_for_scale_down_cooldown(self, engine, make_snapshot, now):
        cooldown = CooldownState(last_scale_down=now - timedelta(seconds=60))

        decision = engine.decide(make_snapshot(cpu=95.0, count=12), cooldown, now)

        assert decision.action == ScalingAction.NO_ACTION
        assert decision.blocked_by == "cooldown"

    def test_capacity_refusal_message(self, engine, make_snapshot, now):
        decision = engine.decide(make_snapshot(cpu=95.0, count=10), CooldownState(), now)

        assert decision.blocked_by == "capacity"
        assert decision.refusal == "Cannot scale up: already at maximum instances (10)"

    def test_restoration_sequence_respects_cooldown(self, engine, make_snapshot, now):
        """Restoring an emptied fleet never accepts scale-ups closer than the cooldown."""
        cooldown = CooldownState()
        count = 0
        accepted = []

        for step in range(40):
            at = now + timedelta(seconds=30 * step)
            decision = engine.decide(make_snapshot(cpu=None, count=count), cooldown, at)
            if decision.action == ScalingAction.SCALE_UP:
                accepted.append(at)
                cooldown.record(ScalingAction.SCALE_UP, at)
                count += 1

        assert count == 2
        assert accepted[1] - accepted[0] >= timedelta(seconds=180)

    def test_check_allowed_raises(self, engine, now):
        with pytest.raises(CapacityError):
            engine.check_allowed(ScalingAction.SCALE_UP, 10, CooldownState(), now)

        with pytest.raises(CooldownError) as exc_info:
            engine.check_allowed(
                ScalingAction.SCALE_DOWN, 5,
                CooldownState(last_scale_down=now - timedelta(seconds=100)), now
            )
        assert exc_info.value.error_code == "COOLDOWN_ACTIVE"

        engine.check_allowed(ScalingAction.NO_ACTION, 10, CooldownState(), now)

    def test_decision_sequence_respects_cooldown(self, engine, make_snapshot, now):
        """Accepted scale-ups are never closer together than the cooldown."""
        cooldown = CooldownState()
        count = 3
        accepted = []

        for minute in range(20):
            at = now + timedelta(minutes=minute)
            decision = engine.decide(make_snapshot(cpu=95.0, count=count), cooldown, at)
            if decision.action == ScalingAction.SCALE_UP:
                accepted.append(at)
                cooldown.record(ScalingAction.SCALE_UP, at)
                count += 1

        assert len(accepted) >= 2
        for earlier, later in zip(accepted, accepted[1:]):
            assert (later - earlier).total_seconds() >= 180
        assert count <= 10

    def test_describe(self, engine):
        thresholds = engine.describe()

        assert thresholds['cpu_up_threshold'] == 70.0
        assert thresholds['min_instances'] == 2
        assert thresholds['scale_down_mode'] == "all"
