"""Unit tests for core data types and retry handling."""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

from fleet_scaler.core.exceptions import (
    InvalidStateTransitionError, RuntimeUnavailableError, TransientError
)
from fleet_scaler.core.retry import RetryConfig, RetryHandler, RetryStrategy
from fleet_scaler.core.types import (
    CooldownState, Instance, InstanceState, ScaleResult, ScalingAction,
    ScalingDecision, UpstreamTarget
)


class TestInstance:
    """Test cases for Instance."""

    @pytest.fixture
    def instance(self):
        return Instance(
            instance_id="worker-3", ordinal=3, host="localhost", port=8083,
            upstream_host="worker-3", upstream_port=8080
        )

    def test_happy_path(self, instance):
        for state in (InstanceState.HEALTH_CHECKING, InstanceState.IN_SERVICE,
                      InstanceState.DRAINING, InstanceState.TERMINATED):
            instance.transition(state)

        assert instance.state == InstanceState.TERMINATED

    def test_draining_can_return_to_service(self, instance):
        instance.transition(InstanceState.HEALTH_CHECKING)
        instance.transition(InstanceState.IN_SERVICE)
        instance.transition(InstanceState.DRAINING)
        instance.transition(InstanceState.IN_SERVICE)

        assert instance.state == InstanceState.IN_SERVICE

    @pytest.mark.parametrize("path", [
        [InstanceState.IN_SERVICE],
        [InstanceState.HEALTH_CHECKING, InstanceState.DRAINING],
        [InstanceState.FAILED, InstanceState.HEALTH_CHECKING],
    ])
    def test_illegal_transitions(self, instance, path):
        with pytest.raises(InvalidStateTransitionError):
            for state in path:
                instance.transition(state)

    def test_upstream_target(self, instance):
        target = instance.upstream_target(weight=2, max_fails=5, fail_timeout="10s")

        assert target.endpoint == "worker-3:8080"
        assert instance.endpoint == "localhost:8083"
        assert target.to_directive() == "server worker-3:8080 max_fails=5 fail_timeout=10s weight=2;"

    def test_directive_flags(self):
        target = UpstreamTarget("worker-1", 8080, flags=("backup",))

        assert target.to_directive().endswith("weight=1 backup;")


class TestCooldownState:
    """Test cases for CooldownState."""

    def test_independent_directions(self):
        now = datetime(2024, 3, 1, 12, 0, 0)
        cooldown = CooldownState()
        cooldown.record(ScalingAction.SCALE_UP, now)

        assert cooldown.remaining(ScalingAction.SCALE_UP, 300, now + timedelta(seconds=100)) == 200
        assert cooldown.remaining(ScalingAction.SCALE_DOWN, 600, now) == 0.0
        assert cooldown.remaining(ScalingAction.SCALE_UP, 300, now + timedelta(seconds=300)) == 0.0

    def test_no_action_is_never_cooling(self):
        assert CooldownState().remaining(ScalingAction.NO_ACTION, 300) == 0.0


class TestResults:
    """Test cases for decision and scale result helpers."""

    def test_decision_summary(self):
        decision = ScalingDecision(
            action=ScalingAction.SCALE_UP,
            reasons=["CPU: 80.0% > 70.0%"],
            blocked_by="cooldown"
        )

        assert decision.summary() == "SCALE UP (CPU: 80.0% > 70.0%) [blocked by cooldown]"
        assert decision.should_act

    def test_scale_result(self):
        result = ScaleResult(target=5, initial_count=2, added=["worker-3", "worker-4"])

        assert result.final_count == 4
        assert result.success
        result.error = "Instance worker-5 failed health check within 60.0s"
        assert not result.success


class TestRetryHandler:
    """Test cases for RetryHandler."""

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        func = AsyncMock(side_effect=[TransientError("flaky"), "ok"])
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0.0))

        assert await handler.execute(func, 1, key="v") == "ok"
        assert func.await_count == 2
        func.assert_awaited_with(1, key="v")

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        func = AsyncMock(side_effect=ConnectionError("refused"))
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0.0))

        with pytest.raises(ConnectionError):
            await handler.execute(func)

        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=RuntimeUnavailableError("docker", "socket missing"))
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0.0))

        with pytest.raises(RuntimeUnavailableError):
            await handler.execute(func)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_sync_callables(self):
        handler = RetryHandler(RetryConfig(max_attempts=1))

        assert await handler.execute(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_exponential_delays(self):
        func = AsyncMock(side_effect=[TransientError("a"), TransientError("b"), "ok"])
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0.5))

        with patch('fleet_scaler.core.retry.asyncio.sleep', new_callable=AsyncMock) as sleep:
            await handler.execute(func)

        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.parametrize("strategy,expected", [
        (RetryStrategy.FIXED, [2.0, 2.0, 2.0]),
        (RetryStrategy.LINEAR, [2.0, 4.0, 5.0]),
        (RetryStrategy.EXPONENTIAL, [2.0, 4.0, 5.0]),
    ])
    def test_delay_strategies(self, strategy, expected):
        handler = RetryHandler(RetryConfig(base_delay=2.0, max_delay=5.0, strategy=strategy))

        assert [handler._calculate_delay(a) for a in range(3)] == expected
