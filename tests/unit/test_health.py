"""Unit tests for the health monitor."""

import pytest
from unittest.mock import AsyncMock

from fleet_scaler.core.exceptions import RollbackError
from fleet_scaler.core.health import HealthMonitor
from fleet_scaler.core.types import EntryKind


class TestHealthMonitor:
    """Test cases for health sweeps and remediation."""

    @pytest.fixture
    def monitor(self, lifecycle, prober, action_log):
        return HealthMonitor(lifecycle, prober, restart_grace_seconds=0.0, action_log=action_log)

    async def _grow(self, lifecycle, count):
        for _ in range(count):
            await lifecycle.add(enforce_bounds=False)

    @pytest.mark.asyncio
    async def test_all_healthy(self, monitor, lifecycle, runtime):
        await self._grow(lifecycle, 3)

        results = await monitor.sweep()

        assert len(results) == 3
        assert all(r.healthy for r in results)
        assert not any(call[0] == "restart" for call in runtime.calls)

    @pytest.mark.asyncio
    async def test_restart_recovers_instance(self, monitor, lifecycle, runtime):
        await self._grow(lifecycle, 3)
        runtime.healthy["worker-2"] = False
        runtime.heal_on_restart.add("worker-2")

        results = await monitor.sweep()

        result = next(r for r in results if r.instance.instance_id == "worker-2")
        assert result.healthy
        assert result.restarted
        assert not result.evicted
        assert lifecycle.count() == 3

    @pytest.mark.asyncio
    async def test_unrecovered_instance_is_evicted(self, monitor, lifecycle, runtime, balancer, action_log):
        await self._grow(lifecycle, 3)
        runtime.healthy["worker-2"] = False

        results = await monitor.sweep()

        result = next(r for r in results if r.instance.instance_id == "worker-2")
        assert result.restarted
        assert result.evicted
        assert not result.healthy
        assert lifecycle.get("worker-2") is None
        assert "worker-2:8080" not in [t.endpoint for t in await balancer.targets()]
        assert "worker-2" not in runtime.containers

        errors = action_log.tail(10, kinds=[EntryKind.ERROR])
        assert errors[-1].message == "Evicted unhealthy instance worker-2"

    @pytest.mark.asyncio
    async def test_failed_restart_escalates_to_eviction(self, monitor, lifecycle, runtime):
        await self._grow(lifecycle, 3)
        runtime.healthy["worker-3"] = False
        runtime.fail_restart.add("worker-3")

        results = await monitor.sweep()

        result = next(r for r in results if r.instance.instance_id == "worker-3")
        assert not result.restarted
        assert result.evicted
        assert "restart" in result.error.lower()

    @pytest.mark.asyncio
    async def test_eviction_ignores_minimum(self, monitor, lifecycle, runtime):
        await self._grow(lifecycle, 2)
        runtime.healthy["worker-1"] = False

        await monitor.sweep()

        assert lifecycle.count() == 1

    @pytest.mark.asyncio
    async def test_report_only_sweep(self, monitor, lifecycle, runtime, action_log):
        await self._grow(lifecycle, 2)
        runtime.healthy["worker-1"] = False

        results = await monitor.sweep(remediate=False)

        assert [r.healthy for r in results] == [False, True]
        assert not any(call[0] in ("restart", "stop") for call in runtime.calls)
        assert lifecycle.count() == 2
        assert action_log.tail(1)[0].kind == EntryKind.HEALTH

    @pytest.mark.asyncio
    async def test_fatal_eviction_propagates(self, monitor, lifecycle, runtime):
        await self._grow(lifecycle, 3)
        runtime.healthy["worker-1"] = False
        lifecycle.remove = AsyncMock(side_effect=RollbackError("backup missing"))

        with pytest.raises(RollbackError):
            await monitor.sweep()
