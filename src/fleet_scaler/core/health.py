"""Periodic health sweep with restart-then-evict remediation."""

import asyncio
import logging
from typing import List, Optional

from .exceptions import FatalError, FleetScalerError, RestartError
from .lifecycle import InstanceLifecycleManager
from .logging_config import ActionLog
from .probe import HealthProber
from .types import HealthResult, Instance


logger = logging.getLogger(__name__)


class HealthMonitor:
    """Probes every in-service instance and remediates failures.

    An unhealthy instance gets one restart and a grace period. If it is
    still unhealthy it is evicted through the lifecycle manager, which
    deregisters it before destroying the container.
    """

    def __init__(
        self,
        lifecycle: InstanceLifecycleManager,
        prober: HealthProber,
        restart_grace_seconds: float = 30.0,
        action_log: Optional[ActionLog] = None
    ):
        """Initialize health monitor.

        Args:
            lifecycle: Lifecycle manager owning the instance table
            prober: Health prober
            restart_grace_seconds: Wait between a restart and the re-probe
            action_log: Action log for health events
        """
        self.lifecycle = lifecycle
        self.prober = prober
        self.restart_grace_seconds = restart_grace_seconds
        self.action_log = action_log

    async def sweep(self, remediate: bool = True) -> List[HealthResult]:
        """Probe all in-service instances once.

        Args:
            remediate: Restart and evict unhealthy instances; False only reports

        Returns:
            One result per probed instance

        Raises:
            FatalError: If an eviction hit an unrecoverable proxy error
        """
        results = []
        for instance in self.lifecycle.in_service():
            healthy = await self.prober.check_with_retry(instance)
            if healthy:
                results.append(HealthResult(instance=instance, healthy=True))
                continue

            logger.warning(f"Instance {instance.instance_id} failed its health check")
            if self.action_log:
                self.action_log.health(
                    f"Instance {instance.instance_id} is unhealthy",
                    instance_id=instance.instance_id
                )

            if not remediate:
                results.append(HealthResult(instance=instance, healthy=False))
                continue

            results.append(await self._remediate(instance))

        unhealthy = sum(1 for r in results if not r.healthy)
        logger.debug(f"Health sweep: {len(results)} probed, {unhealthy} unhealthy")
        return results

    async def _remediate(self, instance: Instance) -> HealthResult:
        result = HealthResult(instance=instance, healthy=False)

        try:
            await self.lifecycle.restart(instance)
            result.restarted = True
        except RestartError as e:
            logger.error(f"Restart of {instance.instance_id} failed: {e}")
            result.error = str(e)

        if result.restarted:
            if self.restart_grace_seconds > 0:
                await asyncio.sleep(self.restart_grace_seconds)
            if await self.prober.check_with_retry(instance):
                logger.info(f"Instance {instance.instance_id} recovered after restart")
                if self.action_log:
                    self.action_log.health(
                        f"Instance {instance.instance_id} recovered after restart",
                        instance_id=instance.instance_id
                    )
                result.healthy = True
                return result

        logger.error(f"Evicting unhealthy instance {instance.instance_id}")
        try:
            await self.lifecycle.remove(instance.instance_id, enforce_bounds=False)
        except FatalError:
            raise
        except FleetScalerError as e:
            logger.error(f"Eviction of {instance.instance_id} failed: {e}")
            result.error = str(e)
            if self.action_log:
                self.action_log.error(
                    f"Eviction of {instance.instance_id} failed: {e}",
                    instance_id=instance.instance_id
                )
            return result

        result.evicted = True
        if self.action_log:
            self.action_log.error(
                f"Evicted unhealthy instance {instance.instance_id}",
                instance_id=instance.instance_id
            )
        return result
