"""Worker instance lifecycle: provision, health gate, register, drain, destroy."""

import asyncio
import logging
import os
from typing import Dict, List, Optional

from .config import FleetConfig, PolicyConfig, ProxyConfig
from .exceptions import (
    CapacityError, EndpointConflictError, FatalError, FleetScalerError,
    HealthCheckTimeoutError, InstanceNotFoundError, InstanceProvisionError,
    LoadBalancerError, TargetNotFoundError
)
from .load_balancer import LoadBalancerConfigManager
from .logging_config import ActionLog
from .probe import HealthProber
from .types import Instance, InstanceState, ScaleResult, UpstreamTarget
from ..runtimes.base import ContainerRuntime, ContainerSpec


logger = logging.getLogger(__name__)


class InstanceLifecycleManager:
    """Creates and destroys worker instances and keeps the proxy in step.

    An instance is registered with the load balancer only after it passed a
    health probe, and it is always deregistered before its container is
    stopped. The instance table holds every instance this process knows
    about; terminated and failed instances are dropped from it.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        balancer: LoadBalancerConfigManager,
        prober: HealthProber,
        fleet: Optional[FleetConfig] = None,
        policy: Optional[PolicyConfig] = None,
        proxy: Optional[ProxyConfig] = None,
        action_log: Optional[ActionLog] = None
    ):
        """Initialize lifecycle manager.

        Args:
            runtime: Container runtime hosting the workers
            balancer: Upstream registration manager
            prober: Health prober used for the startup gate
            fleet: Fleet settings (image, ports, timeouts)
            policy: Scaling policy, for the instance bounds
            proxy: Proxy settings, for the upstream server parameters
            action_log: Action log for lifecycle events
        """
        self.runtime = runtime
        self.balancer = balancer
        self.prober = prober
        self.fleet = fleet or FleetConfig()
        self.policy = policy or PolicyConfig()
        self.proxy = proxy or ProxyConfig()
        self.action_log = action_log
        self._instances: Dict[str, Instance] = {}

    @property
    def instances(self) -> List[Instance]:
        """All known instances ordered by ordinal."""
        return sorted(self._instances.values(), key=lambda i: i.ordinal)

    def in_service(self) -> List[Instance]:
        return [i for i in self.instances if i.state == InstanceState.IN_SERVICE]

    def count(self) -> int:
        """Number of instances currently in service."""
        return len(self.in_service())

    def get(self, identifier: str) -> Optional[Instance]:
        """Look up an instance by ordinal (``"7"``), name or container id."""
        identifier = str(identifier).strip()
        if identifier.isdigit():
            identifier = f"{self.fleet.name_prefix}-{int(identifier)}"

        if identifier in self._instances:
            return self._instances[identifier]
        for instance in self._instances.values():
            if instance.container_id and instance.container_id.startswith(identifier):
                return instance
        return None

    async def discover(self) -> List[Instance]:
        """Adopt running fleet containers into the instance table.

        Adopted instances are assumed to be in service; the next health
        sweep verifies them.

        Returns:
            Newly adopted instances
        """
        adopted = []
        for container in await self.runtime.list(self.fleet.name_prefix):
            if container.name in self._instances:
                continue
            if container.host_port is None:
                logger.warning(f"Container {container.name} publishes no port, not adopting it")
                continue
            instance = self._instance_for(container.ordinal(self.fleet.name_prefix), container.host_port)
            instance.container_id = container.container_id
            instance.state = InstanceState.IN_SERVICE
            self._instances[instance.instance_id] = instance
            adopted.append(instance)

        if adopted:
            logger.info(f"Adopted {len(adopted)} running instances: "
                        f"{', '.join(i.instance_id for i in adopted)}")
        return adopted

    async def add(self, enforce_bounds: bool = True) -> Instance:
        """Provision one instance and put it into service.

        Args:
            enforce_bounds: Refuse to grow past ``max_instances``

        Returns:
            The in-service instance

        Raises:
            CapacityError: If the fleet is already at its maximum
            EndpointConflictError: If the allocated endpoint is already in use
            InstanceProvisionError: If the container cannot be started
            HealthCheckTimeoutError: If the instance never became healthy
            LoadBalancerError: If registration failed (config rolled back)
        """
        if enforce_bounds and self.count() >= self.policy.max_instances:
            raise CapacityError(
                f"Cannot add instance: already at maximum instances ({self.policy.max_instances})"
            )

        instance = await self._allocate()
        self._instances[instance.instance_id] = instance
        logger.info(f"Provisioning {instance.instance_id} on port {instance.port}")

        try:
            container = await self.runtime.start(self._container_spec(instance))
        except FleetScalerError as e:
            await self._fail(instance, f"start failed: {e}")
            if isinstance(e, InstanceProvisionError):
                raise
            raise InstanceProvisionError(instance.instance_id, str(e))
        instance.container_id = container.container_id

        instance.transition(InstanceState.HEALTH_CHECKING)
        if not await self._wait_until_healthy(instance):
            await self._fail(instance, f"not healthy within {self.fleet.startup_timeout:g}s")
            raise HealthCheckTimeoutError(instance.instance_id, self.fleet.startup_timeout)

        try:
            await self.balancer.register(self._target(instance))
        except LoadBalancerError as e:
            await self._fail(instance, f"registration failed: {e}")
            raise

        instance.transition(InstanceState.IN_SERVICE)
        logger.info(f"Instance {instance.instance_id} is in service")
        if self.action_log:
            self.action_log.action(
                f"Added instance {instance.instance_id} ({instance.endpoint})",
                instance_id=instance.instance_id, endpoint=instance.endpoint
            )
        return instance

    async def remove(self, identifier: Optional[str] = None, enforce_bounds: bool = True) -> Instance:
        """Take one instance out of service and destroy it.

        Args:
            identifier: Instance to remove; None picks the newest in-service one
            enforce_bounds: Refuse to shrink below ``min_instances``

        Returns:
            The terminated instance

        Raises:
            InstanceNotFoundError: If no such instance exists (nothing is changed)
            CapacityError: If the fleet is already at its minimum
            LoadBalancerError: If deregistration failed (instance stays in service)
        """
        if identifier is None:
            candidates = self.in_service()
            if not candidates:
                raise CapacityError("Cannot remove instance: no instances in service")
            instance = candidates[-1]
        else:
            instance = self.get(identifier)
            if instance is None:
                raise InstanceNotFoundError(str(identifier))

        if enforce_bounds and self.count() <= self.policy.min_instances:
            raise CapacityError(
                f"Cannot remove instance: already at minimum instances ({self.policy.min_instances})"
            )

        instance.transition(InstanceState.DRAINING)
        logger.info(f"Draining {instance.instance_id}")

        try:
            await self.balancer.deregister(self._target(instance))
        except TargetNotFoundError:
            logger.warning(f"{instance.instance_id} was not registered with the load balancer")
        except LoadBalancerError:
            instance.transition(InstanceState.IN_SERVICE)
            raise

        if self.fleet.drain_seconds > 0:
            await asyncio.sleep(self.fleet.drain_seconds)

        await self._destroy(instance)
        instance.transition(InstanceState.TERMINATED)
        del self._instances[instance.instance_id]

        logger.info(f"Instance {instance.instance_id} terminated")
        if self.action_log:
            self.action_log.action(
                f"Removed instance {instance.instance_id} ({instance.endpoint})",
                instance_id=instance.instance_id, endpoint=instance.endpoint
            )
        return instance

    async def restart(self, instance: Instance) -> None:
        """Restart an instance's container in place.

        Raises:
            RestartError: If the runtime cannot restart it
        """
        logger.warning(f"Restarting {instance.instance_id}")
        await self.runtime.restart(instance.instance_id)
        if self.action_log:
            self.action_log.health(f"Restarted instance {instance.instance_id}",
                                   instance_id=instance.instance_id)

    async def scale_to(self, target: int, stop: Optional[asyncio.Event] = None) -> ScaleResult:
        """Add or remove instances one at a time until ``target`` are in service.

        Stops at the first failed step; the result says how far it got.

        Args:
            target: Desired number of instances
            stop: Checked between steps; once set, no further step starts

        Raises:
            CapacityError: If ``target`` is outside the instance bounds
            FatalError: If a step hit an unrecoverable proxy error
        """
        if not self.policy.min_instances <= target <= self.policy.max_instances:
            raise CapacityError(
                f"Target {target} outside bounds "
                f"[{self.policy.min_instances}, {self.policy.max_instances}]"
            )

        result = ScaleResult(target=target, initial_count=self.count())
        logger.info(f"Scaling from {result.initial_count} to {target} instances")

        while self.count() != target:
            if result.added or result.removed:
                await asyncio.sleep(self.fleet.step_pause)
            if stop is not None and stop.is_set():
                result.error = f"Interrupted at {self.count()} instances"
                logger.warning(f"Scaling to {target} interrupted at {self.count()} instances")
                break
            try:
                if self.count() < target:
                    result.added.append((await self.add()).instance_id)
                else:
                    result.removed.append((await self.remove()).instance_id)
            except FatalError:
                raise
            except FleetScalerError as e:
                result.error = str(e)
                logger.error(f"Scaling to {target} stopped at {self.count()} instances: {e}")
                break

        return result

    async def _allocate(self) -> Instance:
        containers = await self.runtime.list(self.fleet.name_prefix)
        ordinals = [i.ordinal for i in self._instances.values()]
        ordinals += [c.ordinal(self.fleet.name_prefix) for c in containers]
        ports = [i.port for i in self._instances.values()]
        ports += [c.host_port for c in containers if c.host_port is not None]

        ordinal = max(ordinals, default=0) + 1
        port = max(ports, default=self.fleet.base_port - 1) + 1
        port = max(port, self.fleet.base_port)
        instance = self._instance_for(ordinal, port)

        if instance.instance_id in self._instances or any(
            c.name == instance.instance_id for c in containers
        ):
            raise EndpointConflictError(instance.instance_id)
        routed = {t.endpoint for t in await self.balancer.targets()}
        if self._target(instance).endpoint in routed:
            raise EndpointConflictError(self._target(instance).endpoint)
        return instance

    def _instance_for(self, ordinal: int, port: int) -> Instance:
        name = f"{self.fleet.name_prefix}-{ordinal}"
        return Instance(
            instance_id=name,
            ordinal=ordinal,
            host=self.fleet.host,
            port=port,
            upstream_host=name,
            upstream_port=self.fleet.container_port
        )

    def _target(self, instance: Instance) -> UpstreamTarget:
        return instance.upstream_target(
            weight=self.proxy.weight,
            max_fails=self.proxy.max_fails,
            fail_timeout=self.proxy.fail_timeout
        )

    def _container_spec(self, instance: Instance) -> ContainerSpec:
        fleet = self.fleet
        environment = {
            "CONTAINER_NAME": instance.instance_id,
            "SERVER_INSTANCE": instance.instance_id,
        }
        environment.update(fleet.environment)

        volumes = {}
        if fleet.log_mount_root:
            host_dir = os.path.abspath(os.path.join(fleet.log_mount_root, instance.instance_id))
            volumes[host_dir] = fleet.log_mount_target

        return ContainerSpec(
            name=instance.instance_id,
            image=fleet.image,
            network=fleet.network,
            host_port=instance.port,
            container_port=fleet.container_port,
            environment=environment,
            labels={"fleet-scaler.fleet": fleet.name_prefix,
                    "fleet-scaler.ordinal": str(instance.ordinal)},
            volumes=volumes,
            restart_policy=fleet.restart_policy
        )

    async def _wait_until_healthy(self, instance: Instance) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.fleet.startup_timeout

        while True:
            if await self.prober.check(instance):
                logger.debug(f"{instance.instance_id} passed its startup probe")
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.fleet.health_poll_interval, remaining))

    async def _destroy(self, instance: Instance) -> None:
        try:
            await self.runtime.stop(instance.instance_id)
        except InstanceNotFoundError:
            logger.warning(f"Container {instance.instance_id} already gone")
            return
        except FleetScalerError as e:
            logger.warning(f"Stopping {instance.instance_id} failed, removing anyway: {e}")
        try:
            await self.runtime.remove(instance.instance_id)
        except InstanceNotFoundError:
            logger.warning(f"Container {instance.instance_id} already removed")

    async def _fail(self, instance: Instance, reason: str) -> None:
        instance.transition(InstanceState.FAILED)
        logger.error(f"Instance {instance.instance_id} failed: {reason}")
        try:
            await self._destroy(instance)
        except FleetScalerError as e:
            logger.error(f"Cleanup of failed instance {instance.instance_id} failed: {e}")
        self._instances.pop(instance.instance_id, None)
        if self.action_log:
            self.action_log.error(
                f"Instance {instance.instance_id} failed: {reason}",
                instance_id=instance.instance_id
            )
