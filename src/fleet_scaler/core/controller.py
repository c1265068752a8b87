"""The autoscaling control loop."""

import asyncio
import logging
import signal
from datetime import datetime
from typing import Any, Dict, Optional

from .config import ScalerConfig
from .exceptions import (
    CapacityError, ConfigurationError, CooldownError, FatalError, FleetScalerError
)
from .health import HealthMonitor
from .lifecycle import InstanceLifecycleManager
from .load_balancer import LoadBalancerConfigManager
from .logging_config import ActionLog
from .metrics import AccessLogReader, MetricsCollector
from .policy import ScalingPolicyEngine
from .probe import HealthProber, HttpProber
from .types import (
    ControllerState, EntryKind, MetricsSnapshot, ScalingAction, ScalingDecision
)
from ..balancers.base import LoadBalancerController
from ..balancers.nginx import (
    DockerNginxController, InMemoryNginxController, LocalNginxController
)
from ..runtimes.base import ContainerRuntime
from ..runtimes.docker_runtime import DockerRuntime
from ..runtimes.memory import InMemoryProber, InMemoryRuntime


logger = logging.getLogger(__name__)


class AutoscalingController:
    """Runs health sweeps, samples load and applies scaling decisions.

    Each tick is strictly sequential: health sweep, settle pause, metrics
    sample, policy decision, at most one scale action. A fatal error halts
    automatic scaling; later ticks still sweep health but only report.
    """

    def __init__(
        self,
        config: ScalerConfig,
        runtime: ContainerRuntime,
        proxy: LoadBalancerController,
        prober: HealthProber,
        access_log: Optional[AccessLogReader] = None,
        action_log: Optional[ActionLog] = None
    ):
        """Initialize controller.

        Args:
            config: Scaler configuration
            runtime: Container runtime hosting the workers
            proxy: Load balancer controller
            prober: Health prober
            access_log: Proxy access log reader for latency and rate
            action_log: Action log (memory only if None)
        """
        self.config = config
        self.runtime = runtime
        self.prober = prober
        self.action_log = action_log or ActionLog()

        self.balancer = LoadBalancerConfigManager(
            proxy, config.proxy.upstream_name, self.action_log
        )
        self.lifecycle = InstanceLifecycleManager(
            runtime, self.balancer, prober,
            fleet=config.fleet, policy=config.policy, proxy=config.proxy,
            action_log=self.action_log
        )
        self.health = HealthMonitor(
            self.lifecycle, prober, config.fleet.restart_grace_seconds, self.action_log
        )
        self.metrics = MetricsCollector(runtime, access_log, config.fleet.name_prefix)
        self.policy = ScalingPolicyEngine(config.policy)

        self.state = ControllerState()
        self._stop_event = asyncio.Event()
        self._discovered = False

    @classmethod
    def from_config(cls, config: ScalerConfig) -> 'AutoscalingController':
        """Build a controller with the runtime and proxy the config names.

        Dry runs always use the in-memory runtime and proxy.

        Raises:
            ConfigurationError: If the runtime or proxy controller is unknown
        """
        fleet, proxy_config = config.fleet, config.proxy
        runtime_name = "memory" if config.dry_run else fleet.runtime
        controller_name = "memory" if config.dry_run else proxy_config.controller

        if runtime_name == "memory":
            runtime = InMemoryRuntime()
            prober = InMemoryProber(runtime)
        elif runtime_name == "docker":
            runtime = DockerRuntime()
            prober = HttpProber(
                path=fleet.health_path,
                timeout=fleet.probe_timeout,
                attempts=fleet.probe_attempts,
                retry_delay=fleet.probe_retry_delay
            )
        else:
            raise ConfigurationError(f"Unknown runtime: {runtime_name}")

        if controller_name == "memory":
            proxy = InMemoryNginxController(proxy_config.upstream_name)
            access_log = None
        elif controller_name == "docker":
            proxy = DockerNginxController(proxy_config.config_path, proxy_config.container)
            access_log = AccessLogReader(proxy_config.access_log_path, proxy_config.latency_window)
        elif controller_name == "local":
            proxy = LocalNginxController(proxy_config.config_path, proxy_config.nginx_binary)
            access_log = AccessLogReader(proxy_config.access_log_path, proxy_config.latency_window)
        else:
            raise ConfigurationError(f"Unknown proxy controller: {controller_name}")

        action_log = ActionLog(config.action_log_path or None)
        if config.dry_run:
            logger.info("Dry run: using in-memory runtime and proxy")

        return cls(config, runtime, proxy, prober, access_log, action_log)

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        await self.prober.close()
        await self.runtime.close()
        self.action_log.close()

    async def discover(self) -> None:
        """Adopt the fleet that is already running (once per process)."""
        if self._discovered:
            return
        await self.lifecycle.discover()
        self._discovered = True

    @property
    def stop_event(self) -> asyncio.Event:
        """Set once a stop is requested."""
        return self._stop_event

    def request_stop(self) -> None:
        """Ask the loop to exit after the current tick."""
        if not self._stop_event.is_set():
            logger.info("Stop requested, finishing current tick")
        self._stop_event.set()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT and SIGTERM to ``request_stop``."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                logger.warning(f"Cannot install handler for {sig.name} on this platform")

    async def run(self) -> None:
        """Run ticks every ``check_interval`` seconds until stopped."""
        await self.discover()
        logger.info(
            f"Autoscaler started: {self.lifecycle.count()} instances, "
            f"check interval {self.config.check_interval:g}s"
        )
        self.action_log.action("Autoscaler started", instance_count=self.lifecycle.count())

        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in control loop: {e}", exc_info=True)
                self.action_log.error(f"Control loop error: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.check_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Autoscaler stopped")
        self.action_log.action("Autoscaler stopped", instance_count=self.lifecycle.count())

    async def tick(self) -> Optional[ScalingDecision]:
        """Run one control cycle.

        Returns:
            The decision taken, or None if scaling is halted
        """
        await self.discover()
        self.state.tick_count += 1

        try:
            await self.health.sweep(remediate=not self.state.halted)
        except FatalError as e:
            self._halt(e)
        except FleetScalerError as e:
            logger.error(f"Health sweep failed: {e}")
            self.action_log.error(f"Health sweep failed: {e}", error_code=e.error_code)

        if self.state.halted:
            logger.warning(f"Scaling halted: {self.state.halt_reason}")
            return None

        if self.config.settle_seconds > 0:
            await asyncio.sleep(self.config.settle_seconds)

        snapshot = await self.metrics.sample()
        decision = self.policy.decide(snapshot, self.state.cooldown)
        self.state.last_decision = decision

        logger.info(f"Decision: {decision.summary()}")
        self.action_log.decision(
            decision.summary(),
            action=decision.action.value,
            blocked_by=decision.blocked_by,
            metrics=snapshot.to_dict()
        )
        if decision.blocked_by:
            logger.warning(f"Scale action refused: {decision.refusal}")
            self.action_log.warning(
                f"Scale action refused: {decision.refusal}",
                blocked_by=decision.blocked_by,
                reasons=decision.reasons
            )

        if decision.should_act:
            await self._act(decision)
        return decision

    async def evaluate(self, snapshot: Optional[MetricsSnapshot] = None) -> ScalingDecision:
        """Decide on ``snapshot`` (or a fresh sample) without acting."""
        if snapshot is None:
            await self.discover()
            snapshot = await self.metrics.sample()
        return self.policy.decide(snapshot, self.state.cooldown)

    async def status(self) -> Dict[str, Any]:
        """Report the fleet, its routing and load, thresholds and recent events.

        Each instance is probed once; the result is reported, not acted on.
        """
        await self.discover()
        snapshot = await self.metrics.sample()
        routed = [t.endpoint for t in await self.balancer.targets()]

        instances = []
        for instance in self.lifecycle.instances:
            entry = instance.to_dict()
            entry['healthy'] = await self.prober.check(instance)
            entry['routed'] = instance.upstream_target().endpoint in routed
            instances.append(entry)

        recent = self.action_log.tail(
            10, kinds=[EntryKind.ACTION, EntryKind.WARNING, EntryKind.ERROR]
        )
        return {
            'instance_count': snapshot.instance_count,
            'instances': instances,
            'routed': routed,
            'metrics': snapshot.to_dict(),
            'thresholds': self.policy.describe(),
            'halted': self.state.halted,
            'halt_reason': self.state.halt_reason,
            'recent_events': [e.format() for e in recent],
        }

    async def _act(self, decision: ScalingDecision) -> None:
        try:
            if decision.action == ScalingAction.SCALE_UP:
                instance = await self.lifecycle.add()
                message = f"Scaled up: added {instance.instance_id}"
            else:
                instance = await self.lifecycle.remove()
                message = f"Scaled down: removed {instance.instance_id}"
        except (CapacityError, CooldownError) as e:
            logger.warning(f"Scale action refused: {e}")
            self.action_log.warning(f"Scale action refused: {e}")
            return
        except FatalError as e:
            self._halt(e)
            return
        except FleetScalerError as e:
            logger.error(f"Scale action failed: {e}")
            self.action_log.error(
                f"{decision.action.value} failed: {e}", error_code=e.error_code
            )
            return

        self.state.cooldown.record(decision.action, datetime.now())
        logger.info(f"{message} ({self.lifecycle.count()} in service)")
        self.action_log.action(
            message,
            action=decision.action.value,
            reasons=decision.reasons,
            instance_count=self.lifecycle.count()
        )

    def _halt(self, error: FatalError) -> None:
        self.state.halted = True
        self.state.halt_reason = str(error)
        logger.critical(f"Halting automatic scaling: {error}")
        self.action_log.error(
            f"Automatic scaling halted: {error}", error_code=error.error_code
        )
