"""In-memory runtime for dry runs and tests."""

import logging
import uuid
from typing import Dict, List, Optional, Set

from .base import ContainerInfo, ContainerRuntime, ContainerSpec
from ..core.exceptions import (
    InstanceNotFoundError, InstanceProvisionError, RestartError
)
from ..core.probe import HealthProber
from ..core.types import Instance


logger = logging.getLogger(__name__)


class InMemoryRuntime(ContainerRuntime):
    """Simulated container runtime.

    Containers exist only in this object. Health and CPU readings can be set
    per container, and every mutating call is appended to ``calls`` so
    ordering can be inspected.
    """

    name = "memory"

    def __init__(self, default_cpu: Optional[float] = 10.0, healthy_by_default: bool = True):
        """Initialize in-memory runtime.

        Args:
            default_cpu: CPU percent reported for containers without an override
            healthy_by_default: Whether new containers pass health probes
        """
        self.default_cpu = default_cpu
        self.healthy_by_default = healthy_by_default
        self.containers: Dict[str, ContainerInfo] = {}
        self.specs: Dict[str, ContainerSpec] = {}
        self.cpu: Dict[str, Optional[float]] = {}
        self.healthy: Dict[str, bool] = {}
        self.heal_on_restart: Set[str] = set()
        self.fail_start: bool = False
        self.fail_restart: Set[str] = set()
        self.calls: List[tuple] = []

    async def start(self, spec: ContainerSpec) -> ContainerInfo:
        self.calls.append(("start", spec.name))
        if self.fail_start:
            raise InstanceProvisionError(spec.name, "simulated start failure")
        if spec.name in self.containers:
            raise InstanceProvisionError(spec.name, "container name already in use")

        info = ContainerInfo(
            name=spec.name,
            container_id=uuid.uuid4().hex,
            host_port=spec.host_port,
            labels=dict(spec.labels)
        )
        self.containers[spec.name] = info
        self.specs[spec.name] = spec
        self.healthy.setdefault(spec.name, self.healthy_by_default)
        logger.debug(f"Started simulated container {spec.name}")
        return info

    async def stop(self, name: str, timeout: int = 10) -> None:
        self.calls.append(("stop", name))
        if name not in self.containers:
            raise InstanceNotFoundError(name)
        self.containers[name].status = "exited"

    async def remove(self, name: str) -> None:
        self.calls.append(("remove", name))
        if self.containers.pop(name, None) is None:
            raise InstanceNotFoundError(name)
        self.specs.pop(name, None)
        self.healthy.pop(name, None)
        self.cpu.pop(name, None)

    async def restart(self, name: str) -> None:
        self.calls.append(("restart", name))
        if name not in self.containers:
            raise RestartError(name, InstanceNotFoundError(name))
        if name in self.fail_restart:
            raise RestartError(name, RuntimeError("simulated restart failure"))
        if name in self.heal_on_restart:
            self.healthy[name] = True

    async def list(self, prefix: str) -> List[ContainerInfo]:
        running = [c for c in self.containers.values() if c.status == "running"]
        return self._sort_by_ordinal(running, prefix)

    async def stats(self, name: str) -> Optional[float]:
        if name not in self.containers:
            return None
        return self.cpu.get(name, self.default_cpu)

    def add_existing(self, name: str, host_port: int) -> ContainerInfo:
        """Register a container as if it had been started out of band."""
        info = ContainerInfo(name=name, container_id=uuid.uuid4().hex, host_port=host_port)
        self.containers[name] = info
        self.healthy.setdefault(name, self.healthy_by_default)
        return info

    def is_healthy(self, name: str) -> bool:
        container = self.containers.get(name)
        return bool(container and container.status == "running" and self.healthy.get(name, False))


class InMemoryProber(HealthProber):
    """Reads health from an ``InMemoryRuntime`` instead of the network."""

    def __init__(self, runtime: InMemoryRuntime, attempts: int = 1, retry_delay: float = 0.0):
        super().__init__(attempts=attempts, retry_delay=retry_delay)
        self.runtime = runtime
        self.probes: List[str] = []

    async def check(self, instance: Instance) -> bool:
        self.probes.append(instance.instance_id)
        return self.runtime.is_healthy(instance.instance_id)
