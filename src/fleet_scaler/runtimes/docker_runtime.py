"""Docker Engine runtime backed by the docker SDK."""

import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .base import ContainerInfo, ContainerRuntime, ContainerSpec
from ..core.exceptions import (
    InstanceNotFoundError, InstanceProvisionError, RestartError,
    RuntimeUnavailableError
)


logger = logging.getLogger(__name__)


def calculate_cpu_percent(stats: Dict[str, Any]) -> Optional[float]:
    """Compute CPU percent from a docker stats payload as ``docker stats`` does.

    Args:
        stats: One-shot stats dictionary from the Engine API

    Returns:
        CPU utilization in percent, or None if the payload lacks usable data
    """
    try:
        cpu_stats = stats["cpu_stats"]
        precpu_stats = stats["precpu_stats"]
        cpu_delta = (
            cpu_stats["cpu_usage"]["total_usage"]
            - precpu_stats["cpu_usage"]["total_usage"]
        )
        system_delta = (
            cpu_stats.get("system_cpu_usage", 0)
            - precpu_stats.get("system_cpu_usage", 0)
        )
    except (KeyError, TypeError):
        return None

    online_cpus = cpu_stats.get("online_cpus") or len(
        cpu_stats["cpu_usage"].get("percpu_usage") or []
    ) or 1

    if system_delta <= 0 or cpu_delta < 0:
        return None

    return (cpu_delta / system_delta) * online_cpus * 100.0


class DockerRuntime(ContainerRuntime):
    """Runs worker containers on a local Docker Engine.

    The docker SDK is synchronous, so every call is pushed to the default
    executor to keep the event loop responsive.
    """

    name = "docker"

    def __init__(self, client: Optional[docker.DockerClient] = None, stop_timeout: int = 10):
        """Initialize Docker runtime.

        Args:
            client: Docker client (defaults to ``docker.from_env()`` on first use)
            stop_timeout: Seconds to wait for a graceful container stop
        """
        self._client = client
        self.stop_timeout = stop_timeout

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailableError(self.name, str(e))
        return self._client

    async def _call(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _get(self, name: str):
        try:
            return await self._call(self.client.containers.get, name)
        except NotFound:
            raise InstanceNotFoundError(name)
        except (APIError, DockerException) as e:
            raise RuntimeUnavailableError(self.name, str(e))

    async def start(self, spec: ContainerSpec) -> ContainerInfo:
        volumes = {
            host_path: {"bind": container_path, "mode": "rw"}
            for host_path, container_path in spec.volumes.items()
        }

        try:
            container = await self._call(
                self.client.containers.run,
                spec.image,
                name=spec.name,
                detach=True,
                network=spec.network,
                ports={f"{spec.container_port}/tcp": spec.host_port},
                environment=spec.environment,
                labels=spec.labels,
                volumes=volumes,
                restart_policy={"Name": spec.restart_policy},
            )
        except ImageNotFound as e:
            raise InstanceProvisionError(spec.name, f"image {spec.image} not found: {e}")
        except (APIError, DockerException) as e:
            raise InstanceProvisionError(spec.name, str(e))

        logger.info(f"Started container {spec.name} ({container.short_id}) on port {spec.host_port}")
        return ContainerInfo(
            name=spec.name,
            container_id=container.id,
            host_port=spec.host_port,
            status=container.status,
            labels=dict(spec.labels)
        )

    async def stop(self, name: str, timeout: Optional[int] = None) -> None:
        container = await self._get(name)
        try:
            await self._call(container.stop, timeout=timeout or self.stop_timeout)
        except (APIError, DockerException) as e:
            raise RuntimeUnavailableError(self.name, f"failed to stop {name}: {e}")
        logger.debug(f"Stopped container {name}")

    async def remove(self, name: str) -> None:
        container = await self._get(name)
        try:
            await self._call(container.remove, force=True)
        except NotFound:
            logger.debug(f"Container {name} already removed")
        except (APIError, DockerException) as e:
            raise RuntimeUnavailableError(self.name, f"failed to remove {name}: {e}")
        logger.debug(f"Removed container {name}")

    async def restart(self, name: str) -> None:
        try:
            container = await self._get(name)
            await self._call(container.restart, timeout=self.stop_timeout)
        except (InstanceNotFoundError, RuntimeUnavailableError, APIError, DockerException) as e:
            raise RestartError(name, e)
        logger.info(f"Restarted container {name}")

    async def list(self, prefix: str) -> List[ContainerInfo]:
        try:
            containers = await self._call(
                self.client.containers.list, filters={"name": f"{prefix}-"}
            )
        except (APIError, DockerException) as e:
            raise RuntimeUnavailableError(self.name, str(e))

        infos = [
            ContainerInfo(
                name=c.name,
                container_id=c.id,
                host_port=self._published_port(c),
                status=c.status,
                labels=dict(c.labels or {})
            )
            for c in containers
        ]
        return self._sort_by_ordinal(infos, prefix)

    async def stats(self, name: str) -> Optional[float]:
        try:
            container = await self._get(name)
            payload = await self._call(container.stats, stream=False)
        except (InstanceNotFoundError, RuntimeUnavailableError, APIError, DockerException) as e:
            logger.warning(f"CPU stats unavailable for {name}: {e}")
            return None

        return calculate_cpu_percent(payload)

    async def close(self) -> None:
        if self._client is not None:
            await self._call(self._client.close)
            self._client = None

    @staticmethod
    def _published_port(container) -> Optional[int]:
        ports = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        for bindings in ports.values():
            for binding in bindings or []:
                host_port = binding.get("HostPort")
                if host_port and host_port.isdigit():
                    return int(host_port)
        return None
