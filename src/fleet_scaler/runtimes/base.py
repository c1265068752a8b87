"""Base class for container runtimes hosting worker instances."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ContainerSpec:
    """Everything needed to start one worker container."""
    name: str
    image: str
    network: str
    host_port: int
    container_port: int
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    volumes: Dict[str, str] = field(default_factory=dict)  # host path -> container path
    restart_policy: str = "unless-stopped"


@dataclass
class ContainerInfo:
    """A live container as reported by the runtime."""
    name: str
    container_id: str
    host_port: Optional[int]
    status: str = "running"
    labels: Dict[str, str] = field(default_factory=dict)

    def ordinal(self, prefix: str) -> Optional[int]:
        """Ordinal encoded in ``<prefix>-<n>`` names, or None."""
        match = re.fullmatch(rf"{re.escape(prefix)}-(\d+)", self.name)
        return int(match.group(1)) if match else None


class ContainerRuntime(ABC):
    """Abstract container runtime used by the lifecycle manager and metrics."""

    name = "base"

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    @abstractmethod
    async def start(self, spec: ContainerSpec) -> ContainerInfo:
        """Create and start a container.

        Args:
            spec: Container specification

        Returns:
            The started container

        Raises:
            InstanceProvisionError: If the container cannot be started
        """
        pass

    @abstractmethod
    async def stop(self, name: str, timeout: int = 10) -> None:
        """Stop a running container."""
        pass

    @abstractmethod
    async def remove(self, name: str) -> None:
        """Destroy a stopped container."""
        pass

    @abstractmethod
    async def restart(self, name: str) -> None:
        """Restart a container in place.

        Raises:
            RestartError: If the restart fails
        """
        pass

    @abstractmethod
    async def list(self, prefix: str) -> List[ContainerInfo]:
        """List live containers whose names follow ``<prefix>-<n>``.

        Args:
            prefix: Fleet name prefix

        Returns:
            Running containers ordered by ordinal
        """
        pass

    @abstractmethod
    async def stats(self, name: str) -> Optional[float]:
        """Current CPU utilization of a container in percent.

        Returns:
            CPU percent, or None if no reading is available
        """
        pass

    async def close(self) -> None:
        """Release runtime resources."""
        pass

    @staticmethod
    def _sort_by_ordinal(containers: List[ContainerInfo], prefix: str) -> List[ContainerInfo]:
        matching = [c for c in containers if c.ordinal(prefix) is not None]
        return sorted(matching, key=lambda c: c.ordinal(prefix))
