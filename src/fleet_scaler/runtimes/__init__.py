"""Container runtimes hosting worker instances."""

from .base import ContainerRuntime, ContainerSpec, ContainerInfo
from .memory import InMemoryRuntime, InMemoryProber

__all__ = [
    "ContainerRuntime",
    "ContainerSpec",
    "ContainerInfo",
    "InMemoryRuntime",
    "InMemoryProber",
]
