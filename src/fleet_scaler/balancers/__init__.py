"""Load balancer controllers and the nginx upstream model."""

from .base import LoadBalancerController, FileConfigController
from .nginx import (
    UpstreamConfig, parse_upstream, render_default_config,
    LocalNginxController, DockerNginxController, InMemoryNginxController
)

__all__ = [
    "LoadBalancerController",
    "FileConfigController",
    "UpstreamConfig",
    "parse_upstream",
    "render_default_config",
    "LocalNginxController",
    "DockerNginxController",
    "InMemoryNginxController",
]
