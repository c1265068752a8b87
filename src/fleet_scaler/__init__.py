"""
fleet-scaler: autoscaling controller for HTTP worker fleets behind nginx.

The controller samples CPU, latency and request rate, scales a fleet of
worker containers between configured bounds, and keeps the nginx upstream
block in step with the fleet, rolling back any config change nginx rejects.
"""

from .core.controller import AutoscalingController
from .core.policy import ScalingPolicyEngine
from .core.lifecycle import InstanceLifecycleManager
from .core.load_balancer import LoadBalancerConfigManager
from .core.health import HealthMonitor
from .core.metrics import MetricsCollector, AccessLogReader
from .core.config import ScalerConfig, ConfigManager
from .core.types import (
    Instance, InstanceState, MetricsSnapshot, ScalingAction, ScalingDecision,
    UpstreamTarget
)

__version__ = "0.1.0"

__all__ = [
    # Control loop
    "AutoscalingController",
    "ScalingPolicyEngine",
    "InstanceLifecycleManager",
    "LoadBalancerConfigManager",
    "HealthMonitor",
    # Metrics
    "MetricsCollector",
    "AccessLogReader",
    # Configuration
    "ScalerConfig",
    "ConfigManager",
    # Data types
    "Instance",
    "InstanceState",
    "MetricsSnapshot",
    "ScalingAction",
    "ScalingDecision",
    "UpstreamTarget",
]
