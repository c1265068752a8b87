"""Core autoscaling types and errors."""

from .types import (
    Instance, InstanceState, MetricsSnapshot, ScalingAction, ScalingDecision,
    UpstreamTarget
)
from .exceptions import FleetScalerError, FatalError

__all__ = [
    "Instance",
    "InstanceState",
    "MetricsSnapshot",
    "ScalingAction",
    "ScalingDecision",
    "UpstreamTarget",
    "FleetScalerError",
    "FatalError",
]
