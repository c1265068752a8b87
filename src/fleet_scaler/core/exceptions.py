"""Custom exceptions for fleet-scaler."""

from typing import Optional


class FleetScalerError(Exception):
    """Base exception for fleet-scaler."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class FatalError(FleetScalerError):
    """Raised when automatic scaling must halt until an operator intervenes."""
    pass


class TransientError(FleetScalerError):
    """Raised for failures that are retried and then escalated."""
    pass


class ProbeError(TransientError):
    """Raised when a single health probe fails."""

    def __init__(self, instance_id: str, reason: str):
        super().__init__(
            f"Health probe failed for {instance_id}: {reason}",
            error_code="PROBE_FAILED"
        )
        self.instance_id = instance_id
        self.reason = reason


class RestartError(TransientError):
    """Raised when an in-place restart fails."""

    def __init__(self, instance_id: str, original_error: Exception):
        super().__init__(
            f"Failed to restart {instance_id}: {original_error}",
            error_code="RESTART_FAILED"
        )
        self.instance_id = instance_id
        self.original_error = original_error


class ConfigurationError(FleetScalerError):
    """Raised when the scaler configuration is invalid."""
    pass


class RuntimeUnavailableError(FleetScalerError):
    """Raised when the container runtime cannot be reached."""

    def __init__(self, runtime: str, reason: str):
        super().__init__(
            f"Container runtime '{runtime}' unavailable: {reason}",
            error_code="RUNTIME_UNAVAILABLE"
        )
        self.runtime = runtime


class LoadBalancerError(FleetScalerError):
    """Raised when the load balancer configuration cannot be changed."""
    pass


class ConfigValidationError(LoadBalancerError):
    """Raised when the proxy rejects a staged configuration."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message, error_code="PROXY_CONFIG_INVALID")
        self.output = output


class ConfigReloadError(LoadBalancerError):
    """Raised when the proxy fails to reload its configuration."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message, error_code="PROXY_RELOAD_FAILED")
        self.output = output


class DuplicateTargetError(LoadBalancerError):
    """Raised when registering an endpoint that is already routed."""

    def __init__(self, endpoint: str):
        super().__init__(
            f"Upstream target {endpoint} is already registered",
            error_code="DUPLICATE_TARGET"
        )
        self.endpoint = endpoint


class TargetNotFoundError(LoadBalancerError):
    """Raised when deregistering an endpoint that is not routed."""

    def __init__(self, endpoint: str):
        super().__init__(
            f"Upstream target {endpoint} is not registered",
            error_code="TARGET_NOT_FOUND"
        )
        self.endpoint = endpoint


class RollbackError(LoadBalancerError, FatalError):
    """Raised when the backup configuration cannot be restored."""

    def __init__(self, reason: str):
        super().__init__(
            f"Load balancer rollback failed: {reason}. "
            "Automatic scaling halted until the proxy configuration is repaired",
            error_code="ROLLBACK_FAILED"
        )
        self.reason = reason


class LifecycleError(FleetScalerError):
    """Raised when an instance lifecycle operation fails."""
    pass


class InstanceProvisionError(LifecycleError):
    """Raised when a new instance cannot be started."""

    def __init__(self, instance_id: str, reason: str):
        super().__init__(
            f"Failed to provision {instance_id}: {reason}",
            error_code="PROVISION_FAILED"
        )
        self.instance_id = instance_id


class HealthCheckTimeoutError(LifecycleError):
    """Raised when a new instance never becomes healthy."""

    def __init__(self, instance_id: str, timeout_seconds: float):
        super().__init__(
            f"Instance {instance_id} failed health check within {timeout_seconds}s",
            error_code="HEALTH_CHECK_TIMEOUT"
        )
        self.instance_id = instance_id
        self.timeout_seconds = timeout_seconds


class InstanceNotFoundError(LifecycleError):
    """Raised when an instance id does not name a managed instance."""

    def __init__(self, instance_id: str):
        super().__init__(
            f"Instance {instance_id} not found",
            error_code="INSTANCE_NOT_FOUND"
        )
        self.instance_id = instance_id


class EndpointConflictError(LifecycleError):
    """Raised when a new instance would reuse a live endpoint."""

    def __init__(self, endpoint: str):
        super().__init__(
            f"Endpoint {endpoint} is already in use",
            error_code="ENDPOINT_CONFLICT"
        )
        self.endpoint = endpoint


class InvalidStateTransitionError(LifecycleError):
    """Raised on an illegal instance state transition."""

    def __init__(self, instance_id: str, current: str, requested: str):
        super().__init__(
            f"Instance {instance_id} cannot move from {current} to {requested}",
            error_code="INVALID_TRANSITION"
        )
        self.instance_id = instance_id
        self.current = current
        self.requested = requested


class CapacityError(FleetScalerError):
    """Raised when an action would leave the instance bounds."""

    def __init__(self, message: str):
        super().__init__(message, error_code="CAPACITY_LIMIT")


class CooldownError(FleetScalerError):
    """Raised when an action is requested inside its cooldown window."""

    def __init__(self, direction: str, remaining_seconds: float):
        super().__init__(
            f"{direction} in cooldown for another {remaining_seconds:.0f}s",
            error_code="COOLDOWN_ACTIVE"
        )
        self.direction = direction
        self.remaining_seconds = remaining_seconds
