"""Core data types for the fleet autoscaler."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import InvalidStateTransitionError


class InstanceState(str, Enum):
    """Lifecycle state of a worker instance."""
    PROVISIONING = "provisioning"
    HEALTH_CHECKING = "health_checking"
    IN_SERVICE = "in_service"
    DRAINING = "draining"
    TERMINATED = "terminated"
    FAILED = "failed"


_TRANSITIONS = {
    InstanceState.PROVISIONING: {InstanceState.HEALTH_CHECKING, InstanceState.FAILED},
    InstanceState.HEALTH_CHECKING: {InstanceState.IN_SERVICE, InstanceState.FAILED},
    InstanceState.IN_SERVICE: {InstanceState.DRAINING},
    # DRAINING -> IN_SERVICE only when deregistration was rolled back
    InstanceState.DRAINING: {InstanceState.TERMINATED, InstanceState.IN_SERVICE},
    InstanceState.TERMINATED: set(),
    InstanceState.FAILED: set(),
}


class ScalingAction(str, Enum):
    """Scaling decision outcome."""
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    NO_ACTION = "no_action"


class EntryKind(str, Enum):
    """Classes of action log entries."""
    DECISION = "decision"
    ACTION = "action"
    HEALTH = "health"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class UpstreamTarget:
    """One server entry in the proxy's upstream block."""
    host: str
    port: int
    weight: int = 1
    max_fails: int = 3
    fail_timeout: str = "30s"
    flags: Tuple[str, ...] = ()

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def to_directive(self) -> str:
        """Render as an nginx ``server`` directive."""
        parts = [
            f"server {self.endpoint}",
            f"max_fails={self.max_fails}",
            f"fail_timeout={self.fail_timeout}",
            f"weight={self.weight}",
        ]
        parts.extend(self.flags)
        return " ".join(parts) + ";"


@dataclass
class Instance:
    """A worker instance managed by the lifecycle manager.

    ``host``/``port`` is where the controller reaches the instance for health
    probes; ``upstream_host``/``upstream_port`` is where the proxy routes to it.
    """
    instance_id: str
    ordinal: int
    host: str
    port: int
    upstream_host: str
    upstream_port: int
    state: InstanceState = InstanceState.PROVISIONING
    created_at: datetime = field(default_factory=datetime.now)
    container_id: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def upstream_target(
        self,
        weight: int = 1,
        max_fails: int = 3,
        fail_timeout: str = "30s"
    ) -> UpstreamTarget:
        return UpstreamTarget(
            host=self.upstream_host,
            port=self.upstream_port,
            weight=weight,
            max_fails=max_fails,
            fail_timeout=fail_timeout
        )

    def transition(self, new_state: InstanceState) -> None:
        """Move to ``new_state``.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                self.instance_id, self.state.value, new_state.value
            )
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "ordinal": self.ordinal,
            "endpoint": self.endpoint,
            "upstream": f"{self.upstream_host}:{self.upstream_port}",
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time load signals for the fleet.

    ``avg_cpu_percent`` and ``avg_latency_seconds`` are ``None`` when no
    reading was available.
    """
    instance_count: int
    avg_cpu_percent: Optional[float]
    avg_latency_seconds: Optional[float]
    request_rate_per_minute: float
    request_rate_per_instance: float
    cpu_samples: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_count": self.instance_count,
            "avg_cpu_percent": self.avg_cpu_percent,
            "avg_latency_seconds": self.avg_latency_seconds,
            "request_rate_per_minute": self.request_rate_per_minute,
            "request_rate_per_instance": self.request_rate_per_instance,
            "cpu_samples": self.cpu_samples,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CooldownState:
    """Timestamps of the last successful scale action in each direction."""
    last_scale_up: Optional[datetime] = None
    last_scale_down: Optional[datetime] = None

    def last_action_time(self, action: ScalingAction) -> Optional[datetime]:
        if action == ScalingAction.SCALE_UP:
            return self.last_scale_up
        if action == ScalingAction.SCALE_DOWN:
            return self.last_scale_down
        return None

    def remaining(self, action: ScalingAction, cooldown_seconds: float,
                  now: Optional[datetime] = None) -> float:
        """Seconds left before ``action`` is allowed again (0 if allowed)."""
        last = self.last_action_time(action)
        if last is None:
            return 0.0
        elapsed = ((now or datetime.now()) - last).total_seconds()
        return max(0.0, cooldown_seconds - elapsed)

    def record(self, action: ScalingAction, at: Optional[datetime] = None) -> None:
        at = at or datetime.now()
        if action == ScalingAction.SCALE_UP:
            self.last_scale_up = at
        elif action == ScalingAction.SCALE_DOWN:
            self.last_scale_down = at


@dataclass
class ScalingDecision:
    """Result of a single policy evaluation."""
    action: ScalingAction
    reasons: List[str] = field(default_factory=list)
    snapshot: Optional[MetricsSnapshot] = None
    blocked_by: Optional[str] = None
    refusal: Optional[str] = None  # why a triggered action was blocked
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def should_act(self) -> bool:
        return self.action != ScalingAction.NO_ACTION

    def summary(self) -> str:
        text = self.action.value.replace("_", " ").upper()
        if self.reasons:
            text += f" ({'; '.join(self.reasons)})"
        if self.blocked_by:
            text += f" [blocked by {self.blocked_by}]"
        return text


@dataclass
class HealthResult:
    """Outcome of probing one instance during a health sweep."""
    instance: Instance
    healthy: bool
    restarted: bool = False
    evicted: bool = False
    error: Optional[str] = None


@dataclass
class ScaleResult:
    """Outcome of driving the fleet toward an explicit size."""
    target: int
    initial_count: int
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def final_count(self) -> int:
        return self.initial_count + len(self.added) - len(self.removed)


@dataclass
class ControllerState:
    """Mutable state threaded through the control loop."""
    cooldown: CooldownState = field(default_factory=CooldownState)
    halted: bool = False
    halt_reason: Optional[str] = None
    last_decision: Optional[ScalingDecision] = None
    tick_count: int = 0


@dataclass
class ActionLogEntry:
    """One record of the append-only action log."""
    kind: EntryKind
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionLogEntry':
        return cls(
            kind=EntryKind(data["kind"]),
            message=data["message"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            details=data.get("details") or {}
        )

    def format(self) -> str:
        stamp = self.timestamp.strftime('%Y-%m-%d %H:%M:%S')
        return f"[{stamp}] [{self.kind.value.upper()}] {self.message}"
