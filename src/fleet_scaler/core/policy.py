"""Scaling policy: metrics snapshot and cooldown state to a decision."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import PolicyConfig
from .exceptions import CapacityError, CooldownError
from .types import CooldownState, MetricsSnapshot, ScalingAction, ScalingDecision


class ScalingPolicyEngine:
    """Threshold policy with hysteresis and per-direction cooldowns.

    Scale-up fires when any signal is above its threshold. Scale-down needs
    CPU below the lower CPU threshold and latency and per-instance rate below
    half of their thresholds (all of them by default, any of them with
    ``scale_down_mode='any'``). Scale-up wins when both qualify.
    """

    def __init__(self, policy: Optional[PolicyConfig] = None):
        """Initialize policy engine.

        Args:
            policy: Thresholds, cooldowns and bounds
        """
        self.policy = policy or PolicyConfig()

    def decide(
        self,
        snapshot: MetricsSnapshot,
        cooldown: CooldownState,
        now: Optional[datetime] = None
    ) -> ScalingDecision:
        """Evaluate one snapshot.

        Args:
            snapshot: Current metrics
            cooldown: Last successful scale action times
            now: Evaluation time (defaults to now)

        Returns:
            Scaling decision with its triggering reasons
        """
        now = now or datetime.now()
        policy = self.policy
        count = snapshot.instance_count

        # Bounds restoration ignores load signals but not cooldowns
        if count < policy.min_instances:
            return self._gated(
                ScalingAction.SCALE_UP,
                [f"Capacity: {count} instances below minimum {policy.min_instances}"],
                snapshot, cooldown, now, check_capacity=False
            )
        if count > policy.max_instances:
            return self._gated(
                ScalingAction.SCALE_DOWN,
                [f"Capacity: {count} instances above maximum {policy.max_instances}"],
                snapshot, cooldown, now, check_capacity=False
            )

        if snapshot.avg_cpu_percent is None:
            return self._decision(
                ScalingAction.NO_ACTION, ["No CPU readings available"], snapshot, now
            )

        up_reasons = self.scale_up_reasons(snapshot)
        if up_reasons:
            return self._gated(ScalingAction.SCALE_UP, up_reasons, snapshot, cooldown, now)

        down_reasons = self.scale_down_reasons(snapshot)
        if down_reasons:
            return self._gated(ScalingAction.SCALE_DOWN, down_reasons, snapshot, cooldown, now)

        return self._decision(ScalingAction.NO_ACTION, [], snapshot, now)

    def scale_up_reasons(self, snapshot: MetricsSnapshot) -> List[str]:
        """Reasons the snapshot calls for more capacity (empty if none)."""
        policy = self.policy
        reasons = []

        cpu = snapshot.avg_cpu_percent
        if cpu is not None and cpu > policy.cpu_up_threshold:
            reasons.append(f"CPU: {cpu:.1f}% > {policy.cpu_up_threshold:.1f}%")

        latency = snapshot.avg_latency_seconds
        if latency is not None and latency > policy.latency_threshold:
            reasons.append(f"Latency: {latency:.3f}s > {policy.latency_threshold:.3f}s")

        rate = snapshot.request_rate_per_instance
        if rate > policy.rate_threshold:
            reasons.append(
                f"Request rate: {rate:.1f}/min per instance > {policy.rate_threshold:.1f}"
            )

        return reasons

    def scale_down_reasons(self, snapshot: MetricsSnapshot) -> List[str]:
        """Reasons the snapshot allows less capacity (empty if it does not)."""
        policy = self.policy
        latency_floor = policy.latency_threshold * 0.5
        rate_floor = policy.rate_threshold * 0.5

        cpu = snapshot.avg_cpu_percent
        latency = snapshot.avg_latency_seconds
        rate = snapshot.request_rate_per_instance

        checks = [
            (
                cpu is not None and cpu < policy.cpu_down_threshold,
                f"CPU: {cpu if cpu is not None else 0:.1f}% < {policy.cpu_down_threshold:.1f}%"
            ),
            # No access records means no latency pressure
            (
                latency is None or latency < latency_floor,
                f"Latency: {latency:.3f}s < {latency_floor:.3f}s" if latency is not None
                else "Latency: no recent requests"
            ),
            (
                rate < rate_floor,
                f"Request rate: {rate:.1f}/min per instance < {rate_floor:.1f}"
            ),
        ]

        if policy.scale_down_mode == "any":
            return [reason for passed, reason in checks if passed]

        if all(passed for passed, _ in checks):
            return [reason for _, reason in checks]
        return []

    def check_allowed(
        self,
        action: ScalingAction,
        instance_count: int,
        cooldown: CooldownState,
        now: Optional[datetime] = None,
        check_capacity: bool = True
    ) -> None:
        """Check bounds and cooldown for ``action``.

        Args:
            action: Proposed action
            instance_count: Instances currently in service
            cooldown: Last successful scale action times
            now: Evaluation time (defaults to now)
            check_capacity: Whether to enforce the instance bounds

        Raises:
            CapacityError: If the action would leave the instance bounds
            CooldownError: If the action's cooldown has not elapsed
        """
        policy = self.policy

        if action == ScalingAction.SCALE_UP:
            if check_capacity and instance_count >= policy.max_instances:
                raise CapacityError(
                    f"Cannot scale up: already at maximum instances ({policy.max_instances})"
                )
            remaining = cooldown.remaining(action, policy.scale_up_cooldown, now)
            if remaining > 0:
                raise CooldownError("Scale up", remaining)

        elif action == ScalingAction.SCALE_DOWN:
            if check_capacity and instance_count <= policy.min_instances:
                raise CapacityError(
                    f"Cannot scale down: already at minimum instances ({policy.min_instances})"
                )
            remaining = cooldown.remaining(action, policy.scale_down_cooldown, now)
            if remaining > 0:
                raise CooldownError("Scale down", remaining)

    def describe(self) -> Dict[str, Any]:
        """Active thresholds for reporting."""
        policy = self.policy
        return {
            'cpu_up_threshold': policy.cpu_up_threshold,
            'cpu_down_threshold': policy.cpu_down_threshold,
            'latency_threshold': policy.latency_threshold,
            'rate_threshold': policy.rate_threshold,
            'scale_up_cooldown': policy.scale_up_cooldown,
            'scale_down_cooldown': policy.scale_down_cooldown,
            'min_instances': policy.min_instances,
            'max_instances': policy.max_instances,
            'scale_down_mode': policy.scale_down_mode,
        }

    def _gated(
        self,
        action: ScalingAction,
        reasons: List[str],
        snapshot: MetricsSnapshot,
        cooldown: CooldownState,
        now: datetime,
        check_capacity: bool = True
    ) -> ScalingDecision:
        try:
            self.check_allowed(action, snapshot.instance_count, cooldown, now, check_capacity)
        except CapacityError as e:
            return self._decision(
                ScalingAction.NO_ACTION, reasons, snapshot, now, "capacity", str(e)
            )
        except CooldownError as e:
            return self._decision(
                ScalingAction.NO_ACTION, reasons, snapshot, now, "cooldown", str(e)
            )
        return self._decision(action, reasons, snapshot, now)

    @staticmethod
    def _decision(
        action: ScalingAction,
        reasons: List[str],
        snapshot: MetricsSnapshot,
        now: datetime,
        blocked_by: Optional[str] = None,
        refusal: Optional[str] = None
    ) -> ScalingDecision:
        return ScalingDecision(
            action=action,
            reasons=reasons,
            snapshot=snapshot,
            blocked_by=blocked_by,
            refusal=refusal,
            timestamp=now
        )
