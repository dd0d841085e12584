"""
Preview model for the service's autoscaling triggers.

Application Auto Scaling does the real work after deployment. This module
replays metric observations against the same triggers the service stack
declares, so the bounds, cooldowns and step intervals can be checked before
anything is deployed.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Sequence, Tuple


@dataclass(frozen=True)
class TargetTrackingTrigger:
    """Keep ``metric_name`` near ``target`` (e.g. CPU at 70%)."""

    metric_name: str
    target: float
    scale_in_cooldown: int
    scale_out_cooldown: int
    evaluation_periods: int = 2

    def propose(self, current: int, window: Sequence[float]) -> Optional[int]:
        if len(window) < self.evaluation_periods:
            return None
        recent = window[-self.evaluation_periods:]
        if all(value > self.target for value in recent) or all(value < self.target for value in recent):
            return math.ceil(current * recent[-1] / self.target)
        return None

    def cooldown_for(self, current: int, proposed: int) -> int:
        return self.scale_out_cooldown if proposed > current else self.scale_in_cooldown


@dataclass(frozen=True)
class ScalingStep:
    """Change applied while the metric sits in [lower, upper)."""

    change: int
    lower: Optional[float] = None
    upper: Optional[float] = None

    def contains(self, value: float) -> bool:
        if self.lower is not None and value < self.lower:
            return False
        if self.upper is not None and value >= self.upper:
            return False
        return True


@dataclass(frozen=True)
class StepTrigger:
    metric_name: str
    steps: Tuple[ScalingStep, ...]
    cooldown: int = 0

    def propose(self, current: int, window: Sequence[float]) -> Optional[int]:
        if not window:
            return None
        for step in self.steps:
            if step.contains(window[-1]):
                return current + step.change if step.change else None
        return None

    def cooldown_for(self, current: int, proposed: int) -> int:
        return self.cooldown


@dataclass(frozen=True)
class Observation:
    """Metric values seen at one evaluation period (``timestamp`` in seconds)."""

    timestamp: int
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class CapacityModel:
    """
    Bounded replica count driven by independent triggers.

    Triggers that fire each propose a capacity; the largest proposal wins,
    so a scale-in only happens when no other trigger wants more capacity.
    The result is always clamped to [min_capacity, max_capacity].
    """

    min_capacity: int
    max_capacity: int
    triggers: Tuple = ()

    def clamp(self, capacity: int) -> int:
        return max(self.min_capacity, min(self.max_capacity, capacity))

    def evaluate(
        self,
        current: int,
        observations: Iterable[Observation],
        last_action_at: Optional[int] = None,
    ) -> int:
        """
        Replay observations in order and return the final replica count.

        Args:
            current: Replica count before the first observation
            observations: Metric samples, one per evaluation period
            last_action_at: Timestamp of the last scaling action, if any

        Returns:
            int: Replica count after the last observation
        """
        capacity = self.clamp(current)
        windows = {trigger.metric_name: [] for trigger in self.triggers}

        for observation in sorted(observations, key=lambda o: o.timestamp):
            for name, window in windows.items():
                if name in observation.metrics:
                    window.append(observation.metrics[name])

            proposals = []
            for trigger in self.triggers:
                # A trigger only evaluates on periods that report its metric
                if trigger.metric_name not in observation.metrics:
                    continue
                proposed = trigger.propose(capacity, windows[trigger.metric_name])
                if proposed is None or proposed == capacity:
                    continue
                if last_action_at is not None:
                    if observation.timestamp - last_action_at < trigger.cooldown_for(capacity, proposed):
                        continue
                proposals.append(proposed)

            if not proposals:
                continue
            desired = self.clamp(max(proposals))
            if desired != capacity:
                capacity = desired
                last_action_at = observation.timestamp

        return capacity
