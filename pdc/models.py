from __future__ import annotations

import copy
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Phase(str, Enum):
    INITIALIZING = "Initializing"
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    ANALYZING = "Analyzing"
    PROMOTING = "Promoting"
    SUCCEEDED = "Succeeded"
    ABORTING = "Aborting"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.SUCCEEDED, Phase.ROLLED_BACK, Phase.FAILED})


class Comparison(str, Enum):
    MAX = "max"  # value must stay at or below the threshold
    MIN = "min"  # value must stay at or above the threshold


_COMPARISONS = tuple(c.value for c in Comparison)


# Machine-readable rejection reasons.
ALREADY_ACTIVE = "already-active"
INVALID_SPEC = "invalid-spec"
ALREADY_TERMINAL = "already-terminal"
PROMOTION_IN_PROGRESS = "promotion-in-progress"


class RolloutRejected(Exception):
    """A start or cancel request that the controller refused."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class RolloutStep:
    weight: int
    pause_s: float = 60.0


@dataclass(frozen=True)
class MetricCheck:
    name: str
    comparison: Comparison
    threshold: float
    interval_s: float = 10.0
    consecutive_failures_to_abort: int = 1


@dataclass(frozen=True)
class RolloutSpec:
    """Immutable description of one rollout attempt."""

    service: str
    steps: tuple[RolloutStep, ...]
    metric_checks: tuple[MetricCheck, ...]
    analysis_failure_budget: int = 0

    @property
    def evaluation_interval_s(self) -> float:
        return min(c.interval_s for c in self.metric_checks)

    @property
    def metric_names(self) -> list[str]:
        return [c.name for c in self.metric_checks]


def spec_errors(spec: RolloutSpec) -> list[str]:
    """Return every problem with ``spec``; an empty list means it is valid."""
    errors: list[str] = []
    if not spec.service or not spec.service.strip():
        errors.append("service must be a non-empty string")

    if not spec.steps:
        errors.append("steps must not be empty")
    prev = 0
    for i, step in enumerate(spec.steps):
        if not 0 <= step.weight <= 100:
            errors.append(f"step {i}: weight {step.weight} is outside 0..100")
        if step.weight < prev:
            errors.append(f"step {i}: weight {step.weight} is lower than the previous step ({prev})")
        if step.pause_s < 0 or not math.isfinite(step.pause_s):
            errors.append(f"step {i}: pause_s must be a finite number >= 0")
        prev = max(prev, step.weight)
    if spec.steps and spec.steps[-1].weight != 100:
        errors.append("final step weight must be 100")

    if not spec.metric_checks:
        errors.append("at least one metric check is required")
    seen: set[str] = set()
    for check in spec.metric_checks:
        if not check.name:
            errors.append("metric check name must not be empty")
        elif check.name in seen:
            errors.append(f"duplicate metric check '{check.name}'")
        seen.add(check.name)
        if check.comparison not in _COMPARISONS:
            errors.append(f"metric '{check.name}': comparison must be 'max' or 'min', got {check.comparison!r}")
        if not check.interval_s > 0:
            errors.append(f"metric '{check.name}': interval_s must be > 0")
        if check.consecutive_failures_to_abort < 1:
            errors.append(f"metric '{check.name}': consecutive_failures_to_abort must be >= 1")

    if spec.analysis_failure_budget < 0:
        errors.append("analysis_failure_budget must be >= 0")
    return errors


@dataclass
class RolloutState:
    """Mutable record of one rollout, owned by its state machine."""

    id: str
    service: str
    phase: Phase = Phase.INITIALIZING
    current_step_index: int = 0
    current_weight: int = 0
    per_metric_consecutive_failures: dict[str, int] = field(default_factory=dict)
    total_failed_evaluations: int = 0
    started_at: str = field(default_factory=utc_now)
    last_transition_at: str = field(default_factory=utc_now)
    finished_at: str | None = None
    message: str = ""
    degraded: bool = False
    cancel_requested: bool = False
    history: list[Phase] = field(default_factory=lambda: [Phase.INITIALIZING])
    last_verdicts: dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def snapshot(self) -> RolloutState:
        return copy.deepcopy(self)

    def summary(self) -> dict[str, Any]:
        return {
            "rollout_id": self.id,
            "final_phase": self.phase.value,
            "current_step_index": self.current_step_index,
            "current_weight": self.current_weight,
            "total_failed_evaluations": self.total_failed_evaluations,
            "per_metric_consecutive_failures": dict(self.per_metric_consecutive_failures),
            "degraded": self.degraded,
            "message": self.message,
        }

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value
        d["history"] = [p.value for p in self.history]
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RolloutState:
        data = dict(data)
        data["phase"] = Phase(data["phase"])
        data["history"] = [Phase(p) for p in data.get("history") or [data["phase"]]]
        return cls(**data)
