from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from .models import Comparison, MetricCheck


class Verdict(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"
    # Missing or unreadable telemetry cannot prove the canary is safe,
    # so callers count it as a failure.
    UNAVAILABLE = "Unavailable"


@dataclass(frozen=True)
class MetricVerdict:
    name: str
    verdict: Verdict
    value: float | None
    threshold: float

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS


@dataclass(frozen=True)
class CycleVerdict:
    """Outcome of one evaluation cycle across all metric checks."""

    verdicts: tuple[MetricVerdict, ...]

    @property
    def passed(self) -> bool:
        return all(v.passed for v in self.verdicts)

    @property
    def failing(self) -> list[str]:
        return [v.name for v in self.verdicts if not v.passed]

    def describe(self) -> str:
        parts = []
        for v in self.verdicts:
            shown = "n/a" if v.value is None else f"{v.value:g}"
            parts.append(f"{v.name}={shown} ({v.verdict.value})")
        return ", ".join(parts)


def _as_number(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def evaluate_check(check: MetricCheck, raw: Any) -> MetricVerdict:
    value = _as_number(raw)
    if value is None:
        return MetricVerdict(check.name, Verdict.UNAVAILABLE, None, check.threshold)
    if Comparison(check.comparison) is Comparison.MAX:
        ok = value <= check.threshold
    else:
        ok = value >= check.threshold
    return MetricVerdict(check.name, Verdict.PASS if ok else Verdict.FAIL, value, check.threshold)


def evaluate(checks: Iterable[MetricCheck], readings: Mapping[str, Any] | None) -> CycleVerdict:
    """Judge one batch of canary readings.

    ``readings`` maps metric name to value; a metric absent from the mapping
    (or ``readings`` being None because the source was unreachable) yields
    ``Unavailable``. The cycle passes only if every metric passes.
    """
    readings = readings or {}
    return CycleVerdict(tuple(evaluate_check(c, readings.get(c.name)) for c in checks))
