from __future__ import annotations

from pydantic import BaseModel, Field

from .models import Comparison, MetricCheck, RolloutSpec, RolloutStep


class StepModel(BaseModel):
    weight: int = Field(..., ge=0, le=100, description="Canary traffic percentage for this step")
    pause_s: float = Field(60.0, ge=0, le=86400, description="Dwell time before the step is judged")


class MetricCheckModel(BaseModel):
    name: str = Field(..., min_length=1, description="Metric name, e.g. error_rate")
    comparison: Comparison = Field(Comparison.MAX, description="max: stay at or below, min: stay at or above")
    threshold: float
    interval_s: float = Field(10.0, gt=0, le=3600)
    consecutive_failures_to_abort: int = Field(1, ge=1, le=100)


class StartRolloutRequest(BaseModel):
    service: str = Field(..., min_length=1, description="Target workload identifier")
    steps: list[StepModel]
    metric_checks: list[MetricCheckModel]
    analysis_failure_budget: int = Field(0, ge=0)

    def to_spec(self) -> RolloutSpec:
        return RolloutSpec(
            service=self.service,
            steps=tuple(RolloutStep(weight=s.weight, pause_s=s.pause_s) for s in self.steps),
            metric_checks=tuple(
                MetricCheck(
                    name=c.name,
                    comparison=c.comparison,
                    threshold=c.threshold,
                    interval_s=c.interval_s,
                    consecutive_failures_to_abort=c.consecutive_failures_to_abort,
                )
                for c in self.metric_checks
            ),
            analysis_failure_budget=self.analysis_failure_budget,
        )
