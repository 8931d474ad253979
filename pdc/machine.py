from __future__ import annotations

import time
from threading import Event, Lock
from typing import Callable

from . import db
from .analysis import CycleVerdict, evaluate
from .dispatcher import ActionDispatcher, backoff_delays
from .metrics import MetricSource, MetricSourceError
from .models import (
    ALREADY_TERMINAL,
    PROMOTION_IN_PROGRESS,
    Phase,
    RolloutRejected,
    RolloutSpec,
    RolloutState,
    spec_errors,
    utc_now,
)


class RolloutStateMachine:
    """Drives one rollout from Initializing to a terminal phase.

    Phases::

        Initializing -> Progressing -> Paused -> Analyzing -> Progressing ...
                                                          -> Promoting -> Succeeded
                                                          -> Aborting  -> RolledBack
        any non-terminal phase -> Failed (invalid spec, router or metric source gone)

    ``run()`` blocks until the rollout is terminal. Timers are measured with
    ``time_source`` from the moment a phase is entered. The default sleep
    waits on the cancel event, so a cancel wakes a waiting rollout at once;
    it is still only acted on at decision points, never mid router call.
    """

    def __init__(
        self,
        rollout_id: str,
        spec: RolloutSpec,
        dispatcher: ActionDispatcher,
        metrics: MetricSource,
        metric_retries: int = 2,
        backoff_base_s: float = 1.0,
        backoff_cap_s: float = 4.0,
        metric_outage_cycles: int = 3,
        time_source: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], object] | None = None,
    ):
        self.spec = spec
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.metric_retries = max(0, int(metric_retries))
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.metric_outage_cycles = max(1, int(metric_outage_cycles))
        self.state = RolloutState(id=rollout_id, service=spec.service)

        self._lock = Lock()
        self._cancel = Event()
        self._time = time_source
        self._sleep = sleep_fn or self._cancel.wait
        self._entered_at = self._time()
        self._outage_cycles = 0
        self._abort_reason = ""
        self._handlers: dict[Phase, Callable[[], None]] = {
            Phase.INITIALIZING: self._initialize,
            Phase.PROGRESSING: self._progress,
            Phase.PAUSED: self._pause,
            Phase.ANALYZING: self._analyze,
            Phase.PROMOTING: self._promote,
            Phase.ABORTING: self._abort,
        }

    @property
    def rollout_id(self) -> str:
        return self.state.id

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self.state.phase

    def snapshot(self) -> RolloutState:
        with self._lock:
            return self.state.snapshot()

    def request_cancel(self) -> bool:
        """Ask the rollout to revert to baseline at its next decision point."""
        with self._lock:
            phase = self.state.phase
            if phase.is_terminal:
                raise RolloutRejected(ALREADY_TERMINAL, f"rollout already {phase.value}")
            if phase is Phase.PROMOTING:
                raise RolloutRejected(PROMOTION_IN_PROGRESS, "rollout is past the point of safe reversal")
            if self.state.cancel_requested or phase is Phase.ABORTING:
                return True
            self.state.cancel_requested = True
            self._cancel.set()
        db.log_event("WARN", f"Cancellation requested during {phase.value}", self.spec.service, self.rollout_id)
        return True

    def run(self) -> RolloutState:
        while True:
            with self._lock:
                phase = self.state.phase
            if phase.is_terminal:
                break
            try:
                self._handlers[phase]()
            except Exception as e:
                self._transition(Phase.FAILED, f"Unexpected error in {phase.value}: {type(e).__name__}: {e}", "ERROR")
        self.dispatcher.notify_terminal(self.snapshot())
        return self.snapshot()

    # -- helpers ---------------------------------------------------------

    def _cancelled(self) -> bool:
        return self._cancel.is_set()

    def _step(self):
        return self.spec.steps[self.state.current_step_index]

    def _sleep_until(self, deadline: float) -> None:
        remaining = deadline - self._time()
        if remaining > 0 and not self._cancelled():
            self._sleep(remaining)

    def _transition(self, phase: Phase, message: str, level: str = "INFO") -> None:
        with self._lock:
            prev = self.state.phase
            if prev.is_terminal:
                return
            if phase is Phase.PROMOTING and self.state.cancel_requested:
                phase, message, level = Phase.ABORTING, "Cancelled before promotion", "WARN"
            if phase is Phase.ABORTING:
                self._abort_reason = message
            self.state.phase = phase
            self.state.message = message
            self.state.last_transition_at = utc_now()
            self.state.history.append(phase)
            if phase.is_terminal:
                self.state.finished_at = self.state.last_transition_at
            self._entered_at = self._time()
        db.log_event(level, f"{prev.value} -> {phase.value}: {message}", self.spec.service, self.rollout_id)

    # -- phases ----------------------------------------------------------

    def _initialize(self) -> None:
        errors = spec_errors(self.spec)
        if errors:
            self._transition(Phase.FAILED, "Invalid rollout spec: " + "; ".join(errors), "ERROR")
            return
        with self._lock:
            self.state.current_step_index = 0
            self.state.per_metric_consecutive_failures = {name: 0 for name in self.spec.metric_names}
        if self._cancelled():
            self._transition(Phase.ABORTING, "Cancelled before the first step", "WARN")
            return
        self._transition(Phase.PROGRESSING, f"Starting rollout with {len(self.spec.steps)} steps")

    def _progress(self) -> None:
        step = self._step()
        result = self.dispatcher.set_weight(self.rollout_id, self.spec.service, step.weight)
        if not result.ok:
            self._transition(Phase.FAILED, f"Could not set weight {step.weight}%: {result.error}", "ERROR")
            return
        with self._lock:
            self.state.current_weight = step.weight
        if self._cancelled():
            self._transition(Phase.ABORTING, f"Cancelled at step {self.state.current_step_index + 1}", "WARN")
            return
        self._transition(
            Phase.PAUSED,
            f"Step {self.state.current_step_index + 1}/{len(self.spec.steps)}: "
            f"holding {step.weight}% for {step.pause_s:g}s",
        )

    def _pause(self) -> None:
        self._sleep_until(self._entered_at + self._step().pause_s)
        if self._cancelled():
            self._transition(Phase.ABORTING, f"Cancelled while paused at {self.state.current_weight}%", "WARN")
            return
        self._transition(Phase.ANALYZING, f"Analyzing {self.state.current_weight}% canary")

    def _analyze(self) -> None:
        # The window is as long as the step's dwell time; at least one cycle always runs.
        interval = self.spec.evaluation_interval_s
        deadline = self._entered_at + self._step().pause_s
        next_at = self._entered_at
        holding = False
        while True:
            if self._cancelled():
                self._transition(Phase.ABORTING, f"Cancelled during analysis at {self.state.current_weight}%", "WARN")
                return
            cycle = self._evaluate_cycle()
            if cycle is None:
                return
            breach = self._breach()
            if breach:
                self._transition(Phase.ABORTING, breach, "WARN")
                return
            next_at += interval
            if next_at >= deadline:
                if cycle.passed:
                    self._advance()
                    return
                if not holding:
                    holding = True
                    db.log_event(
                        "WARN",
                        f"Analysis window closed with failing metrics ({', '.join(cycle.failing)}); holding",
                        self.spec.service,
                        self.rollout_id,
                    )
            self._sleep_until(next_at)

    def _advance(self) -> None:
        if self._cancelled():
            self._transition(Phase.ABORTING, "Cancelled after analysis", "WARN")
            return
        if self.state.current_step_index >= len(self.spec.steps) - 1:
            self._transition(Phase.PROMOTING, "All steps passed analysis")
            return
        with self._lock:
            self.state.current_step_index += 1
        self._transition(Phase.PROGRESSING, f"Advancing to step {self.state.current_step_index + 1}")

    def _promote(self) -> None:
        if self.state.current_weight != 100:
            result = self.dispatcher.set_weight(self.rollout_id, self.spec.service, 100)
            if not result.ok:
                self._transition(Phase.FAILED, f"Could not set weight 100%: {result.error}", "ERROR")
                return
            with self._lock:
                self.state.current_weight = 100
        self._transition(Phase.SUCCEEDED, f"Canary promoted to 100% after {len(self.spec.steps)} steps")

    def _abort(self) -> None:
        try:
            result = self.dispatcher.set_weight(self.rollout_id, self.spec.service, 0)
            error = result.error
        except Exception as e:
            result, error = None, f"{type(e).__name__}: {e}"
        acked = result is not None and result.ok
        with self._lock:
            self.state.current_weight = 0
            if not acked:
                self.state.degraded = True
        if acked:
            self._transition(Phase.ROLLED_BACK, f"Reverted to baseline: {self._abort_reason}", "WARN")
        else:
            # Rollback must not get stuck; finish degraded instead of retrying forever.
            self._transition(
                Phase.ROLLED_BACK,
                f"Rollback not acknowledged ({error}): {self._abort_reason}",
                "ERROR",
            )

    # -- analysis --------------------------------------------------------

    def _read_metrics(self) -> dict[str, float] | None:
        """Read canary metrics, retrying transient errors.

        Returns None when the source stayed unreachable; permanent errors raise.
        """
        delays = backoff_delays(self.metric_retries, self.backoff_base_s, self.backoff_cap_s)
        attempt = 0
        while True:
            try:
                return self.metrics.read_metrics(self.spec.service, self.spec.metric_names, scope="canary")
            except MetricSourceError as e:
                if not e.transient:
                    raise
                if attempt >= len(delays):
                    db.log_event(
                        "WARN",
                        f"Metric source unreachable after {attempt + 1} attempts: {e}",
                        self.spec.service,
                        self.rollout_id,
                    )
                    return None
                self._sleep(delays[attempt])
                attempt += 1

    def _evaluate_cycle(self) -> CycleVerdict | None:
        try:
            readings = self._read_metrics()
        except MetricSourceError as e:
            self._transition(Phase.FAILED, f"Metric source rejected the request: {e}", "ERROR")
            return None

        if readings is None:
            self._outage_cycles += 1
            if self._outage_cycles >= self.metric_outage_cycles:
                self._transition(
                    Phase.FAILED,
                    f"Metric source unreachable for {self._outage_cycles} consecutive cycles",
                    "ERROR",
                )
                return None
        else:
            self._outage_cycles = 0

        cycle = evaluate(self.spec.metric_checks, readings)
        with self._lock:
            counters = self.state.per_metric_consecutive_failures
            for v in cycle.verdicts:
                counters[v.name] = 0 if v.passed else counters.get(v.name, 0) + 1
            if not cycle.passed:
                self.state.total_failed_evaluations += 1
            self.state.last_verdicts = {v.name: v.verdict.value for v in cycle.verdicts}
        db.log_event(
            "INFO" if cycle.passed else "WARN",
            f"Step {self.state.current_step_index + 1} at {self.state.current_weight}%: {cycle.describe()}",
            self.spec.service,
            self.rollout_id,
        )
        return cycle

    def _breach(self) -> str | None:
        with self._lock:
            counters = dict(self.state.per_metric_consecutive_failures)
            total = self.state.total_failed_evaluations
        for check in self.spec.metric_checks:
            failures = counters.get(check.name, 0)
            if failures >= check.consecutive_failures_to_abort:
                return (
                    f"{check.name} failed {failures} consecutive cycles "
                    f"(limit {check.consecutive_failures_to_abort})"
                )
        if total > self.spec.analysis_failure_budget:
            return f"{total} failed cycles exceed the analysis failure budget of {self.spec.analysis_failure_budget}"
        return None
