from __future__ import annotations

import secrets
import time
from threading import Lock, Thread
from typing import Callable

from . import db
from .alerts import Notifier
from .dispatcher import ActionDispatcher
from .machine import RolloutStateMachine
from .metrics import MetricSource
from .models import ALREADY_ACTIVE, ALREADY_TERMINAL, INVALID_SPEC, RolloutRejected, RolloutSpec, RolloutState, spec_errors
from .router import TrafficRouter
from .settings import settings


class RolloutController:
    """Registry of rollouts: at most one non-terminal rollout per service.

    Each rollout runs its state machine on its own daemon thread, so
    rollouts of different services progress independently.
    """

    def __init__(
        self,
        router: TrafficRouter,
        metrics: MetricSource,
        notifier: Notifier | None = None,
        dispatcher: ActionDispatcher | None = None,
        time_source: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], object] | None = None,
    ):
        self.metrics = metrics
        self.dispatcher = dispatcher or ActionDispatcher(
            router,
            notifier,
            retries=settings.router_retries,
            backoff_base_s=settings.backoff_base_s,
            backoff_cap_s=settings.backoff_cap_s,
        )
        self._time = time_source
        self._sleep = sleep_fn
        self._lock = Lock()
        self._machines: dict[str, RolloutStateMachine] = {}  # rollout_id -> live machine
        self._active: dict[str, str] = {}  # service -> rollout_id
        self._threads: dict[str, Thread] = {}
        db.init_db()

    def start_rollout(self, spec: RolloutSpec) -> str:
        errors = spec_errors(spec)
        if errors:
            db.log_event("WARN", "Rejected rollout: " + "; ".join(errors), service_name=spec.service or None)
            raise RolloutRejected(INVALID_SPEC, "; ".join(errors))

        with self._lock:
            current = self._active.get(spec.service)
            if current is not None:
                db.log_event("WARN", f"Rejected rollout: {current} is still active", service_name=spec.service)
                raise RolloutRejected(ALREADY_ACTIVE, f"rollout {current} is still active for '{spec.service}'")

            rollout_id = secrets.token_hex(6)
            machine = RolloutStateMachine(
                rollout_id,
                spec,
                self.dispatcher,
                self.metrics,
                metric_retries=settings.metric_retries,
                backoff_base_s=settings.backoff_base_s,
                backoff_cap_s=settings.backoff_cap_s,
                metric_outage_cycles=settings.metric_outage_cycles,
                time_source=self._time,
                sleep_fn=self._sleep,
            )
            self._machines[rollout_id] = machine
            self._active[spec.service] = rollout_id
            thr = Thread(target=self._run, args=(machine,), name=f"rollout-{spec.service}", daemon=True)
            self._threads[rollout_id] = thr

        weights = " -> ".join(f"{s.weight}%" for s in spec.steps)
        db.log_event("INFO", f"Rollout {rollout_id} created: {weights}", service_name=spec.service, rollout_id=rollout_id)
        thr.start()
        return rollout_id

    def _run(self, machine: RolloutStateMachine) -> None:
        try:
            machine.run()
        except Exception as e:
            db.log_event(
                "ERROR",
                f"Rollout worker crashed: {type(e).__name__}: {e}",
                service_name=machine.spec.service,
                rollout_id=machine.rollout_id,
            )
        finally:
            final = machine.snapshot()
            try:
                if final.is_terminal:
                    db.archive_rollout(final)
            finally:
                # Finished rollouts live only in the sqlite archive from here on.
                with self._lock:
                    self._machines.pop(final.id, None)
                    self._threads.pop(final.id, None)
                    if self._active.get(final.service) == final.id:
                        del self._active[final.service]

    def get_status(self, rollout_id: str) -> RolloutState:
        with self._lock:
            machine = self._machines.get(rollout_id)
        if machine is not None:
            return machine.snapshot()
        stored = db.get_archived_rollout(rollout_id)
        if stored is None:
            raise KeyError("unknown rollout")
        return stored

    def cancel_rollout(self, rollout_id: str) -> bool:
        with self._lock:
            machine = self._machines.get(rollout_id)
        if machine is None:
            # Raises KeyError for unknown ids, RolloutRejected for finished ones.
            final = self.get_status(rollout_id)
            raise RolloutRejected(ALREADY_TERMINAL, f"rollout already {final.phase.value}")
        return machine.request_cancel()

    def active_rollout(self, service: str) -> RolloutState | None:
        with self._lock:
            rollout_id = self._active.get(service)
            machine = self._machines.get(rollout_id) if rollout_id else None
        return machine.snapshot() if machine else None

    def list_rollouts(self, service: str | None = None, limit: int = 50) -> list[RolloutState]:
        """Live rollouts first, then the most recently finished ones from the archive."""
        with self._lock:
            machines = list(self._machines.values())
        live = [m.snapshot() for m in machines if service is None or m.spec.service == service]
        seen = {s.id for s in live}
        finished = [s for s in db.list_archived_rollouts(service_name=service, limit=limit) if s.id not in seen]
        return live + finished

    def wait(self, rollout_id: str, timeout: float | None = None) -> RolloutState:
        """Block until the rollout's worker exits (or ``timeout`` passes)."""
        with self._lock:
            thr = self._threads.get(rollout_id)
        if thr is not None:
            thr.join(timeout)
        return self.get_status(rollout_id)
