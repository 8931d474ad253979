from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from . import db
from .alerts import Notifier
from .models import RolloutState
from .router import RouterError, TrafficRouter


def backoff_delays(retries: int, base_s: float, cap_s: float) -> list[float]:
    """Delays to sleep before each retry: base, 2*base, 4*base ... capped."""
    return [min(cap_s, base_s * (2**n)) for n in range(max(0, retries))]


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    weight: int
    sequence: int
    attempts: int
    error: str | None = None
    permanent: bool = False


class ActionDispatcher:
    """Turns state-machine decisions into router calls and notifications.

    All weight changes for one service go through a per-service lock and
    carry a per-service sequence number, so at most one mutation per
    service is in flight and writes reach the router in the order issued.
    """

    def __init__(
        self,
        router: TrafficRouter,
        notifier: Notifier | None = None,
        retries: int = 3,
        backoff_base_s: float = 1.0,
        backoff_cap_s: float = 4.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.router = router
        self.notifier = notifier
        self.retries = max(0, int(retries))
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self._sleep = sleep_fn
        self._lock = Lock()
        self._service_locks: dict[str, Lock] = defaultdict(Lock)
        self._sequence: dict[str, int] = defaultdict(int)

    def _service_lock(self, service: str) -> Lock:
        with self._lock:
            return self._service_locks[service]

    def set_weight(self, rollout_id: str, service: str, weight: int) -> DispatchResult:
        weight = int(weight)
        with self._service_lock(service):
            with self._lock:
                self._sequence[service] += 1
                seq = self._sequence[service]

            delays = backoff_delays(self.retries, self.backoff_base_s, self.backoff_cap_s)
            attempts = 0
            while True:
                attempts += 1
                try:
                    self.router.set_weight(service, weight, sequence=seq)
                except RouterError as e:
                    err = f"{type(e).__name__}: {e}"
                    if not e.transient:
                        db.log_event(
                            "ERROR",
                            f"Router rejected weight {weight}% (seq {seq}): {err}",
                            service_name=service,
                            rollout_id=rollout_id,
                        )
                        return DispatchResult(False, weight, seq, attempts, err, permanent=True)
                    if attempts > len(delays):
                        db.log_event(
                            "ERROR",
                            f"Router unreachable after {attempts} attempts for weight {weight}%: {err}",
                            service_name=service,
                            rollout_id=rollout_id,
                        )
                        return DispatchResult(False, weight, seq, attempts, err)
                    delay = delays[attempts - 1]
                    db.log_event(
                        "WARN",
                        f"Router call for weight {weight}% failed ({err}); retry in {delay:g}s",
                        service_name=service,
                        rollout_id=rollout_id,
                    )
                    self._sleep(delay)
                    continue

                db.log_event(
                    "INFO",
                    f"Router acknowledged weight {weight}% (seq {seq})",
                    service_name=service,
                    rollout_id=rollout_id,
                )
                return DispatchResult(True, weight, seq, attempts)

    def notify_terminal(self, state: RolloutState) -> bool:
        """Fire-and-forget terminal notification; failures are only logged."""
        if self.notifier is None:
            return False
        try:
            self.notifier.notify(state.service, state.phase.value, state.summary())
            return True
        except Exception as e:
            db.log_event(
                "ERROR",
                f"Notification failed: {type(e).__name__}: {e}",
                service_name=state.service,
                rollout_id=state.id,
            )
            return False
