import os as _os
import sys
import threading
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import examples...` works reliably across environments)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from pdc import db  # noqa: E402
from pdc.dispatcher import ActionDispatcher  # noqa: E402
from pdc.machine import RolloutStateMachine  # noqa: E402
from pdc.models import Comparison, MetricCheck, RolloutSpec, RolloutStep  # noqa: E402


@pytest.fixture(autouse=True)
def event_store(tmp_path, monkeypatch):
    """Point the sqlite event store at a per-test file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "pdc.db")))
    db.init_db()
    return db


class FakeRouter:
    """Records every weight the controller asks for.

    ``fail_on[weight]`` raises that exception every time the weight is set;
    ``queue`` holds exceptions raised (once each) before anything else.
    ``gate``, when set, blocks every call until the event is set.
    """

    def __init__(self):
        self.attempts = []  # (service, weight, sequence), including failed calls
        self.acked = []  # (service, weight) acknowledged
        self.fail_on = {}
        self.queue = []
        self.gate = None
        self.entered = threading.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def set_weight(self, service, percentage, sequence=0):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.attempts.append((service, percentage, sequence))
        try:
            self.entered.set()
            if self.gate is not None:
                self.gate.wait(5)
            if self.queue:
                raise self.queue.pop(0)
            if percentage in self.fail_on:
                raise self.fail_on[percentage]
            with self._lock:
                self.acked.append((service, percentage))
        finally:
            with self._lock:
                self.in_flight -= 1

    def weights(self, service=None):
        return [w for s, w in self.acked if service is None or s == service]

    def current(self, service):
        ws = self.weights(service)
        return ws[-1] if ws else 0


class FakeMetrics:
    """Metric source driven by a script, per-weight values or fixed values."""

    def __init__(self, router=None, clock=None):
        self.router = router
        self.clock = clock
        self.values = {}
        self.by_weight = {}
        self.script = []
        self.errors = []
        self.always_error = None
        self.read_times = []
        self.reads = 0

    def read_metrics(self, service, names, scope="canary"):
        self.reads += 1
        if self.clock is not None:
            self.read_times.append(self.clock.now())
        if self.always_error is not None:
            raise self.always_error
        if self.errors:
            raise self.errors.pop(0)
        if self.script:
            vals = self.script.pop(0)
        else:
            weight = self.router.current(service) if self.router else None
            vals = self.by_weight.get(weight, self.values)
        return {n: vals[n] for n in names if n in vals}


class FakeClock:
    def __init__(self):
        self._now = 0.0
        self.sleeps = []
        self.on_sleep = None

    def now(self):
        return self._now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self._now += seconds
        if self.on_sleep is not None:
            self.on_sleep(seconds)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def notify(self, service, final_phase, summary):
        self.calls.append((service, final_phase, summary))
        if self.fail:
            raise RuntimeError("notifier down")


def build_spec(
    steps=((10, 30), (50, 30), (100, 30)),
    checks=(("error_rate", "max", 0.01, 10, 3),),
    budget=5,
    service="checkout",
):
    return RolloutSpec(
        service=service,
        steps=tuple(RolloutStep(weight=w, pause_s=p) for w, p in steps),
        metric_checks=tuple(
            MetricCheck(
                name=name,
                comparison=Comparison(cmp),
                threshold=threshold,
                interval_s=interval,
                consecutive_failures_to_abort=n,
            )
            for name, cmp, threshold, interval, n in checks
        ),
        analysis_failure_budget=budget,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def metrics(router, clock):
    m = FakeMetrics(router=router, clock=clock)
    m.values = {"error_rate": 0.001, "latency_p95_ms": 100.0}
    return m


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(router, notifier, clock):
    return ActionDispatcher(router, notifier, retries=3, backoff_base_s=1.0, backoff_cap_s=4.0, sleep_fn=clock.sleep)


@pytest.fixture
def make_machine(dispatcher, metrics, clock):
    def _make(spec, **kwargs):
        kwargs.setdefault("metric_retries", 2)
        kwargs.setdefault("metric_outage_cycles", 3)
        return RolloutStateMachine(
            "r-test",
            spec,
            dispatcher,
            metrics,
            time_source=clock.now,
            sleep_fn=clock.sleep,
            **kwargs,
        )

    return _make
