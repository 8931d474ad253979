import httpx
import pytest
from fastapi.testclient import TestClient

from examples.mesh_stub.app import APP_STATE, app as mesh_app
from pdc.gateway import BASELINE, CANARY, select_slice
from pdc.metrics import HttpMetricSource, MetricSourceError
from pdc.router import HttpTrafficRouter, InProcessTrafficRouter, PermanentRouterError, TransientRouterError
from pdc.runtime import RuntimeState


@pytest.fixture
def mesh():
    client = TestClient(mesh_app)
    client.post("/simulate/reset")
    yield client
    client.post("/simulate/reset")


def test_http_router_sets_weight_on_the_mesh(mesh):
    router = HttpTrafficRouter("http://testserver", client=mesh)

    router.set_weight("checkout", 25, sequence=1)

    assert APP_STATE["weights"]["checkout"] == 25
    assert mesh.get("/services/checkout/weight").json()["weight"] == 25


def test_http_router_classifies_outage_as_transient(mesh):
    router = HttpTrafficRouter("http://testserver", client=mesh)
    mesh.post("/simulate/router-outage")

    with pytest.raises(TransientRouterError):
        router.set_weight("checkout", 25)


def test_http_router_classifies_bad_request_as_permanent(mesh):
    router = HttpTrafficRouter("http://testserver", client=mesh)

    with pytest.raises(PermanentRouterError):
        router.set_weight("checkout", 150)


def test_http_router_timeout_is_transient():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    router = HttpTrafficRouter("http://router.local", client=client)

    with pytest.raises(TransientRouterError):
        router.set_weight("checkout", 10)


@pytest.mark.parametrize(
    "error",
    [httpx.RemoteProtocolError, httpx.ProxyError, httpx.UnsupportedProtocol, httpx.ReadError],
)
def test_http_router_transport_errors_are_transient(error):
    def handler(request):
        raise error("server went away", request=request)

    router = HttpTrafficRouter("http://router.local", client=httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(TransientRouterError) as exc:
        router.set_weight("checkout", 10)
    assert error.__name__ in str(exc.value)


def test_http_metric_source_dropped_connection_is_transient():
    def handler(request):
        raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)

    source = HttpMetricSource("http://metrics.local", client=httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(MetricSourceError) as exc:
        source.read_metrics("checkout", ["error_rate"])
    assert exc.value.transient is True


def test_http_metric_source_reads_canary_values(mesh):
    source = HttpMetricSource("http://testserver", client=mesh)
    mesh.post("/simulate/errors/2")

    values = source.read_metrics("checkout", ["error_rate", "latency_p95_ms", "unknown"])

    assert values == {"error_rate": pytest.approx(0.02), "latency_p95_ms": 120.0}


def test_http_metric_source_error_classification(mesh):
    source = HttpMetricSource("http://testserver", client=mesh)
    mesh.post("/simulate/metrics-outage")

    with pytest.raises(MetricSourceError) as exc:
        source.read_metrics("checkout", ["error_rate"])
    assert exc.value.transient is True

    missing = HttpMetricSource("http://testserver/nowhere", client=mesh)
    with pytest.raises(MetricSourceError) as exc:
        missing.read_metrics("checkout", ["error_rate"])
    assert exc.value.transient is False


def test_http_metric_source_rejects_unexpected_payload():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[1, 2])))
    source = HttpMetricSource("http://metrics.local", client=client)

    with pytest.raises(MetricSourceError):
        source.read_metrics("checkout", ["error_rate"])


def test_in_process_router_ignores_stale_sequences():
    runtime = RuntimeState()
    router = InProcessTrafficRouter(runtime)

    router.set_weight("checkout", 50, sequence=2)
    router.set_weight("checkout", 10, sequence=1)

    assert runtime.get_weight("checkout") == 50
    with pytest.raises(PermanentRouterError):
        router.set_weight("checkout", 101, sequence=3)


@pytest.mark.parametrize("weight", [0, 10, 25, 50, 100])
def test_gateway_sends_weight_percent_of_requests_to_canary(weight):
    runtime = RuntimeState()
    runtime.set_weight("checkout", weight)

    picks = [select_slice("checkout", runtime) for _ in range(100)]

    assert picks.count(CANARY) == weight
    assert picks.count(BASELINE) == 100 - weight


def test_gateway_interleaves_small_canaries():
    runtime = RuntimeState()
    runtime.set_weight("checkout", 10)

    picks = [select_slice("checkout", runtime) for _ in range(20)]

    assert picks[:10].count(CANARY) == 1


def test_gateway_peek_does_not_move_the_cursor():
    runtime = RuntimeState()
    runtime.set_weight("checkout", 10)

    peeked = [select_slice("checkout", runtime, advance=False) for _ in range(5)]

    assert peeked == [CANARY] * 5
    assert runtime.rr_index == {}
    assert select_slice("checkout", runtime) == CANARY
    assert select_slice("checkout", runtime, advance=False) == BASELINE
