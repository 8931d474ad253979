from __future__ import annotations

from typing import Protocol, Sequence

import httpx


class MetricSourceError(Exception):
    def __init__(self, message: str, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class MetricSource(Protocol):
    def read_metrics(self, service: str, names: Sequence[str], scope: str = "canary") -> dict[str, float]:
        """Return point-in-time values keyed by metric name.

        Metrics the source has no value for are simply left out.
        """


class HttpMetricSource:
    """Metric source reached over HTTP/JSON.

    GET {base}/services/{service}/metrics?names=error_rate,latency_p95&scope=canary
    -> {"values": {"error_rate": 0.004, "latency_p95": 182.0}}
    """

    def __init__(self, base_url: str, timeout_s: float = 5.0, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client

    def read_metrics(self, service: str, names: Sequence[str], scope: str = "canary") -> dict[str, float]:
        url = f"{self.base_url}/services/{service}/metrics"
        params = {"names": ",".join(names), "scope": scope}
        try:
            if self._client is not None:
                resp = self._client.get(url, params=params, timeout=self.timeout_s)
            else:
                with httpx.Client(timeout=self.timeout_s, follow_redirects=False) as client:
                    resp = client.get(url, params=params)
        except httpx.TransportError as e:
            raise MetricSourceError(f"{type(e).__name__}: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise MetricSourceError(f"HTTP {resp.status_code} from metric source")
        if resp.status_code != 200:
            raise MetricSourceError(f"HTTP {resp.status_code} from metric source", transient=False)
        try:
            data = resp.json()
        except ValueError as e:
            raise MetricSourceError("Invalid JSON from metric source") from e

        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, dict):
            raise MetricSourceError(f"Unexpected payload: {data!r}")
        return {k: v for k, v in values.items() if k in names}
