from __future__ import annotations

from typing import Protocol

import httpx

from .runtime import RuntimeState


class RouterError(Exception):
    transient = False


class TransientRouterError(RouterError):
    """Transport failures and 5xx-style responses; safe to retry."""

    transient = True


class PermanentRouterError(RouterError):
    """Authentication failures, unknown targets, malformed requests."""


class TrafficRouter(Protocol):
    def set_weight(self, service: str, percentage: int, sequence: int = 0) -> None:
        """Route ``percentage`` of ``service`` traffic to the canary.

        Returning normally is the acknowledgement. ``sequence`` increases
        monotonically per service so a router can drop stale writes.
        """


_TRANSIENT_STATUS = {408, 425, 429}


class HttpTrafficRouter:
    """Traffic router reached over HTTP/JSON.

    POST {base}/services/{service}/weight  {"weight": 10, "sequence": 3}
    """

    def __init__(self, base_url: str, timeout_s: float = 10.0, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client

    def set_weight(self, service: str, percentage: int, sequence: int = 0) -> None:
        url = f"{self.base_url}/services/{service}/weight"
        payload = {"weight": int(percentage), "sequence": int(sequence)}
        try:
            if self._client is not None:
                resp = self._client.post(url, json=payload, timeout=self.timeout_s)
            else:
                with httpx.Client(timeout=self.timeout_s, follow_redirects=False) as client:
                    resp = client.post(url, json=payload)
        except httpx.TransportError as e:
            raise TransientRouterError(f"{type(e).__name__}: {e}") from e

        if resp.status_code >= 500 or resp.status_code in _TRANSIENT_STATUS:
            raise TransientRouterError(f"HTTP {resp.status_code} from router")
        if resp.status_code >= 400:
            raise PermanentRouterError(f"HTTP {resp.status_code} from router: {resp.text[:200]}")


class InProcessTrafficRouter:
    """Writes weights into the controller's own routing table."""

    def __init__(self, runtime: RuntimeState):
        self.runtime = runtime

    def set_weight(self, service: str, percentage: int, sequence: int = 0) -> None:
        if not 0 <= int(percentage) <= 100:
            raise PermanentRouterError(f"weight {percentage} is outside 0..100")
        self.runtime.set_weight(service, int(percentage), sequence)
