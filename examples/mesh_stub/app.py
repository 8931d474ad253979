"""Fake service mesh for demos and tests.

Implements the two HTTP contracts the controller consumes:
  POST /services/{service}/weight   traffic router
  GET  /services/{service}/metrics  metric source
plus /simulate/* endpoints to inject canary regressions and outages.

Run: ``uvicorn examples.mesh_stub.app:app --port 9100`` and start the
controller with PDC_ROUTER_URL=PDC_METRICS_URL=http://localhost:9100.
"""
from __future__ import annotations

import random

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

app = FastAPI(title="Mesh stub")

APP_STATE: dict = {
    "weights": {},  # service -> canary weight
    "sequence": {},  # service -> last applied sequence
    "error_rate": 0.001,
    "latency_p95_ms": 120.0,
    "availability": 0.999,
    "router_down": False,
    "metrics_down": False,
    "jitter": 0.0,
}


class WeightBody(BaseModel):
    weight: int = Field(..., ge=0, le=100)
    sequence: int = 0


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.post("/services/{service}/weight")
def set_weight(service: str, body: WeightBody):
    if APP_STATE["router_down"]:
        raise HTTPException(status_code=503, detail="Router unavailable")
    last = APP_STATE["sequence"].get(service, 0)
    if body.sequence and body.sequence < last:
        # A newer write already landed; acknowledge without applying.
        return {"service": service, "weight": APP_STATE["weights"].get(service, 0), "applied": False}
    APP_STATE["weights"][service] = body.weight
    APP_STATE["sequence"][service] = body.sequence
    return {"service": service, "weight": body.weight, "applied": True}


@app.get("/services/{service}/weight")
def get_weight(service: str):
    return {"service": service, "weight": APP_STATE["weights"].get(service, 0)}


@app.get("/services/{service}/metrics")
def metrics(service: str, names: str = Query(""), scope: str = Query("canary")):
    if APP_STATE["metrics_down"]:
        raise HTTPException(status_code=503, detail="Metrics backend unavailable")
    jitter = APP_STATE["jitter"]

    def _noisy(v: float) -> float:
        return v * (1 + random.uniform(-jitter, jitter)) if jitter else v

    known = {
        "error_rate": _noisy(APP_STATE["error_rate"]),
        "latency_p95_ms": _noisy(APP_STATE["latency_p95_ms"]),
        "availability": APP_STATE["availability"],
    }
    wanted = [n for n in names.split(",") if n] or list(known)
    return {"service": service, "scope": scope, "values": {n: known[n] for n in wanted if n in known}}


@app.post("/simulate/errors/{pct}")
def simulate_errors(pct: float):
    APP_STATE["error_rate"] = pct / 100.0
    return {"msg": f"Canary error rate set to {pct}%"}


@app.post("/simulate/latency/{ms}")
def simulate_latency(ms: float):
    APP_STATE["latency_p95_ms"] = ms
    return {"msg": f"Canary p95 latency set to {ms}ms"}


@app.post("/simulate/router-outage")
def router_outage():
    APP_STATE["router_down"] = True
    return {"msg": "Router now returns 503"}


@app.post("/simulate/metrics-outage")
def metrics_outage():
    APP_STATE["metrics_down"] = True
    return {"msg": "Metric source now returns 503"}


@app.post("/simulate/reset")
def reset():
    APP_STATE.update(
        error_rate=0.001,
        latency_p95_ms=120.0,
        availability=0.999,
        router_down=False,
        metrics_down=False,
        jitter=0.0,
    )
    APP_STATE["weights"].clear()
    APP_STATE["sequence"].clear()
    return {"msg": "Mesh stub reset"}
