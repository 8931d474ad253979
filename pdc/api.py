from __future__ import annotations

import secrets
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .alerts import build_notifier
from .api_models import StartRolloutRequest
from .controller import RolloutController
from .gateway import select_slice
from .metrics import HttpMetricSource
from .models import INVALID_SPEC, RolloutRejected
from .router import HttpTrafficRouter, InProcessTrafficRouter, TrafficRouter
from .runtime import RuntimeState
from .settings import settings

security = HTTPBasic(auto_error=False)


def get_operator(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    """Basic auth for the API; open when no admin credentials are configured."""
    if not settings.admin_user or not settings.admin_password:
        return "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def _rejected(err: RolloutRejected) -> JSONResponse:
    status_code = 400 if err.reason == INVALID_SPEC else 409
    return JSONResponse(
        status_code=status_code,
        content={"status": "rejected", "reason": err.reason, "detail": err.detail},
    )


def _validation_detail(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def default_controller(runtime: RuntimeState) -> RolloutController:
    router: TrafficRouter
    if settings.router_url:
        router = HttpTrafficRouter(settings.router_url, timeout_s=settings.router_timeout_s)
    else:
        router = InProcessTrafficRouter(runtime)
    metrics = HttpMetricSource(settings.metrics_url, timeout_s=settings.metrics_timeout_s)
    return RolloutController(router, metrics, notifier=build_notifier())


def create_app(controller: RolloutController | None = None, runtime: RuntimeState | None = None) -> FastAPI:
    runtime = runtime or RuntimeState()
    db.init_db()
    controller = controller or default_controller(runtime)

    app = FastAPI(title="Progressive Delivery Controller")
    app.state.controller = controller
    app.state.runtime = runtime

    def get_controller(request: Request) -> RolloutController:
        return request.app.state.controller

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        # A malformed rollout body is an invalid spec like any other.
        if request.method == "POST" and request.url.path == "/rollouts":
            detail = _validation_detail(exc)
            db.log_event("WARN", f"Rejected rollout: {detail}")
            return _rejected(RolloutRejected(INVALID_SPEC, detail))
        return await request_validation_exception_handler(request, exc)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.post("/rollouts", status_code=201)
    def start_rollout(
        body: StartRolloutRequest,
        ctl: RolloutController = Depends(get_controller),
        operator: str = Depends(get_operator),
    ) -> Any:
        spec = body.to_spec()
        try:
            rollout_id = ctl.start_rollout(spec)
        except RolloutRejected as e:
            return _rejected(e)
        db.log_event("INFO", f"{operator} started rollout {rollout_id}", service_name=spec.service, rollout_id=rollout_id)
        return {"rollout_id": rollout_id}

    @app.get("/rollouts")
    def list_rollouts(
        limit: int = 50,
        service: str | None = None,
        ctl: RolloutController = Depends(get_controller),
        operator: str = Depends(get_operator),
    ) -> Any:
        return [s.to_dict() for s in ctl.list_rollouts(service=service, limit=max(1, min(1000, limit)))]

    @app.get("/rollouts/{rollout_id}")
    def get_rollout(
        rollout_id: str,
        ctl: RolloutController = Depends(get_controller),
        operator: str = Depends(get_operator),
    ) -> Any:
        try:
            return ctl.get_status(rollout_id).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown rollout")

    @app.post("/rollouts/{rollout_id}/cancel")
    def cancel_rollout(
        rollout_id: str,
        ctl: RolloutController = Depends(get_controller),
        operator: str = Depends(get_operator),
    ) -> Any:
        try:
            ctl.cancel_rollout(rollout_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown rollout")
        except RolloutRejected as e:
            return _rejected(e)
        db.log_event("WARN", f"{operator} cancelled rollout {rollout_id}", rollout_id=rollout_id)
        return {"status": "accepted", "rollout_id": rollout_id}

    @app.get("/events")
    def events(limit: int = 100, service: str | None = None, operator: str = Depends(get_operator)) -> Any:
        return db.latest_events(limit=max(1, min(1000, limit)), service_name=service)

    @app.get("/services/{service}/route")
    def route(service: str, request: Request, operator: str = Depends(get_operator)) -> Any:
        rt: RuntimeState = request.app.state.runtime
        active = request.app.state.controller.active_rollout(service)
        return {
            "service": service,
            "weight": rt.get_weight(service),
            "next_slice": select_slice(service, rt, advance=False),
            "active_rollout": active.id if active else None,
        }

    return app
