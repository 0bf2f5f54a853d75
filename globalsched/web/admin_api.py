from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import uvicorn
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer
from pydantic import BaseModel, Field

from globalsched.core.errors import HTTP_STATUS_BY_CODE, CallbackAuthError, SchedulingError
from globalsched.services.container import Services, build_services


class AddBusinessPayload(BaseModel):
    team_id: str = Field(min_length=1, max_length=128)
    business_id: str = Field(min_length=1, max_length=128)
    platform: str = Field(min_length=1, max_length=64)
    identifier: str = Field(min_length=1)
    schedule_type: str = Field(default="reviews")


class MoveBusinessPayload(BaseModel):
    team_id: str = Field(min_length=1, max_length=128)
    platform: str = Field(min_length=1, max_length=64)
    interval_hours: Optional[int] = None


class CustomIntervalPayload(BaseModel):
    platform: str = Field(min_length=1, max_length=64)
    interval_hours: int
    expires_at: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)
    set_by: Optional[str] = Field(default=None, max_length=128)
    apply: bool = False


class ConsolidatePayload(BaseModel):
    platform: str = Field(min_length=1, max_length=64)
    interval_hours: int
    schedule_type: str = Field(default="reviews")
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RetryBusinessPayload(BaseModel):
    platform: Optional[str] = None


basic = HTTPBasic(auto_error=False)
bearer = HTTPBearer(auto_error=False)


def _is_loopback(host: str | None) -> bool:
    return host in {"127.0.0.1", "::1", "localhost"}


def _auth_guard(
    request: Request,
    basic_cred: HTTPBasicCredentials | None = Depends(basic),
    bearer_cred: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> dict[str, str]:
    admin_token = os.environ.get("ADMIN_TOKEN", "").strip()
    admin_user = os.environ.get("ADMIN_USER", "").strip()
    admin_pass = os.environ.get("ADMIN_PASS", "").strip()

    if admin_token:
        if bearer_cred and bearer_cred.scheme.lower() == "bearer" and bearer_cred.credentials == admin_token:
            return {"auth": "bearer", "principal": "token-user"}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if admin_user and admin_pass:
        if basic_cred and basic_cred.username == admin_user and basic_cred.password == admin_pass:
            return {"auth": "basic", "principal": basic_cred.username}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: basic auth required",
            headers={"WWW-Authenticate": 'Basic realm="ScheduleAdminAPI"'},
        )

    host = request.client.host if request.client else None
    if _is_loopback(host):
        return {"auth": "local", "principal": "localhost"}
    raise HTTPException(
        status_code=401,
        detail="unauthorized: configure ADMIN_TOKEN or ADMIN_USER/ADMIN_PASS",
        headers={"WWW-Authenticate": 'Basic realm="ScheduleAdminAPI"'},
    )


def create_app(project_root: Path | None = None, services: Services | None = None) -> FastAPI:
    root = project_root or Path(__file__).resolve().parents[2]
    svc = services or build_services(root)
    app = FastAPI(title="Global Schedule Admin API", version="1.0.0")

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload = {"ok": False, "error": {"code": f"HTTP_{exc.status_code}", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(SchedulingError)
    async def _scheduling_error_handler(_: Request, exc: SchedulingError) -> JSONResponse:
        status = HTTP_STATUS_BY_CODE.get(exc.code, 500)
        if isinstance(exc, CallbackAuthError) and not exc.configured:
            status = 500
        payload = {"ok": False, "error": {"code": exc.code, "message": str(exc)}}
        return JSONResponse(status_code=status, content=payload)

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        # No auth: used by container healthchecks.
        obs = svc.store.observability_info()
        return {
            "ok": True,
            "service": "schedule-admin-api",
            "db_url": obs["db_url"],
            "db_backend": obs["db_backend"],
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/admin/api/schedules")
    def list_schedules(
        platform: Optional[str] = Query(default=None),
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        rows = svc.read_model.list_schedules(platform=platform)
        return {"ok": True, "count": len(rows), "schedules": rows}

    @app.post("/admin/api/schedules/consolidate")
    def consolidate(payload: ConsolidatePayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        result = svc.batches.consolidate(
            payload.platform, payload.interval_hours, payload.schedule_type, threshold=payload.threshold
        )
        return {"ok": True, **result}

    @app.post("/admin/api/schedules/reconcile")
    def reconcile(_: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "fixed": svc.batches.reconcile_counts()}

    @app.get("/admin/api/schedules/{schedule_id}/businesses")
    def schedule_businesses(schedule_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, **svc.read_model.get_businesses_in_schedule(schedule_id)}

    @app.post("/admin/api/schedules/{schedule_id}/trigger")
    def trigger(schedule_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, **svc.orchestrator.trigger_manual_run(schedule_id)}

    @app.post("/admin/api/schedules/{schedule_id}/pause")
    def pause(schedule_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "schedule": svc.orchestrator.pause_schedule(schedule_id)}

    @app.post("/admin/api/schedules/{schedule_id}/resume")
    def resume(schedule_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "schedule": svc.orchestrator.resume_schedule(schedule_id)}

    @app.get("/admin/api/teams/{team_id}/schedules")
    def team_schedules(team_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {
            "ok": True,
            "team_id": team_id,
            "assignments": svc.read_model.get_team_schedule_assignments(team_id),
            "custom_intervals": svc.resolver.list_custom_intervals(team_id),
        }

    @app.post("/admin/api/teams/{team_id}/custom-interval")
    def set_custom_interval(
        team_id: str,
        payload: CustomIntervalPayload,
        auth: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        override = svc.resolver.set_custom_interval(
            team_id,
            payload.platform,
            payload.interval_hours,
            payload.expires_at,
            reason=payload.reason,
            set_by=payload.set_by or auth.get("principal"),
        )
        out: dict[str, Any] = {"ok": True, "override": override}
        if payload.apply:
            out["applied"] = svc.orchestrator.apply_interval_change(team_id, payload.platform)
        return out

    @app.delete("/admin/api/teams/{team_id}/custom-interval/{platform}")
    def remove_custom_interval(
        team_id: str,
        platform: str,
        apply: bool = Query(default=False),
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": True, "removed": svc.resolver.remove_custom_interval(team_id, platform)}
        if apply:
            out["applied"] = svc.orchestrator.apply_interval_change(team_id, platform)
        return out

    @app.get("/admin/api/health")
    def health(_: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, **svc.read_model.get_health()}

    @app.post("/admin/api/businesses")
    def add_business(payload: AddBusinessPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        mapping = svc.orchestrator.add_business_to_schedule(
            payload.team_id, payload.platform, payload.business_id, payload.identifier, payload.schedule_type
        )
        return {"ok": True, "mapping": mapping}

    @app.post("/admin/api/businesses/{business_id}/move")
    def move_business(
        business_id: str, payload: MoveBusinessPayload, _: dict[str, str] = Depends(_auth_guard)
    ) -> dict[str, Any]:
        mapping = svc.orchestrator.move_business_between_schedules(
            payload.team_id, payload.platform, business_id, payload.interval_hours
        )
        return {"ok": True, "mapping": mapping}

    @app.delete("/admin/api/businesses/{business_id}")
    def remove_business(
        business_id: str,
        platform: str = Query(min_length=1),
        team_id: str = Query(min_length=1),
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        return {"ok": True, "removed": svc.orchestrator.remove_business_from_schedule(team_id, platform, business_id)}

    @app.post("/admin/api/businesses/{business_id}/retry")
    def retry_business(
        business_id: str,
        payload: RetryBusinessPayload | None = None,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        platform = payload.platform if payload is not None else None
        entries = svc.retry_queue.force_retry_business(business_id, platform)
        return {"ok": True, "entries": entries}

    @app.get("/admin/api/retry-queue")
    def retry_queue(
        status: Optional[str] = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        return {
            "ok": True,
            "stats": svc.retry_queue.stats(),
            "entries": svc.retry_queue.list_entries(status=status, limit=limit),
        }

    @app.post("/webhooks/runs")
    def run_callback(
        payload: Any = Body(default=None),
        token: Optional[str] = Query(default=None),
        x_callback_token: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        return svc.callbacks.handle(payload, token or x_callback_token)

    return app


def run_server() -> None:
    host = os.environ.get("ADMIN_API_HOST", "127.0.0.1")
    port = int(os.environ.get("ADMIN_API_PORT", "8790"))
    uvicorn.run("globalsched.web.admin_api:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    run_server()
