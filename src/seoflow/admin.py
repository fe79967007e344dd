from __future__ import annotations

import dataclasses
import logging
import os
from datetime import date, datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .coordinator import JobCoordinator
from .guards import EnqueueError, enqueue_generate, enqueue_publish, enqueue_stage
from .models import EnqueueResult, Job, JobType
from .payloads import TARGET_KEYS, PayloadError, parse_job_type
from .queue import QueuePublishError, get_queue
from .schedule import run_schedule
from .storage import init_db
from .utils import log_event

app = FastAPI(title="seoflow Admin API")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

logger = logging.getLogger("seoflow.admin")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("SF_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class JobEnqueueRequest(BaseModel):
    project_id: str = Field(min_length=1)
    job_type: str
    payload: dict = Field(default_factory=dict)


class GenerateRequest(BaseModel):
    plan_item_id: str = Field(min_length=1)


class PublishRequest(BaseModel):
    integration_id: str = Field(min_length=1)


class CancelRequest(BaseModel):
    reason: str = "canceled_by_admin"


class ScheduleRunRequest(BaseModel):
    project_id: str | None = None
    policy: str | None = None
    buffer_days: int | None = Field(default=None, ge=0)
    today: date | None = None


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "seoflow Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"status": "ok"}


@app.get("/projects/{project_id}/jobs", dependencies=[Depends(_require_admin_token)])
def project_jobs(
    project_id: str,
    type: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        jobs = _get_coordinator(conn, publishing=False).list_project_jobs(
            project_id, job_type=type, status=status, limit=limit
        )
    finally:
        conn.close()
    return [_job_to_dict(job) for job in jobs]


@app.get("/jobs/stuck", dependencies=[Depends(_require_admin_token)])
def jobs_stuck(older_than_seconds: int | None = None) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
        threshold = (
            older_than_seconds
            if older_than_seconds is not None
            else config.jobs.stuck_after_seconds
        )
        jobs = _get_coordinator(conn, publishing=False).list_stuck_jobs(
            threshold, check_queue=config.queue.backend == "sql"
        )
    finally:
        conn.close()
    return [_job_to_dict(job) for job in jobs]


@app.post("/jobs/enqueue", dependencies=[Depends(_require_admin_token)])
def jobs_enqueue(request: JobEnqueueRequest):
    conn = _get_conn()
    try:
        kind = _parse_kind(request.job_type)
        coordinator = _get_coordinator(conn)
        if kind == JobType.GENERATE:
            outcome = enqueue_generate(coordinator, str(request.payload.get("plan_item_id") or ""))
        elif kind == JobType.PUBLISH:
            outcome = enqueue_publish(
                coordinator,
                str(request.payload.get("article_id") or ""),
                str(request.payload.get("integration_id") or ""),
            )
        elif kind in TARGET_KEYS:
            raise HTTPException(status_code=400, detail=f"{kind.value} requires a guarded route")
        else:
            outcome = enqueue_stage(coordinator, request.project_id, kind, request.payload)
        return _enqueue_response(outcome)
    except EnqueueError as exc:
        raise _enqueue_http_error(exc) from exc
    except PayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except QueuePublishError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    finally:
        conn.close()


@app.get("/jobs/{job_id}", dependencies=[Depends(_require_admin_token)])
def job_detail(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    try:
        job = _get_coordinator(conn, publishing=False).get_job(job_id)
    finally:
        conn.close()
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_to_dict(job)


@app.post("/jobs/{job_id}/cancel", dependencies=[Depends(_require_admin_token)])
def job_cancel(job_id: str, request: CancelRequest | None = None) -> dict[str, object]:
    reason = request.reason if request else "canceled_by_admin"
    conn = _get_conn()
    try:
        canceled = _get_coordinator(conn, publishing=False).cancel(job_id, reason)
    finally:
        conn.close()
    if not canceled:
        raise HTTPException(status_code=409, detail="job is not queued or running")
    return {"job_id": job_id, "status": "canceled"}


@app.post("/jobs/{job_id}/redeliver", dependencies=[Depends(_require_admin_token)])
def job_redeliver(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    try:
        redelivered = _get_coordinator(conn).redeliver(job_id)
    finally:
        conn.close()
    if not redelivered:
        raise HTTPException(status_code=409, detail="job could not be redelivered")
    return {"job_id": job_id, "status": "queued"}


@app.post("/articles/generate", dependencies=[Depends(_require_admin_token)])
def articles_generate(request: GenerateRequest):
    conn = _get_conn()
    try:
        outcome = enqueue_generate(_get_coordinator(conn), request.plan_item_id)
    except EnqueueError as exc:
        raise _enqueue_http_error(exc) from exc
    except QueuePublishError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    finally:
        conn.close()
    return _enqueue_response(outcome)


@app.post("/articles/{article_id}/publish", dependencies=[Depends(_require_admin_token)])
def articles_publish(article_id: str, request: PublishRequest):
    conn = _get_conn()
    try:
        outcome = enqueue_publish(_get_coordinator(conn), article_id, request.integration_id)
    except EnqueueError as exc:
        raise _enqueue_http_error(exc) from exc
    except QueuePublishError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    finally:
        conn.close()
    return _enqueue_response(outcome)


@app.post("/schedule/run", dependencies=[Depends(_require_admin_token)])
def schedule_run(request: ScheduleRunRequest | None = None) -> dict[str, object]:
    request = request or ScheduleRunRequest()
    conn = _get_conn()
    try:
        result = run_schedule(
            _get_coordinator(conn),
            project_id=request.project_id,
            override_mode=request.policy,
            override_buffer_days=request.buffer_days,
            today=request.today,
        )
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "schedule_run_requested",
        project_id=request.project_id or "*",
        generated_drafts=result.generated_drafts,
        published_articles=result.published_articles,
    )
    return dataclasses.asdict(result)


def _parse_kind(value: str) -> JobType:
    try:
        return parse_job_type(value)
    except PayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _enqueue_response(outcome: EnqueueResult) -> JSONResponse:
    return JSONResponse(
        dataclasses.asdict(outcome),
        status_code=200 if outcome.reused else 202,
    )


def _enqueue_http_error(exc: EnqueueError) -> HTTPException:
    return HTTPException(status_code=exc.status, detail={"code": exc.code, "message": str(exc)})


def _job_to_dict(job: Job) -> dict[str, object]:
    return dataclasses.asdict(job)


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("seoflow")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn():
    conn = init_db()
    bootstrap_runtime_config(conn)
    return conn


def _get_coordinator(conn, publishing: bool = True) -> JobCoordinator:
    config = load_runtime_config(conn)
    if publishing and config.queue.backend != "sql":
        raise HTTPException(
            status_code=503,
            detail=f"queue backend {config.queue.backend} is only reachable from the worker process",
        )
    # The queue shares the request connection and is closed with it.
    queue = get_queue(
        config.queue.backend,
        lambda: conn,
        "admin",
        config.queue.lock_timeout_seconds,
    )
    return JobCoordinator(conn, queue, list_limit=config.jobs.list_limit)
