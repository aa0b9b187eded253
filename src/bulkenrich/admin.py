from __future__ import annotations

import hmac
import logging
import os
import threading
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import ConfigError, build_config, get_runtime_config, set_runtime_config
from .controller import JobController
from .errors import BulkEnrichError, Forbidden, InvalidFilter, Unauthorized
from .models import JobRecord
from .pipelines import DEFAULT_OPERATION
from .utils import configure_logging, log_event

app = FastAPI(title="bulkenrich Admin API")

ADMIN_TOKEN_HEADER = "X-Admin-Token"
ADMIN_USER_HEADER = "X-Admin-User"

_CONTROLLER_LOCK = threading.Lock()


@app.exception_handler(BulkEnrichError)
async def _bulk_error_handler(request: Request, exc: BulkEnrichError):
    return JSONResponse(
        {"error": exc.message, "code": exc.code},
        status_code=exc.http_status,
    )


def _require_admin(request: Request) -> str:
    supplied = request.headers.get(ADMIN_TOKEN_HEADER)
    if not supplied:
        raise Unauthorized("Unauthorized")
    token = os.environ.get("BE_ADMIN_TOKEN")
    # No configured token means nobody is an admin.
    if not token or not hmac.compare_digest(supplied, token):
        raise Forbidden("Forbidden: Admin role required")
    return request.headers.get(ADMIN_USER_HEADER) or "admin"


def _get_controller(request: Request) -> JobController:
    controller = getattr(request.app.state, "controller", None)
    if controller is not None:
        return controller
    with _CONTROLLER_LOCK:
        controller = getattr(request.app.state, "controller", None)
        if controller is None:
            logger = configure_logging("bulkenrich.admin")
            controller = JobController.from_env(logger=logger)
            request.app.state.controller = controller
            recovered = controller.recover()
            if recovered:
                log_event(logger, logging.INFO, "jobs_recovered", count=len(recovered))
    return controller


@app.on_event("shutdown")
def _shutdown() -> None:
    controller = getattr(app.state, "controller", None)
    if controller is not None:
        controller.shutdown(wait_for_jobs=False)


class BulkActionRequest(BaseModel):
    action: str
    articleId: str | None = None
    batchId: str | None = None
    filter: dict | None = None
    operationType: str | None = None
    options: dict | None = None


class StartJobRequest(BaseModel):
    operation_type: str = DEFAULT_OPERATION
    filter: dict | None = None
    force: bool = False
    dry_run: bool = False


class PreviewRequest(BaseModel):
    operation_type: str = DEFAULT_OPERATION


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/admin/bulk/tldr-context")
def bulk_action(
    payload: BulkActionRequest,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    logger = logging.getLogger("bulkenrich.admin")
    log_event(
        logger,
        logging.INFO,
        "bulk_action_request",
        action=payload.action,
        article_id=payload.articleId,
        batch_id=payload.batchId,
    )
    operation_type = payload.operationType or DEFAULT_OPERATION
    if payload.action == "preview":
        if not payload.articleId:
            raise InvalidFilter("articleId required for preview")
        preview = controller.preview(payload.articleId, actor, operation_type)
        return {
            "success": True,
            "preview": preview["result"],
            "existingSnapshot": preview["existing_value"],
        }
    if payload.action == "start":
        started = controller.start(payload.filter, actor, operation_type, payload.options)
        return {
            "success": True,
            "batchId": started["job_id"],
            "totalItems": started["total_items"],
            "status": started["status"],
            "message": "Background processing started. Poll status for progress.",
        }
    if payload.action == "cancel":
        if not payload.batchId:
            raise InvalidFilter("batchId required")
        controller.cancel(payload.batchId, actor)
        return {"success": True, "acknowledged": True, "message": "Job cancelled"}
    if payload.action == "status":
        if not payload.batchId:
            raise InvalidFilter("batchId required")
        job = controller.status(payload.batchId, actor)
        return {"success": True, "queue": _job_to_dict(job)}
    raise InvalidFilter("Invalid action")


jobs_router = APIRouter(prefix="/admin")


@jobs_router.post("/jobs")
def jobs_start(
    payload: StartJobRequest,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    return controller.start(
        payload.filter,
        actor,
        payload.operation_type,
        {"force": payload.force, "dry_run": payload.dry_run},
    )


@jobs_router.get("/jobs")
def jobs_list(
    limit: int = 50,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> list[dict[str, object]]:
    return [_job_to_dict(job, include_items=False) for job in controller.list_jobs(actor, limit)]


@jobs_router.get("/jobs/{job_id}")
def jobs_status(
    job_id: str,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    return _job_to_dict(controller.status(job_id, actor))


@jobs_router.post("/jobs/{job_id}/cancel")
def jobs_cancel(
    job_id: str,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    return controller.cancel(job_id, actor)


@jobs_router.post("/jobs/{job_id}/resume")
def jobs_resume(
    job_id: str,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    return controller.resume(job_id, actor)


@jobs_router.get("/jobs/{job_id}/items")
def jobs_items(
    job_id: str,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> list[dict[str, object]]:
    return [
        {
            "position": item.position,
            "article_id": item.article_id,
            "outcome": item.outcome,
            "error": item.error,
            "processed_at": item.processed_at,
        }
        for item in controller.job_items(job_id, actor)
    ]


@jobs_router.post("/articles/{article_id}/preview")
def article_preview(
    article_id: str,
    payload: PreviewRequest | None = None,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    operation_type = payload.operation_type if payload else DEFAULT_OPERATION
    return controller.preview(article_id, actor, operation_type)


@jobs_router.get("/config/runtime")
def runtime_config_get(
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    with controller.connection() as conn:
        try:
            cfg = get_runtime_config(conn)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@jobs_router.put("/config/runtime")
def runtime_config_set(
    payload: RuntimeConfigRequest,
    actor: str = Depends(_require_admin),
    controller: JobController = Depends(_get_controller),
) -> dict[str, object]:
    with controller.connection() as conn:
        try:
            set_runtime_config(conn, payload.config)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    controller.reload_config(build_config(payload.config))
    log_event(logging.getLogger("bulkenrich.admin"), logging.INFO, "runtime_config_updated", actor=actor)
    return {"status": "ok"}


app.include_router(jobs_router)


def _job_to_dict(job: JobRecord, include_items: bool = True) -> dict[str, object]:
    data = job.to_dict()
    if not include_items:
        data.pop("item_ids", None)
    return data


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("bulkenrich")
    except Exception:  # noqa: BLE001
        return "unknown"
