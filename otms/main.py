import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from otms.db import SessionLocal, engine
from otms.errors import ApiError, WorkflowValidationError, error_response
from otms.logging_utils import setup_json_logging
from otms.routers import ot_requests
from otms.services.notifications import get_notification_queue_health, send_pending_notifications
from otms.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from otms.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("otms.request")
notification_worker_logger = logging.getLogger("otms.notification_worker")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "affected_ids": getattr(request.state, "affected_ids", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if isinstance(exc, WorkflowValidationError):
        logger.warning(
            "ot_workflow_validation_failed",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "issue_codes": sorted({issue.code for issue in exc.issues}),
                "failed_request_ids": exc.request_ids,
            },
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    return error_response(
        request,
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(ot_requests.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _notification_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(15, int(settings.notification_worker_interval_seconds))
    while not stop_event.is_set():
        try:
            now_utc = datetime.now(timezone.utc)
            processed_jobs = await asyncio.to_thread(send_pending_notifications, 100, now_utc=now_utc)
        except Exception:
            notification_worker_logger.exception("notification_worker_tick_failed")
        else:
            if processed_jobs:
                notification_worker_logger.info(
                    "notification_worker_tick",
                    extra={
                        "processed_jobs": len(processed_jobs),
                        "sent_jobs": sum(1 for job in processed_jobs if job.status == "SENT"),
                        "failed_jobs": sum(1 for job in processed_jobs if job.status == "FAILED"),
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        notification_worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    notification_worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.on_event("startup")
async def start_notification_worker() -> None:
    if not settings.notification_worker_enabled:
        return
    if getattr(app.state, "notification_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    app.state.notification_worker_stop_event = stop_event
    app.state.notification_worker_task = asyncio.create_task(_notification_worker_loop(stop_event))
    notification_worker_logger.info(
        "notification_worker_started",
        extra={
            "interval_seconds": max(15, int(settings.notification_worker_interval_seconds)),
            "email_enabled": settings.notification_email_enabled,
        },
    )


@app.on_event("shutdown")
async def stop_notification_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "notification_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "notification_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.notification_worker_stop_event = None
    app.state.notification_worker_task = None


def _notification_queue_snapshot() -> dict[str, Any]:
    try:
        with SessionLocal() as db:
            return get_notification_queue_health(db)
    except Exception as exc:
        return {"error": exc.__class__.__name__}


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "notification_queue": _notification_queue_snapshot(),
    }
