import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from entrywatch.db import engine
from entrywatch.errors import ApiError, error_response
from entrywatch.logging_utils import setup_json_logging
from entrywatch.routers import admin
from entrywatch.scheduler import DailyTriggerScheduler, build_scheduler
from entrywatch.services.execution_log import get_execution_log
from entrywatch.services.notifications import get_notification_channel_health
from entrywatch.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from entrywatch.settings import get_settings, validate_settings

settings = get_settings()
setup_json_logging(service=settings.app_name, level=settings.log_level)
logger = logging.getLogger("entrywatch.request")
scheduler_logger = logging.getLogger("entrywatch.scheduler")

app = FastAPI(title=settings.app_name, version="0.1.0")


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
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
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


app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def validate_configuration() -> None:
    # Raises ConfigurationError and aborts startup before any trigger is armed.
    for warning in validate_settings(settings):
        scheduler_logger.warning("configuration_warning", extra={"warning": warning})


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        scheduler_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    scheduler_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_scheduler() -> None:
    if not settings.scheduler_enabled:
        return
    if getattr(app.state, "scheduler_task", None) is not None:
        return

    scheduler = build_scheduler(settings)
    stop_event = asyncio.Event()
    app.state.scheduler = scheduler
    app.state.scheduler_stop_event = stop_event
    app.state.scheduler_task = asyncio.create_task(scheduler.run_forever(stop_event))

    channel_health = get_notification_channel_health()
    missing_fields = channel_health["email"]["missing_fields"]
    if missing_fields:
        scheduler_logger.warning(
            "notification_email_channel_not_configured",
            extra={"missing_fields": missing_fields},
        )
    scheduler_logger.info("scheduler_started", extra=scheduler.status())


@app.on_event("shutdown")
async def stop_scheduler() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "scheduler_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "scheduler_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.scheduler_stop_event = None
    app.state.scheduler_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    scheduler: DailyTriggerScheduler | None = getattr(app.state, "scheduler", None)
    recent = get_execution_log().snapshot()[-5:]
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "notification_channels": get_notification_channel_health(),
        "scheduler": scheduler.status() if scheduler is not None else {"enabled": False},
        "recent_job_executions": [item.to_dict() for item in recent],
    }
