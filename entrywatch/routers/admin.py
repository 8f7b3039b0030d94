from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from entrywatch.db import get_db
from entrywatch.errors import ApiError, StoreError
from entrywatch.schemas import JobExecutionLogRead, SweepRunResponse, UnitOutcomeRead
from entrywatch.security import require_admin
from entrywatch.services.execution_log import ExecutionLog, get_execution_log
from entrywatch.services.notifications import NotificationChannel, get_notification_channel
from entrywatch.services.sweeps import SWEEP_JOBS

router = APIRouter(prefix="/api/admin/scheduled-jobs", tags=["scheduled-jobs"])


@router.get("", dependencies=[Depends(require_admin)])
def get_schedule(request: Request) -> dict:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"enabled": False, "jobs": sorted(SWEEP_JOBS)}
    return {"enabled": True, "jobs": sorted(SWEEP_JOBS), **scheduler.status()}


@router.get(
    "/logs",
    response_model=list[JobExecutionLogRead],
    dependencies=[Depends(require_admin)],
)
def list_job_execution_logs(
    job_name: str | None = Query(default=None),
    status: Literal["success", "error"] | None = Query(default=None),
    order: Literal["asc", "desc"] = Query(default="asc"),
    limit: int = Query(default=100, ge=1, le=1000),
    execution_log: ExecutionLog = Depends(get_execution_log),
) -> list[JobExecutionLogRead]:
    records = execution_log.snapshot()
    if job_name:
        records = [item for item in records if item.job_name == job_name]
    if status is not None:
        records = [item for item in records if item.status == status]
    if order == "desc":
        records = list(reversed(records))
    return [JobExecutionLogRead.model_validate(item) for item in records[:limit]]


@router.post(
    "/{job_name}/run",
    response_model=SweepRunResponse,
    dependencies=[Depends(require_admin)],
)
async def run_job_now(
    job_name: str,
    db: Session = Depends(get_db),
    channel: NotificationChannel = Depends(get_notification_channel),
    execution_log: ExecutionLog = Depends(get_execution_log),
) -> SweepRunResponse:
    job = SWEEP_JOBS.get(job_name)
    if job is None:
        raise ApiError(status_code=404, code="JOB_NOT_FOUND", message=f"Unknown scheduled job: {job_name}")

    try:
        summary = await job(db=db, channel=channel, execution_log=execution_log)
    except StoreError as exc:
        raise ApiError(status_code=503, code="STORE_UNAVAILABLE", message=f"Job failed: {exc}") from exc

    return SweepRunResponse(
        job_name=job_name,
        day=summary.day,
        message=summary.message,
        missing_units=summary.missing_units,
        sent=summary.sent,
        skipped=summary.skipped,
        failed=summary.failed,
        units=[UnitOutcomeRead(**item.to_dict()) for item in summary.outcomes],
    )
