"""Scheduler entry points for the batch jobs.

Any external cron can call these instead of (or alongside) Celery beat;
the run lock keeps overlapping invocations from doing the work twice.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from application.services.batch_service import BatchJobService
from infrastructure.container import get_batch_service

from .dependencies import require_scheduler_secret
from .schemas import AutoSyncRequest, BatchRunResponse, ErrorResponse, WeeklyReportRequest

router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
    dependencies=[Depends(require_scheduler_secret)],
    responses={401: {"description": "Missing or invalid scheduler secret.", "model": ErrorResponse}},
)


@router.post("/auto-sync", response_model=BatchRunResponse, summary="Sync all due users")
def run_auto_sync(
    body: AutoSyncRequest | None = Body(default=None),
    service: BatchJobService = Depends(get_batch_service),
) -> BatchRunResponse:
    req = body or AutoSyncRequest()
    report = service.run_auto_sync(
        days=req.days,
        max_users=req.max_users,
        min_hours_since_last_sync=req.min_hours_since_last_sync,
        concurrency=req.concurrency,
    )
    return BatchRunResponse.model_validate(report.to_dict())


@router.post("/weekly-report", response_model=BatchRunResponse, summary="Send weekly reports")
def run_weekly_reports(
    body: WeeklyReportRequest | None = Body(default=None),
    service: BatchJobService = Depends(get_batch_service),
) -> BatchRunResponse:
    req = body or WeeklyReportRequest()
    report = service.run_weekly_reports(
        max_users=req.max_users, concurrency=req.concurrency, week_start=req.week_start
    )
    return BatchRunResponse.model_validate(report.to_dict())
