"""Background Celery tasks for cost sync and the scheduled batch jobs."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from application.tasks.celery_app import app

logger = logging.getLogger(__name__)


@app.task(  # type: ignore[untyped-decorator]
    name="application.tasks.sync_tasks.sync_user",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
)
def sync_user(self: Any, user_id: str, days: int | None = None) -> dict[str, Any]:
    """Sync one user; throttled provider calls are retried after the hint."""
    from domain.models.sync import SyncErrorCode
    from infrastructure.container import get_container

    logger.info("Sync task for user %s (days=%s)", user_id, days)
    result = get_container().sync_service.sync(user_id, days)

    if result.code == SyncErrorCode.THROTTLED:
        countdown = result.retry_after_seconds or 60
        logger.info("Sync for user %s throttled; retrying in %ss", user_id, countdown)
        raise self.retry(countdown=countdown)

    return result.to_dict()


@app.task(  # type: ignore[untyped-decorator]
    name="application.tasks.sync_tasks.run_auto_sync",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
)
def run_auto_sync(
    self: Any,
    days: int | None = None,
    max_users: int | None = None,
    min_hours_since_last_sync: int | None = None,
    concurrency: int | None = None,
) -> dict[str, Any]:
    """Sync every connected user that is due."""
    from infrastructure.container import get_container

    try:
        report = get_container().batch_service.run_auto_sync(
            days=days,
            max_users=max_users,
            min_hours_since_last_sync=min_hours_since_last_sync,
            concurrency=concurrency,
        )
    except Exception as exc:
        logger.exception("Auto-sync batch failed")
        raise self.retry(exc=exc) from exc
    return report.to_dict()


@app.task(  # type: ignore[untyped-decorator]
    name="application.tasks.sync_tasks.run_weekly_reports",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
)
def run_weekly_reports(
    self: Any,
    max_users: int | None = None,
    concurrency: int | None = None,
    week_start: str | None = None,
) -> dict[str, Any]:
    """Email the weekly spend report to every connected user."""
    from infrastructure.container import get_container

    start = date.fromisoformat(week_start) if week_start else None
    try:
        report = get_container().batch_service.run_weekly_reports(
            max_users=max_users, concurrency=concurrency, week_start=start
        )
    except Exception as exc:
        logger.exception("Weekly report batch failed")
        raise self.retry(exc=exc) from exc
    return report.to_dict()
