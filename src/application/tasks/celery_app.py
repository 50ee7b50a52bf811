"""Celery application configuration for the cost anomaly pipeline.

Sets up the broker, result backend, serialisation, task routing, retry
policy and the beat schedule for the two batch jobs.
"""

from __future__ import annotations

from typing import Any

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from infrastructure.settings import get_settings

_settings = get_settings()

app = Celery("cost_sentinel")

# ---------------------------------------------------------------------------
# Broker and result backend
# ---------------------------------------------------------------------------

app.conf.broker_url = _settings.celery_broker_url
app.conf.result_backend = _settings.celery_result_backend

# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

app.conf.accept_content = ["json"]
app.conf.task_serializer = "json"
app.conf.result_serializer = "json"

# ---------------------------------------------------------------------------
# Task routing
# ---------------------------------------------------------------------------

app.conf.task_routes = {
    "application.tasks.sync_tasks.sync_user": {"queue": "sync"},
    "application.tasks.sync_tasks.run_auto_sync": {"queue": "batch"},
    "application.tasks.sync_tasks.run_weekly_reports": {"queue": "batch"},
}

# ---------------------------------------------------------------------------
# Default retry policy
# ---------------------------------------------------------------------------

app.conf.task_annotations = {
    "*": {
        "max_retries": 3,
        "default_retry_delay": 60,
        "retry_backoff": True,
        "retry_backoff_max": 600,
        "retry_jitter": True,
    },
}

# ---------------------------------------------------------------------------
# Beat schedule
# ---------------------------------------------------------------------------

app.conf.beat_schedule = {
    "auto-sync-hourly": {
        "task": "application.tasks.sync_tasks.run_auto_sync",
        "schedule": crontab(minute=5),
    },
    "weekly-report-monday": {
        "task": "application.tasks.sync_tasks.run_weekly_reports",
        "schedule": crontab(minute=0, hour=8, day_of_week="mon"),
    },
}

# ---------------------------------------------------------------------------
# Miscellaneous
# ---------------------------------------------------------------------------

app.conf.task_acks_late = True
app.conf.worker_prefetch_multiplier = 1
app.conf.task_track_started = True
# the run lock TTL (20 min max) bounds a batch; the hard limit sits above it
app.conf.task_time_limit = 1800
app.conf.task_soft_time_limit = 1500
app.conf.timezone = "UTC"
app.conf.enable_utc = True


@worker_process_init.connect
def _configure_worker_logging(**_: Any) -> None:
    from infrastructure.observability.logging_config import setup_logging

    setup_logging(_settings.log_level)


# ---------------------------------------------------------------------------
# Autodiscovery
# ---------------------------------------------------------------------------

app.autodiscover_tasks(["application.tasks.sync_tasks"])
