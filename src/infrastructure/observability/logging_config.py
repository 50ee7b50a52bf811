"""
Structured logging configuration using structlog.

Produces JSON-formatted log lines enriched with timestamps, log levels,
service metadata, and bound context (user_id, run_id, job). Application
modules keep logging through ``logging.getLogger(__name__)``; the stdlib
bridge renders those records through the same processor chain.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

# ======================================================================
# Constants
# ======================================================================

SERVICE_NAME: str = "cost-sentinel"

# Third-party loggers that are chatty at INFO.
NOISY_LOGGERS: tuple[str, ...] = ("botocore", "boto3", "urllib3", "httpx", "httpcore")


# ======================================================================
# Custom processors
# ======================================================================


def add_service_name(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject the service name into every log event."""
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


# ======================================================================
# Setup
# ======================================================================


def setup_logging(log_level: str = "INFO", *, json_logs: bool = True) -> None:
    """
    Configure structlog and the stdlib logging bridge.

    Call this once per process: the FastAPI ``lifespan`` and the Celery
    ``worker_process_init`` signal both do.

    Parameters
    ----------
    log_level:
        Minimum severity level as a string (``DEBUG``, ``INFO``, ``WARNING``,
        ``ERROR``, ``CRITICAL``).
    json_logs:
        Render JSON lines (default) or a human-readable console format for
        local development.
    """

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_name,  # type: ignore[list-item]
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


# ======================================================================
# Context helpers
# ======================================================================


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind *values* to every log line emitted inside the block.

    Context variables are per-thread and per-task, so pool workers syncing
    different users never see each other's bindings.
    """
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Return a bound structlog logger pre-populated with the given *name*.

    Additional context can be attached via ``.bind()``::

        log = get_logger("sync")
        log = log.bind(user_id="u-123")
        log.info("sync_completed", anomalies=2)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
