"""Distributed run lock for scheduled batch jobs.

A lock is a single row per job key. Acquisition is one atomic conditional
upsert that wins only when the row is absent or its expiry has passed;
release pulls the expiry to *now* but only for the recorded holder, so a
worker that outlived its TTL cannot free a lock someone else now holds.
The TTL is the only cancellation mechanism for a stuck batch.
"""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Protocol
from uuid import uuid4

from domain.models.results import ConditionalUpdateResult
from domain.models.run_lock import RunLock
from infrastructure.observability.metrics import run_lock_acquisitions_total

logger = logging.getLogger(__name__)

AUTO_SYNC_LOCK = "aws_auto_sync"
WEEKLY_REPORT_LOCK = "weekly_founder_report"


class RunLockRepository(Protocol):
    """Port: atomic lock storage."""

    def try_acquire(
        self, key: str, owner: str, now: datetime, expires_at: datetime
    ) -> ConditionalUpdateResult[RunLock]: ...

    def release(self, key: str, owner: str, now: datetime) -> ConditionalUpdateResult[RunLock]: ...

    def get(self, key: str) -> RunLock | None: ...


def new_owner_id() -> str:
    """Holder id unique to this process and invocation."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:12]}"


class RunLockService:
    def __init__(
        self,
        lock_repo: RunLockRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock_repo = lock_repo
        self._clock = clock or (lambda: datetime.now(UTC))

    def acquire(self, key: str, ttl: timedelta, owner: str) -> bool:
        if ttl <= timedelta(0):
            raise ValueError("Lock TTL must be positive")
        now = self._clock()
        result = self._lock_repo.try_acquire(key, owner, now, now + ttl)
        run_lock_acquisitions_total.labels(
            job=key, outcome="granted" if result.matched else "denied"
        ).inc()
        if result.matched:
            logger.info("Run lock %s granted to %s until %s", key, owner, now + ttl)
        else:
            logger.info("Run lock %s is held elsewhere; skipping", key)
        return result.matched

    def release(self, key: str, owner: str) -> bool:
        result = self._lock_repo.release(key, owner, self._clock())
        if not result.matched:
            logger.warning("Run lock %s not released: %s is no longer the holder", key, owner)
        return result.matched

    @contextmanager
    def hold(self, key: str, ttl: timedelta, owner: str | None = None) -> Iterator[str | None]:
        """Yield the owner id when granted, ``None`` when denied.

        A granted lock is released on every exit path, including exceptions.
        """
        holder = owner or new_owner_id()
        if not self.acquire(key, ttl, holder):
            yield None
            return
        try:
            yield holder
        finally:
            try:
                self.release(key, holder)
            except Exception:
                # Expiry reclaims the lock if the release write itself fails.
                logger.exception("Releasing run lock %s failed", key)
