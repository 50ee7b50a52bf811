"""Shared route dependencies."""

from __future__ import annotations

import hmac

from fastapi import Depends, Header, Query

from domain.exceptions import SchedulerAuthError
from infrastructure.container import get_app_settings
from infrastructure.settings import AppSettings


def require_scheduler_secret(
    authorization: str | None = Header(default=None),
    secret: str | None = Query(default=None, description="Alternative to the Bearer header."),
    settings: AppSettings = Depends(get_app_settings),
) -> None:
    """Accept ``Authorization: Bearer <secret>`` or ``?secret=<secret>``.

    With no secret configured every call is rejected.
    """
    expected = settings.scheduler_secret
    if not expected:
        raise SchedulerAuthError()

    supplied = secret or ""
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer":
            supplied = token.strip()

    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise SchedulerAuthError()
