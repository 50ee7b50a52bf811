"""Shared HTTP plumbing for outbound notification channels."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Only failures where the request never reached the provider are retried;
# a read timeout after sending could mean the message went out.
RETRYABLE_ERRORS: tuple[type[httpx.TransportError], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
)


class ChannelHttpClient:
    """Thin wrapper around a sync :class:`httpx.Client` with one retry."""

    def __init__(
        self,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        attempts = 0
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            while True:
                attempts += 1
                try:
                    return client.post(url, **kwargs)
                except RETRYABLE_ERRORS as exc:
                    if attempts >= 2:
                        raise
                    logger.info("Channel connect failed, retrying once: %s", exc)


def error_message(response: httpx.Response, fallback: str) -> str:
    """Best-effort provider error text from a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return f"{fallback} ({response.status_code})"
    if isinstance(body, dict):
        for key in ("message", "error_message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return f"{fallback} ({response.status_code})"
