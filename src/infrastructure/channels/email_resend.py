"""Email channel backed by the Resend HTTP API."""

from __future__ import annotations

import logging

import httpx

from domain.models.notification import SendOutcome, SendStatus
from infrastructure.channels.http import ChannelHttpClient, error_message

logger = logging.getLogger(__name__)


class ResendEmailChannel:
    """``send_email`` primitive; missing configuration is a soft ``DISABLED``."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._api_url = api_url
        self._http = ChannelHttpClient(timeout=timeout, transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._sender)

    def send_email(self, to: str, subject: str, text: str, html: str) -> SendOutcome:
        if not self.configured:
            return SendOutcome(SendStatus.DISABLED, "Email provider not configured.")

        try:
            response = self._http.post(
                self._api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "from": self._sender,
                    "to": [to],
                    "subject": subject,
                    "text": text,
                    "html": html,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Email send transport error: %s", exc)
            return SendOutcome(SendStatus.ERROR, f"Email send failed: {exc}")

        if response.status_code == 429:
            return SendOutcome(SendStatus.QUOTA, "Email provider rate limit reached.")
        if response.is_error:
            return SendOutcome(SendStatus.ERROR, error_message(response, "Resend error"))

        provider_id = None
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("id"), str):
                provider_id = body["id"]
        except ValueError:
            pass
        return SendOutcome(SendStatus.OK, provider_id=provider_id)
