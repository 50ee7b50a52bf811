"""Instant-message channel: WhatsApp through Twilio's Messages API."""

from __future__ import annotations

import logging
import re

import httpx

from domain.models.notification import SendOutcome, SendStatus
from infrastructure.channels.http import ChannelHttpClient, error_message

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_phone(phone: str) -> str:
    return _WHITESPACE_RE.sub("", phone.strip())


def whatsapp_address(phone: str) -> str:
    normalized = normalize_phone(phone)
    return normalized if normalized.startswith("whatsapp:") else f"whatsapp:{normalized}"


class TwilioWhatsAppChannel:
    """
    ``send_message`` primitive.

    Provider disabled or credentials missing -> ``DISABLED``; HTTP 429 ->
    ``QUOTA``; any other rejection (trial restrictions, recipient not opted
    in) -> ``UNAVAILABLE``. Only transport failures are ``ERROR``.
    """

    def __init__(
        self,
        provider: str,
        account_sid: str,
        auth_token: str,
        sender: str,
        api_base: str = "https://api.twilio.com",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._provider = (provider or "disabled").lower()
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._sender = sender
        self._api_base = api_base.rstrip("/")
        self._http = ChannelHttpClient(timeout=timeout, transport=transport)

    def send_message(self, to: str, text: str) -> SendOutcome:
        if self._provider != "twilio":
            return SendOutcome(SendStatus.DISABLED, "WhatsApp provider not configured.")
        if not (self._account_sid and self._auth_token and self._sender):
            return SendOutcome(SendStatus.DISABLED, "Twilio WhatsApp credentials missing.")

        url = f"{self._api_base}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        try:
            response = self._http.post(
                url,
                auth=(self._account_sid, self._auth_token),
                data={"From": self._sender, "To": whatsapp_address(to), "Body": text},
            )
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp send transport error: %s", exc)
            return SendOutcome(SendStatus.ERROR, f"WhatsApp send failed: {exc}")

        if response.status_code == 429:
            return SendOutcome(SendStatus.QUOTA, "WhatsApp provider rate limit reached.")
        if response.is_error:
            return SendOutcome(SendStatus.UNAVAILABLE, error_message(response, "Twilio error"))

        sid = None
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("sid"), str):
                sid = body["sid"]
        except ValueError:
            pass
        return SendOutcome(SendStatus.OK, provider_id=sid)
