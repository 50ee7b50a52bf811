"""Billing connection onboarding.

Credentials are validated with a single-day provider call before anything is
stored, so a failed validation never overwrites a working connection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Protocol

from domain.exceptions import ConnectionNotFoundError, CredentialFormatError
from domain.models.connection import DEFAULT_REGION, Connection, ConnectionStatus, ProviderCredentials

logger = logging.getLogger(__name__)

ACCESS_KEY_LENGTH = (16, 128)
SECRET_KEY_LENGTH = (20, 256)


class ConnectionStore(Protocol):
    """Port: connection persistence used during onboarding."""

    def get(self, user_id: str) -> Connection | None: ...

    def upsert(self, connection: Connection) -> Connection: ...


class CredentialEncrypter(Protocol):
    def encrypt(self, plaintext: str) -> str: ...


class CredentialValidator(Protocol):
    def ping(self, credentials: ProviderCredentials, today: date) -> None: ...


def validate_credential_format(access_key_id: str, secret_access_key: str) -> tuple[str, str]:
    """Trim and check key shapes; raise :class:`CredentialFormatError` otherwise."""
    access = (access_key_id or "").strip()
    secret = (secret_access_key or "").strip()
    if any(ch.isspace() for ch in access) or any(ch.isspace() for ch in secret):
        raise CredentialFormatError("Keys must not contain spaces.")
    lo, hi = ACCESS_KEY_LENGTH
    if not lo <= len(access) <= hi:
        raise CredentialFormatError(f"Access key id must be {lo}-{hi} characters.")
    lo, hi = SECRET_KEY_LENGTH
    if not lo <= len(secret) <= hi:
        raise CredentialFormatError(f"Secret access key must be {lo}-{hi} characters.")
    return access, secret


class ConnectionService:
    """Validates, encrypts and stores a user's billing credentials."""

    def __init__(
        self,
        connection_repo: ConnectionStore,
        cipher: CredentialEncrypter,
        validator: CredentialValidator,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._connection_repo = connection_repo
        self._cipher = cipher
        self._validator = validator
        self._clock = clock or (lambda: datetime.now(UTC))

    def connect(
        self,
        user_id: str,
        access_key_id: str,
        secret_access_key: str,
        region: str | None = None,
    ) -> Connection:
        """Validate credentials and upsert the user's Connection as connected.

        Provider failures propagate as :class:`ProviderError` before any write.
        """
        access, secret = validate_credential_format(access_key_id, secret_access_key)
        chosen_region = (region or "").strip() or DEFAULT_REGION
        now = self._clock()

        self._validator.ping(ProviderCredentials(access, secret, chosen_region), now.date())

        existing = self._connection_repo.get(user_id)
        connection = Connection(
            user_id=user_id,
            access_key_id=access,
            secret_access_key_enc=self._cipher.encrypt(secret),
            region=chosen_region,
            status=ConnectionStatus.CONNECTED,
            last_validated_at=now,
            last_sync_at=existing.last_sync_at if existing else None,
            last_error=None,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        saved = self._connection_repo.upsert(connection)
        logger.info("Connection stored for user %s (key ...%s)", user_id, access[-4:])
        return saved

    def get(self, user_id: str) -> Connection:
        """Return the stored connection or raise :class:`ConnectionNotFoundError`."""
        connection = self._connection_repo.get(user_id)
        if connection is None:
            raise ConnectionNotFoundError(user_id)
        return connection
