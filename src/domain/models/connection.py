from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime

DEFAULT_REGION = "us-east-1"


class ConnectionStatus(enum.Enum):
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class Connection:
    """A user's link to a billing account.

    Only the encrypted secret is ever held here; the plaintext lives for the
    duration of one sync inside :class:`ProviderCredentials`.
    """

    user_id: str
    access_key_id: str
    secret_access_key_enc: str
    region: str = DEFAULT_REGION
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    last_validated_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED


@dataclass(frozen=True)
class ProviderCredentials:
    access_key_id: str
    secret_access_key: str
    region: str = DEFAULT_REGION

    def __repr__(self) -> str:
        return f"ProviderCredentials(access_key_id={self.access_key_id!r}, region={self.region!r})"
