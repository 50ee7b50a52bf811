from __future__ import annotations

from domain.models.sync import PROVIDER_MESSAGES, SyncErrorCode

PROBLEM_BASE = "https://api.cost-sentinel.example/problems"


class DomainError(Exception):
    """Base class for all domain-layer exceptions.

    Carries HTTP-mapping metadata so the presentation layer can produce
    RFC 9457 Problem Details without knowing exception internals.
    """

    def __init__(
        self,
        detail: str = "",
        *,
        title: str = "Domain Error",
        status_code: int = 400,
        error_type: str = "about:blank",
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.title = title
        self.status_code = status_code
        self.error_type = error_type


class InvalidSyncWindowError(DomainError):
    def __init__(self, days: int = 0, minimum: int = 7, maximum: int = 90) -> None:
        self.days = days
        super().__init__(
            detail=f"Sync window must be between {minimum} and {maximum} days, got {days}",
            title="Invalid Sync Window",
            status_code=422,
            error_type=f"{PROBLEM_BASE}/invalid-sync-window",
        )


class ConnectionNotFoundError(DomainError):
    def __init__(self, user_id: str = "") -> None:
        self.user_id = user_id
        super().__init__(
            detail=f"No billing connection for user {user_id}",
            title="Connection Not Found",
            status_code=404,
            error_type=f"{PROBLEM_BASE}/connection-not-found",
        )


class CredentialFormatError(DomainError):
    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(
            detail=reason or "Invalid AWS credential format.",
            title="Invalid Credentials",
            status_code=400,
            error_type=f"{PROBLEM_BASE}/invalid-credential-format",
        )


class CredentialDecryptionError(DomainError):
    """Stored credential token could not be decrypted with the current key."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(
            detail=f"Credential decryption failed: {reason}" if reason else "Credential decryption failed",
            title="Credential Decryption Failed",
            status_code=500,
            error_type=f"{PROBLEM_BASE}/credential-decryption",
        )


class ProviderError(DomainError):
    """Typed failure from the billing provider client.

    ``code`` is always one of the provider taxonomy members of
    :class:`SyncErrorCode`; ``retry_after`` is a hint in seconds for
    throttling.
    """

    _STATUS = {
        SyncErrorCode.INVALID_CREDENTIALS: 401,
        SyncErrorCode.ACCESS_DENIED: 403,
        SyncErrorCode.THROTTLED: 429,
        SyncErrorCode.PROVIDER_ERROR: 502,
    }

    def __init__(
        self,
        code: SyncErrorCode = SyncErrorCode.PROVIDER_ERROR,
        detail: str | None = None,
        *,
        retry_after: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        self.code = code
        self.retry_after = retry_after
        self.provider_code = provider_code
        super().__init__(
            detail=detail or PROVIDER_MESSAGES.get(code, PROVIDER_MESSAGES[SyncErrorCode.PROVIDER_ERROR]),
            title="Billing Provider Error",
            status_code=self._STATUS.get(code, 502),
            error_type=f"{PROBLEM_BASE}/provider-{code.value.lower().replace('_', '-')}",
        )


class CorruptRecordError(DomainError):
    def __init__(self, table: str = "", reason: str = "") -> None:
        self.table = table
        self.reason = reason
        super().__init__(
            detail=f"Malformed record in {table}: {reason}",
            title="Corrupt Record",
            status_code=500,
            error_type=f"{PROBLEM_BASE}/corrupt-record",
        )


class PersistenceError(DomainError):
    def __init__(self, operation: str = "", reason: str = "", *, written: int = 0) -> None:
        self.operation = operation
        self.reason = reason
        self.written = written
        super().__init__(
            detail=f"Storage operation '{operation}' failed: {reason}",
            title="Storage Error",
            status_code=503,
            error_type=f"{PROBLEM_BASE}/storage",
        )


class SchedulerAuthError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            detail="Missing or invalid scheduler secret",
            title="Unauthorized",
            status_code=401,
            error_type=f"{PROBLEM_BASE}/unauthorized",
        )
