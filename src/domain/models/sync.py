from __future__ import annotations

import enum

MIN_WINDOW_DAYS = 7
MAX_WINDOW_DAYS = 90


class SyncErrorCode(enum.Enum):
    NOT_CONNECTED = "NOT_CONNECTED"
    COOLDOWN = "COOLDOWN"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCESS_DENIED = "ACCESS_DENIED"
    THROTTLED = "THROTTLED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"

    @property
    def breaks_connection(self) -> bool:
        """Credential and authorization errors are terminal for a Connection."""
        return self in (SyncErrorCode.INVALID_CREDENTIALS, SyncErrorCode.ACCESS_DENIED)

    @property
    def retryable(self) -> bool:
        return self in (
            SyncErrorCode.COOLDOWN,
            SyncErrorCode.THROTTLED,
            SyncErrorCode.PROVIDER_ERROR,
            SyncErrorCode.STORAGE_ERROR,
        )


PROVIDER_MESSAGES: dict[SyncErrorCode, str] = {
    SyncErrorCode.INVALID_CREDENTIALS: "Invalid AWS credentials. Please reconnect AWS.",
    SyncErrorCode.ACCESS_DENIED: (
        "AWS denied access to Cost Explorer. Please ensure ce:GetCostAndUsage + billing access."
    ),
    SyncErrorCode.THROTTLED: "AWS is throttling requests. Please try again in a minute.",
    SyncErrorCode.PROVIDER_ERROR: "Failed to pull AWS costs. Please try again.",
}
