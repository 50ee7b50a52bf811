"""Unit tests for domain exceptions and their HTTP mapping metadata."""

from __future__ import annotations

import pytest

from domain.exceptions import (
    ConnectionNotFoundError,
    CorruptRecordError,
    CredentialDecryptionError,
    DomainError,
    InvalidSyncWindowError,
    PersistenceError,
    ProviderError,
    SchedulerAuthError,
)
from domain.models.sync import PROVIDER_MESSAGES, SyncErrorCode


class TestDomainErrors:

    def test_all_derive_from_domain_error(self):
        for exc in (
            InvalidSyncWindowError(3),
            CredentialDecryptionError("x"),
            CorruptRecordError("anomalies", "bad severity"),
            PersistenceError("upsert", "boom"),
            SchedulerAuthError(),
            ConnectionNotFoundError("u1"),
            ProviderError(),
        ):
            assert isinstance(exc, DomainError)
            assert exc.error_type.startswith("https://")

    def test_invalid_window_is_unprocessable(self):
        exc = InvalidSyncWindowError(5)
        assert exc.status_code == 422
        assert "between 7 and 90" in exc.detail

    def test_persistence_error_carries_partial_count(self):
        exc = PersistenceError("upsert cost points", "chunk failed", written=500)
        assert exc.written == 500
        assert exc.status_code == 503


class TestProviderError:

    @pytest.mark.parametrize(
        "code, status",
        [
            (SyncErrorCode.INVALID_CREDENTIALS, 401),
            (SyncErrorCode.ACCESS_DENIED, 403),
            (SyncErrorCode.THROTTLED, 429),
            (SyncErrorCode.PROVIDER_ERROR, 502),
        ],
    )
    def test_status_per_code(self, code, status):
        exc = ProviderError(code)
        assert exc.status_code == status
        assert exc.detail == PROVIDER_MESSAGES[code]

    def test_error_type_slug(self):
        assert ProviderError(SyncErrorCode.ACCESS_DENIED).error_type.endswith("/provider-access-denied")

    def test_retry_hint(self):
        exc = ProviderError(SyncErrorCode.THROTTLED, retry_after=60, provider_code="ThrottlingException")
        assert exc.retry_after == 60
        assert exc.provider_code == "ThrottlingException"


class TestSyncErrorCode:

    def test_credential_errors_break_the_connection(self):
        assert SyncErrorCode.INVALID_CREDENTIALS.breaks_connection
        assert SyncErrorCode.ACCESS_DENIED.breaks_connection
        assert not SyncErrorCode.THROTTLED.breaks_connection

    def test_retryable_codes(self):
        assert SyncErrorCode.THROTTLED.retryable
        assert not SyncErrorCode.NOT_CONNECTED.retryable
