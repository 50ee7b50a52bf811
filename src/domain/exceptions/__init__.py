from domain.exceptions.pipeline_exceptions import (
    ConnectionNotFoundError,
    CorruptRecordError,
    CredentialDecryptionError,
    CredentialFormatError,
    DomainError,
    InvalidSyncWindowError,
    PersistenceError,
    ProviderError,
    SchedulerAuthError,
)

__all__ = [
    "ConnectionNotFoundError",
    "CorruptRecordError",
    "CredentialDecryptionError",
    "CredentialFormatError",
    "DomainError",
    "InvalidSyncWindowError",
    "PersistenceError",
    "ProviderError",
    "SchedulerAuthError",
]
