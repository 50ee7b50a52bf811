"""Dependency injection container for the cost anomaly pipeline.

Wires storage adapters, provider and channel clients and application
services, exposing factory functions suitable for FastAPI's ``Depends()``.
An empty ``APP_DATABASE_URL`` selects the in-memory adapters.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from application.services.batch_service import AutoSyncConfig, BatchJobService, WeeklyReportConfig
from application.services.connection_service import ConnectionService
from application.services.notification_service import NotificationDispatcher
from application.services.report_service import WeeklyReportService
from application.services.run_lock_service import RunLockService
from application.services.sync_service import CostSyncService
from domain.models.billing import AnomalySeverity
from domain.services.anomaly_engine import AnomalyEngine
from infrastructure.adapters import (
    InMemoryAnomalyRepository,
    InMemoryConnectionRepository,
    InMemoryContactDirectory,
    InMemoryCostPointRepository,
    InMemoryReservationRepository,
    InMemoryRunLockRepository,
)
from infrastructure.channels.email_resend import ResendEmailChannel
from infrastructure.channels.whatsapp_twilio import TwilioWhatsAppChannel
from infrastructure.credentials.crypto import CredentialCipher
from infrastructure.providers.aws_cost_explorer import CostExplorerClient
from infrastructure.settings import AppSettings, get_settings

logger = logging.getLogger(__name__)


def parse_min_severity(raw: str) -> AnomalySeverity:
    try:
        return AnomalySeverity((raw or "").strip().lower())
    except ValueError:
        logger.warning("Unknown notification severity %r; using warning", raw)
        return AnomalySeverity.WARNING


class ServiceContainer:
    """Central DI container that owns all service instances.

    ``provider``, the channels and ``clock`` can be injected, which is how
    the tests swap in stubs without touching the wiring.
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        *,
        provider: Any = None,
        email_channel: Any = None,
        instant_message_channel: Any = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        self.engine: Any = None

        # Storage
        if s.database_url:
            self._wire_sql_storage()
        else:
            logger.warning("APP_DATABASE_URL not set; using in-memory storage")
            self.connection_repo: Any = InMemoryConnectionRepository()
            self.cost_repo: Any = InMemoryCostPointRepository()
            self.anomaly_repo: Any = InMemoryAnomalyRepository()
            self.reservation_repo: Any = InMemoryReservationRepository()
            self.lock_repo: Any = InMemoryRunLockRepository()
            self.contacts: Any = InMemoryContactDirectory()

        # Infrastructure clients
        self.cipher = CredentialCipher.from_settings(s.credentials_encryption_key, s.auth_secret)
        self.provider = provider or CostExplorerClient(
            region=s.cost_explorer_region,
            connect_timeout=s.provider_connect_timeout,
            read_timeout=s.provider_read_timeout,
        )
        self.email_channel = email_channel or ResendEmailChannel(
            api_key=s.resend_api_key,
            sender=s.resend_from,
            api_url=s.resend_api_url,
            timeout=s.channel_timeout_seconds,
        )
        self.instant_message_channel = instant_message_channel or TwilioWhatsAppChannel(
            provider=s.whatsapp_provider,
            account_sid=s.twilio_account_sid,
            auth_token=s.twilio_auth_token,
            sender=s.twilio_whatsapp_from,
            api_base=s.twilio_api_base,
            timeout=s.channel_timeout_seconds,
        )

        # Application services
        self.dispatcher = NotificationDispatcher(
            reservation_repo=self.reservation_repo,
            contacts=self.contacts,
            email_channel=self.email_channel,
            instant_message_channel=self.instant_message_channel,
            base_url=s.app_base_url,
            min_severity=parse_min_severity(s.notification_min_severity),
            stale_after=timedelta(minutes=s.reservation_stale_minutes),
            clock=clock,
        )

        self.sync_service = CostSyncService(
            connection_repo=self.connection_repo,
            cost_repo=self.cost_repo,
            anomaly_repo=self.anomaly_repo,
            provider=self.provider,
            cipher=self.cipher,
            dispatcher=self.dispatcher,
            engine=AnomalyEngine(),
            cooldown=timedelta(seconds=s.sync_cooldown_seconds),
            top_n=s.top_dimensions,
            default_days=s.sync_default_days,
            clock=clock,
        )

        self.connection_service = ConnectionService(
            connection_repo=self.connection_repo,
            cipher=self.cipher,
            validator=self.provider,
            clock=clock,
        )

        self.report_service = WeeklyReportService(
            cost_repo=self.cost_repo,
            anomaly_repo=self.anomaly_repo,
            contacts=self.contacts,
            dispatcher=self.dispatcher,
            email_channel=self.email_channel,
            base_url=s.app_base_url,
            clock=clock,
        )

        self.lock_service = RunLockService(lock_repo=self.lock_repo, clock=clock)

        self.batch_service = BatchJobService(
            connection_repo=self.connection_repo,
            sync_service=self.sync_service,
            report_service=self.report_service,
            lock_service=self.lock_service,
            auto_sync_ttl=timedelta(minutes=s.auto_sync_lock_ttl_minutes),
            weekly_report_ttl=timedelta(minutes=s.weekly_report_lock_ttl_minutes),
            auto_sync_defaults=AutoSyncConfig.clamped(
                s.sync_default_days,
                s.auto_sync_max_users,
                s.auto_sync_min_hours,
                s.auto_sync_concurrency,
            ),
            weekly_report_defaults=WeeklyReportConfig.clamped(
                s.weekly_report_max_users, s.weekly_report_concurrency
            ),
            clock=clock,
        )

        logger.info("ServiceContainer initialized")

    def _wire_sql_storage(self) -> None:
        from infrastructure.database.config import DatabaseSettings
        from infrastructure.database.engine import build_engine, build_session_factory
        from infrastructure.database.repository import (
            SqlAnomalyRepository,
            SqlConnectionRepository,
            SqlContactDirectory,
            SqlCostPointRepository,
            SqlReservationRepository,
            SqlRunLockRepository,
        )

        db_settings = DatabaseSettings.from_app_settings(self._settings)
        self.engine = build_engine(db_settings)
        factory = build_session_factory(self.engine)
        self.connection_repo = SqlConnectionRepository(factory)
        self.cost_repo = SqlCostPointRepository(factory, chunk_size=db_settings.upsert_chunk_size)
        self.anomaly_repo = SqlAnomalyRepository(factory)
        self.reservation_repo = SqlReservationRepository(factory)
        self.lock_repo = SqlRunLockRepository(factory)
        self.contacts = SqlContactDirectory(factory)

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def bootstrap_storage(self) -> None:
        """Apply migrations when backed by a database; no-op in memory."""
        if self.engine is None:
            return
        from infrastructure.database.migration_runner import MigrationRunner

        MigrationRunner(self.engine).upgrade()

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


# Module-level singleton
_container: ServiceContainer | None = None


def get_container() -> ServiceContainer:
    """Return the global container singleton."""
    global _container
    if _container is None:
        _container = ServiceContainer()
    return _container


def reset_container() -> None:
    """Reset the global container (for testing)."""
    global _container
    if _container is not None:
        _container.close()
    _container = None


# ---------------------------------------------------------------------------
# FastAPI dependency factories
# ---------------------------------------------------------------------------


def get_sync_service() -> CostSyncService:
    return get_container().sync_service


def get_connection_service() -> ConnectionService:
    return get_container().connection_service


def get_batch_service() -> BatchJobService:
    return get_container().batch_service


def get_app_settings() -> AppSettings:
    return get_container().settings
