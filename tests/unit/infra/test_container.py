"""Unit tests for settings loading and container wiring."""

from __future__ import annotations

import pytest

from domain.models.billing import AnomalySeverity
from infrastructure import container as container_module
from infrastructure.container import ServiceContainer, get_container, parse_min_severity, reset_container
from infrastructure.database.repository import SqlConnectionRepository
from infrastructure.settings import AppSettings, get_settings


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("APP_DATABASE_URL", raising=False)
        settings = AppSettings()
        assert settings.database_url == ""
        assert settings.sync_cooldown_seconds == 120
        assert settings.reservation_stale_minutes == 15
        assert settings.auto_sync_lock_ttl_minutes == 15
        assert settings.weekly_report_lock_ttl_minutes == 20

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("APP_SCHEDULER_SECRET", "from-env")
        monkeypatch.setenv("app_top_dimensions", "5")
        settings = get_settings()
        assert settings.scheduler_secret == "from-env"
        assert settings.top_dimensions == 5


class TestParseMinSeverity:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("info", AnomalySeverity.INFO),
            (" CRITICAL ", AnomalySeverity.CRITICAL),
            ("loud", AnomalySeverity.WARNING),
            ("", AnomalySeverity.WARNING),
        ],
    )
    def test_values(self, raw, expected):
        assert parse_min_severity(raw) == expected


class TestServiceContainer:

    def test_memory_storage_without_database_url(self, provider):
        container = ServiceContainer(AppSettings(database_url=""), provider=provider)
        assert container.engine is None
        assert container.sync_service is not None
        container.bootstrap_storage()
        container.close()

    def test_sql_storage_is_migrated(self, tmp_path, provider):
        url = f"sqlite:///{tmp_path / 'sentinel.db'}"
        container = ServiceContainer(AppSettings(database_url=url), provider=provider)
        try:
            assert isinstance(container.connection_repo, SqlConnectionRepository)
            container.bootstrap_storage()
            assert container.connection_repo.get("nobody") is None
        finally:
            container.close()

    def test_singleton_and_reset(self, monkeypatch, provider):
        monkeypatch.setattr(container_module, "_container", None)
        monkeypatch.setenv("APP_DATABASE_URL", "")
        first = get_container()
        assert get_container() is first
        reset_container()
        assert container_module._container is None
