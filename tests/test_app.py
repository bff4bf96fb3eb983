"""Tests for configuration loading and application wiring."""

from __future__ import annotations

import os
from unittest.mock import patch

from fastapi.testclient import TestClient

from mediabot.app import build_services, create_app
from mediabot.catalog.postgres import PostgresCatalog
from mediabot.catalog.store import InMemoryCatalog
from mediabot.config import MpesaSettings, Settings, get_settings, reset_settings
from mediabot.ledger.postgres import PostgresLedger


class TestSettings:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()
        assert settings.storage_backend == "memory"
        assert settings.session_idle_seconds == 1800
        assert settings.mpesa.base_url == "https://sandbox.safaricom.co.ke"
        assert settings.mpesa.is_configured is False

    def test_from_env(self):
        env = {
            "DATABASE_URL": "postgresql://bot@db/media",
            "MEDIABOT_SESSION_IDLE_SECONDS": "600",
            "MEDIABOT_MAX_CONCURRENCY": "not-a-number",
            "MEDIABOT_LOG_LEVEL": "debug",
            "MPESA_ENVIRONMENT": "Production",
            "MPESA_CONSUMER_KEY": "k",
            "MPESA_CONSUMER_SECRET": "s",
            "MPESA_PASSKEY": "p",
            "MPESA_SHORTCODE": "174379",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()
        assert settings.storage_backend == "postgres"
        assert settings.session_idle_seconds == 600
        assert settings.max_concurrency == 16
        assert settings.log_level == "DEBUG"
        assert settings.mpesa.base_url == "https://api.safaricom.co.ke"
        assert settings.mpesa.is_configured is True

    def test_singleton_reset(self):
        reset_settings()
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first
        reset_settings()


class TestWiring:
    def test_memory_backend(self):
        services = build_services(Settings())
        assert isinstance(services.catalog, InMemoryCatalog)
        assert services.engine is not None

    def test_postgres_backend(self):
        services = build_services(Settings(database_url="postgresql://bot@db/media"))
        assert isinstance(services.catalog, PostgresCatalog)
        assert isinstance(services.ledger, PostgresLedger)

    def test_lifespan_starts_and_stops(self):
        settings = Settings(mpesa=MpesaSettings())
        app = create_app(settings)
        with TestClient(app) as client:
            assert client.get("/health").json()["status"] == "ok"
        assert app.state.services.router.pending == 0
