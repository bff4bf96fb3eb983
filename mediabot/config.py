"""Runtime configuration loaded from environment variables.

Secrets (bot token, M-Pesa credentials) live in env vars only and are
never logged.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_DEFAULT_WELCOME = "Welcome to our Movie and Series Bot! How can I help you today?"
_DEFAULT_SESSION_IDLE_SECONDS = 1800  # 30 minutes
_DEFAULT_MAX_CONCURRENCY = 16
_DEFAULT_RECONCILE_SECONDS = 300  # 0 disables the pending-payment sweep


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


@dataclass(frozen=True)
class MpesaSettings:
    """Daraja API credentials and endpoints."""

    consumer_key: str = ""
    consumer_secret: str = ""
    passkey: str = ""
    shortcode: str = ""
    callback_url: str = ""
    environment: str = "sandbox"  # sandbox | production

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def is_configured(self) -> bool:
        return all((self.consumer_key, self.consumer_secret, self.passkey, self.shortcode))

    @classmethod
    def from_env(cls) -> MpesaSettings:
        return cls(
            consumer_key=os.environ.get("MPESA_CONSUMER_KEY", ""),
            consumer_secret=os.environ.get("MPESA_CONSUMER_SECRET", ""),
            passkey=os.environ.get("MPESA_PASSKEY", ""),
            shortcode=os.environ.get("MPESA_SHORTCODE", ""),
            callback_url=os.environ.get("MPESA_CALLBACK_URL", ""),
            environment=os.environ.get("MPESA_ENVIRONMENT", "sandbox").lower(),
        )


@dataclass(frozen=True)
class Settings:
    """Top-level application settings."""

    telegram_bot_token: str = ""
    welcome_message: str = _DEFAULT_WELCOME
    database_url: str = ""
    redis_url: str = "redis://localhost:6379/0"
    session_idle_seconds: int = _DEFAULT_SESSION_IDLE_SECONDS
    max_concurrency: int = _DEFAULT_MAX_CONCURRENCY
    reconcile_interval_seconds: int = _DEFAULT_RECONCILE_SECONDS
    log_level: str = "INFO"
    port: int = 8000
    mpesa: MpesaSettings = field(default_factory=MpesaSettings)

    @property
    def storage_backend(self) -> str:
        """``postgres`` when a DATABASE_URL is configured, else ``memory``."""
        return "postgres" if self.database_url else "memory"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN", ""),
            welcome_message=os.environ.get("WELCOME_MESSAGE", "") or _DEFAULT_WELCOME,
            database_url=os.environ.get("DATABASE_URL", ""),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            session_idle_seconds=_env_int(
                "MEDIABOT_SESSION_IDLE_SECONDS", _DEFAULT_SESSION_IDLE_SECONDS
            ),
            max_concurrency=_env_int("MEDIABOT_MAX_CONCURRENCY", _DEFAULT_MAX_CONCURRENCY),
            reconcile_interval_seconds=_env_int(
                "MEDIABOT_RECONCILE_SECONDS", _DEFAULT_RECONCILE_SECONDS
            ),
            log_level=os.environ.get("MEDIABOT_LOG_LEVEL", "INFO").upper(),
            port=_env_int("PORT", 8000),
            mpesa=MpesaSettings.from_env(),
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the process-wide Settings."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
