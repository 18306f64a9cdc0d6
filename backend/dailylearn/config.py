"""
Runtime configuration for DailyLearn.

All settings come from environment variables (a local .env file is loaded
by main.py via python-dotenv before anything else is imported).
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Application settings resolved from the environment."""

    # Database
    database_url: str = "sqlite:///./dailylearn.db"
    slow_query_threshold_ms: int = 100

    # OpenAI
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4"
    openai_timeout_seconds: float = 60.0

    # Web Push (VAPID)
    vapid_private_key: Optional[str] = None
    vapid_public_key: Optional[str] = None
    vapid_email: str = "mailto:admin@dailylearn.app"
    push_timeout_seconds: float = 10.0
    push_batch_limit: int = 500

    # Nightly answer generation
    ai_batch_size: int = 10
    ai_batch_delay_seconds: float = 2.0

    # Scheduling
    app_tz: str = "UTC"
    enable_scheduler: bool = True

    # Admin + monitoring
    admin_api_key: Optional[str] = None
    sentry_dsn: Optional[str] = None
    environment: str = "development"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL", cls.database_url)
        # Railway/Heroku hand out postgres:// but SQLAlchemy requires postgresql://
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)

        return cls(
            database_url=database_url,
            slow_query_threshold_ms=_env_int("SLOW_QUERY_THRESHOLD_MS", cls.slow_query_threshold_ms),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            openai_timeout_seconds=_env_float("OPENAI_TIMEOUT_SECONDS", cls.openai_timeout_seconds),
            vapid_private_key=os.getenv("VAPID_PRIVATE_KEY") or None,
            vapid_public_key=os.getenv("VAPID_PUBLIC_KEY") or None,
            vapid_email=os.getenv("VAPID_EMAIL", cls.vapid_email),
            push_timeout_seconds=_env_float("PUSH_TIMEOUT_SECONDS", cls.push_timeout_seconds),
            push_batch_limit=max(1, _env_int("PUSH_BATCH_LIMIT", cls.push_batch_limit)),
            ai_batch_size=max(1, _env_int("AI_BATCH_SIZE", cls.ai_batch_size)),
            ai_batch_delay_seconds=max(0.0, _env_float("AI_BATCH_DELAY_SECONDS", cls.ai_batch_delay_seconds)),
            app_tz=os.getenv("APP_TZ") or cls.app_tz,
            enable_scheduler=_env_bool("ENABLE_SCHEDULER", cls.enable_scheduler),
            admin_api_key=os.getenv("ADMIN_API_KEY") or None,
            sentry_dsn=os.getenv("SENTRY_DSN") or None,
            environment=os.getenv("ENVIRONMENT", cls.environment),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings (useful for testing or after env changes)."""
    global _settings
    _settings = None
