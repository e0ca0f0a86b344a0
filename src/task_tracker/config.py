"""
Runtime configuration loaded from environment variables.

Every setting has a default so the service starts with no environment at all.
Malformed numeric values fall back to their default with a warning.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "TASK_TRACKER"


def _key(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}: {raw!r}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    logger.warning(f"Ignoring invalid boolean for {name}: {raw!r}")
    return default


@dataclass(frozen=True)
class Settings:
    """Service settings; see ``load_settings`` for the environment variables."""

    db_path: str = "task_tracker.db"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    default_page_size: int = 10
    max_page_size: int = 100
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: Optional[str] = None
    smtp_starttls: bool = True

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_from)


def load_settings() -> Settings:
    """
    Build Settings from the environment.

    Environment variables:
    - TASK_TRACKER_DB_PATH (falls back to DATABASE_PATH, default task_tracker.db)
    - TASK_TRACKER_LOG_LEVEL (default INFO)
    - TASK_TRACKER_HOST / TASK_TRACKER_PORT (default 0.0.0.0:8000)
    - TASK_TRACKER_DEFAULT_PAGE_SIZE (default 10), TASK_TRACKER_MAX_PAGE_SIZE (default 100)
    - TASK_TRACKER_SMTP_HOST, _SMTP_PORT (587), _SMTP_USERNAME, _SMTP_PASSWORD,
      _SMTP_FROM, _SMTP_STARTTLS (true); email is disabled without host and from
    """
    max_page_size = max(1, _env_int(_key("MAX_PAGE_SIZE"), 100))
    default_page_size = _env_int(_key("DEFAULT_PAGE_SIZE"), 10)
    if not 1 <= default_page_size <= max_page_size:
        default_page_size = min(10, max_page_size)

    return Settings(
        db_path=_env_str(_key("DB_PATH")) or _env_str("DATABASE_PATH", "task_tracker.db"),
        log_level=(_env_str(_key("LOG_LEVEL"), "INFO") or "INFO").upper(),
        host=_env_str(_key("HOST"), "0.0.0.0"),
        port=_env_int(_key("PORT"), 8000),
        default_page_size=default_page_size,
        max_page_size=max_page_size,
        smtp_host=_env_str(_key("SMTP_HOST")),
        smtp_port=_env_int(_key("SMTP_PORT"), 587),
        smtp_username=_env_str(_key("SMTP_USERNAME")),
        smtp_password=_env_str(_key("SMTP_PASSWORD")),
        smtp_from=_env_str(_key("SMTP_FROM")),
        smtp_starttls=_env_bool(_key("SMTP_STARTTLS"), True),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (primarily for testing)."""
    global _settings
    _settings = None
