"""
Tests for environment-driven settings.
"""

import pytest

from task_tracker.config import get_settings, load_settings, reset_settings

ENV_VARS = [
    "TASK_TRACKER_DB_PATH", "DATABASE_PATH", "TASK_TRACKER_LOG_LEVEL", "TASK_TRACKER_PORT",
    "TASK_TRACKER_DEFAULT_PAGE_SIZE", "TASK_TRACKER_MAX_PAGE_SIZE", "TASK_TRACKER_SMTP_HOST",
    "TASK_TRACKER_SMTP_FROM", "TASK_TRACKER_SMTP_STARTTLS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


def test_defaults():
    settings = load_settings()
    assert settings.db_path == "task_tracker.db"
    assert settings.log_level == "INFO"
    assert settings.port == 8000
    assert (settings.default_page_size, settings.max_page_size) == (10, 100)
    assert settings.email_enabled is False


def test_overrides(monkeypatch):
    monkeypatch.setenv("TASK_TRACKER_DB_PATH", "/tmp/tasks.db")
    monkeypatch.setenv("TASK_TRACKER_LOG_LEVEL", "debug")
    monkeypatch.setenv("TASK_TRACKER_PORT", "9001")
    monkeypatch.setenv("TASK_TRACKER_SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("TASK_TRACKER_SMTP_FROM", "tasks@example.com")
    monkeypatch.setenv("TASK_TRACKER_SMTP_STARTTLS", "no")

    settings = load_settings()

    assert settings.db_path == "/tmp/tasks.db"
    assert settings.log_level == "DEBUG"
    assert settings.port == 9001
    assert settings.email_enabled is True
    assert settings.smtp_starttls is False


def test_database_path_fallback(monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", "legacy.db")
    assert load_settings().db_path == "legacy.db"


def test_invalid_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("TASK_TRACKER_PORT", "eighty")
    monkeypatch.setenv("TASK_TRACKER_MAX_PAGE_SIZE", "20")
    monkeypatch.setenv("TASK_TRACKER_DEFAULT_PAGE_SIZE", "50")

    settings = load_settings()

    assert settings.port == 8000
    assert settings.max_page_size == 20
    assert settings.default_page_size == 10


def test_get_settings_is_cached(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("TASK_TRACKER_PORT", "9100")
    assert get_settings() is first
    reset_settings()
    assert get_settings().port == 9100
