"""Tests for settings parsing, backend selection and the Celery schedule."""

from abuse_control.config import Settings, get_settings
from abuse_control.utils.cache import CacheService, MemoryCache, build_cache
from abuse_control.utils.database import _get_database_url


def test_list_settings_are_parsed():
    settings = Settings(QUOTA_WARNING_THRESHOLDS="90, 80,", AUTO_SUSPEND_ENVIRONMENTS="production, staging")
    assert settings.quota_warning_thresholds_list == [80, 90]
    assert settings.auto_suspend_environments_list == ["production", "staging"]


def test_cache_backend_selection(monkeypatch):
    monkeypatch.setenv("CACHE_BACKEND", " Memory ")
    get_settings.cache_clear()
    assert get_settings().CACHE_BACKEND == "memory"
    assert isinstance(build_cache(), MemoryCache)

    monkeypatch.setenv("CACHE_BACKEND", "redis")
    get_settings.cache_clear()
    assert isinstance(build_cache(), CacheService)


def test_database_url_uses_async_drivers():
    assert _get_database_url("postgresql://db:5432/abuse") == "postgresql+asyncpg://db:5432/abuse"
    assert _get_database_url("sqlite:///tmp/abuse.db") == "sqlite+aiosqlite:///tmp/abuse.db"
    assert _get_database_url("postgresql+asyncpg://db/abuse") == "postgresql+asyncpg://db/abuse"


def test_beat_schedule_covers_every_job():
    from abuse_control.workers import tasks  # noqa: F401 registers the tasks
    from abuse_control.workers.celery_app import celery_app

    schedule = celery_app.conf.beat_schedule
    assert schedule["suspension-check"]["schedule"] == 900.0
    assert schedule["process-notification-queue"]["schedule"] == 60.0
    for name in ("spike-detection", "error-rate-detection", "pattern-detection"):
        assert schedule[name]["schedule"] == 3600.0

    registered = set(celery_app.tasks.keys())
    for entry in schedule.values():
        assert entry["task"] in registered
