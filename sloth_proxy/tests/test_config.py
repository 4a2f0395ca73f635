"""
Tests for settings and the batch scheduler.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from sloth_proxy.config import Settings
from sloth_proxy.pipeline import BatchReport
from sloth_proxy.scheduler import JOB_ID, BatchScheduler


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, monkeypatch):
        for name in ("PORT", "CACHE_TTL_MS", "WAIT_UNTIL", "FEED_ESCAPING", "RENDER_RETRIES"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)

        assert settings.port == 8080
        assert settings.cache_ttl == 300.0
        assert settings.cache_max == 200
        assert settings.extract_cache_ttl == 120.0
        assert settings.wait_until == "domcontentloaded"
        assert settings.feed_escaping == "full"
        assert settings.render_retries == 2
        assert (settings.retry_min_delay, settings.retry_max_delay) == (0.5, 1.5)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CACHE_TTL_MS", "60000")
        monkeypatch.setenv("WAIT_UNTIL", "NetworkIdle")
        monkeypatch.setenv("ALLOW_ORIGIN", "https://a.example.com, https://b.example.com")
        monkeypatch.setenv("EVASION", "true")

        settings = Settings(_env_file=None)

        assert settings.cache_ttl == 60.0
        assert settings.wait_until == "networkidle"
        assert settings.allowed_origins == ["https://a.example.com", "https://b.example.com"]
        assert settings.evasion is True

    @pytest.mark.parametrize("field,value", [
        ("wait_until", "commit-ish"),
        ("feed_escaping", "none"),
        ("schedule_hours", "6,25"),
        ("schedule_hours", "six"),
        ("cache_max", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_schedule_hours_list(self):
        assert Settings(_env_file=None, schedule_hours="6, 18").schedule_hours_list == [6, 18]

    def test_remote_registry_needs_url_and_key(self):
        assert not Settings(_env_file=None, supabase_url="https://p.supabase.co", supabase_anon_key=None).has_remote_registry
        assert Settings(
            _env_file=None,
            supabase_url="https://p.supabase.co",
            supabase_anon_key="anon",
        ).has_remote_registry


class TestBatchScheduler:
    """Tests for BatchScheduler."""

    def test_job_runs_batch(self):
        pipeline = MagicMock()
        pipeline.run_batch = AsyncMock(return_value=BatchReport(updated=MagicMock(), results=[{"ok": True}]))

        asyncio.run(BatchScheduler(pipeline, [6, 18])._run_job())

        pipeline.run_batch.assert_awaited_once()

    def test_job_failure_is_contained(self):
        pipeline = MagicMock()
        pipeline.run_batch = AsyncMock(side_effect=RuntimeError("registry down"))

        asyncio.run(BatchScheduler(pipeline, [6])._run_job())

    def test_start_schedules_job_and_stop(self):
        async def scenario():
            scheduler = BatchScheduler(MagicMock(), [6, 18])
            scheduler.start()
            job = scheduler.scheduler.get_job(JOB_ID)
            next_run = scheduler.get_next_run()
            scheduler.stop()
            return job, next_run, scheduler

        job, next_run, scheduler = asyncio.run(scenario())

        assert job is not None
        assert next_run is not None
        assert next_run.hour in (6, 18)
        assert next_run.minute == 0
        assert scheduler._running is False
