"""Celery refresh of the production health cache."""
import json

from app.core.redis import PRODUCTION_HEALTH_CACHE_KEY
from app.tasks import health_tasks


class RecordingRedis:
    def __init__(self):
        self.calls = []

    def setex(self, key, ttl, value):
        self.calls.append((key, ttl, value))


def test_refresh_writes_summary_to_cache(monkeypatch):
    summary = {"active_runs": 2, "has_required_skips": 1, "has_stalled_step": 0, "is_blocked": 1,
               "flagged_runs": [], "generated_at": "2026-01-01T00:00:00+00:00"}
    fake = RecordingRedis()

    async def fake_compute():
        return summary

    monkeypatch.setattr(health_tasks, "_compute_summary", fake_compute)
    monkeypatch.setattr(health_tasks, "_sync_redis", lambda: fake)

    result = health_tasks.refresh_production_health_cache.apply().get()

    assert result == summary
    key, ttl, value = fake.calls[0]
    assert key == PRODUCTION_HEALTH_CACHE_KEY
    assert ttl == 60
    assert json.loads(value) == summary
