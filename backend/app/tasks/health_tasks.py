"""BATCHWORKS Celery tasks for the production health dashboard.

- refresh_production_health_cache: Celery Beat runs every 60s, recomputes the fleet summary.
"""
from __future__ import annotations

import json
import logging

from app.worker import celery_app

logger = logging.getLogger(__name__)


def _sync_redis():
    """Get a sync Redis client for Celery tasks."""
    import redis
    from app.config import get_settings
    settings = get_settings()
    return redis.from_url(settings.REDIS_URL, decode_responses=True)


async def _compute_summary() -> dict:
    """Run on a throwaway engine: each task invocation gets its own event loop."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import NullPool
    from app.config import get_settings
    from app.services.run_health_service import RunHealthService

    engine = create_async_engine(get_settings().DATABASE_URL, poolclass=NullPool)
    try:
        async with async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)() as db:
            return await RunHealthService.compute_fleet_summary(db)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, max_retries=2)
def refresh_production_health_cache(self):
    """Recompute the fleet health summary and store it for the dashboard endpoint."""
    import asyncio
    from app.config import get_settings
    from app.core.redis import PRODUCTION_HEALTH_CACHE_KEY

    settings = get_settings()
    try:
        summary = asyncio.run(_compute_summary())
        r = _sync_redis()
        r.setex(PRODUCTION_HEALTH_CACHE_KEY, settings.HEALTH_CACHE_TTL_SECONDS, json.dumps(summary))
        logger.info(
            "Production health cache refreshed: %d active runs, %d blocked",
            summary["active_runs"], summary["is_blocked"],
        )
        return summary
    except Exception as exc:
        logger.error("Production health refresh failed: %s", exc, exc_info=True)
        raise self.retry(exc=exc)
