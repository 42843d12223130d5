"""BATCHWORKS reports endpoints: production health dashboard."""
import json
import logging

from fastapi import APIRouter, Depends, Query
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUser, get_db, require_permission
from app.config import get_settings
from app.core.rbac import PERM_HEALTH_VIEW
from app.core.redis import PRODUCTION_HEALTH_CACHE_KEY, get_redis
from app.services.run_health_service import RunHealthService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/production-health")
async def get_production_health(
    refresh: bool = Query(False, description="Bypass the cache"),
    user: CurrentUser = Depends(require_permission(PERM_HEALTH_VIEW)),
    db: AsyncSession = Depends(get_db),
):
    """Fleet counts of runs with required skips, stalled steps or blocks. Redis-cached."""
    settings = get_settings()
    r = await get_redis() if settings.HEALTH_CACHE_ENABLED else None

    if r is not None and not refresh:
        try:
            cached = await r.get(PRODUCTION_HEALTH_CACHE_KEY)
        except RedisError as exc:
            logger.warning("Production health cache read failed: %s", exc)
            cached = None
        if cached:
            return {"data": json.loads(cached), "error": None, "meta": {"cached": True}}

    data = await RunHealthService.get_fleet_summary(db, user)
    if r is not None:
        try:
            await r.setex(PRODUCTION_HEALTH_CACHE_KEY, settings.HEALTH_CACHE_TTL_SECONDS, json.dumps(data))
        except RedisError as exc:
            logger.warning("Production health cache write failed: %s", exc)
    return {"data": data, "error": None, "meta": {"cached": False}}
