import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.ops.db_models import CacheEntry, RateLimitHit
from sitswap.infra.schema import datastore_call
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


async def cache_cleanup(session: AsyncSession, max_rows: int, *, now: datetime | None = None) -> int:
    """Delete up to ``max_rows`` expired cache rows, oldest expiry first."""
    now = now or _now()
    async with datastore_call("cache_entries"):
        keys = (
            await session.scalars(
                select(CacheEntry.key)
                .where(CacheEntry.expires_at < now)
                .order_by(CacheEntry.expires_at.asc())
                .limit(max(0, max_rows))
            )
        ).all()
        if not keys:
            return 0
        result = await session.execute(delete(CacheEntry).where(CacheEntry.key.in_(keys)))
        await session.commit()
    return result.rowcount or 0


async def rate_limit_cleanup(
    session: AsyncSession, max_rows: int, older_than_seconds: int, *, now: datetime | None = None
) -> int:
    """Delete up to ``max_rows`` rate-limit hits older than the retention window."""
    cutoff = (now or _now()) - timedelta(seconds=older_than_seconds)
    async with datastore_call("rate_limit_hits"):
        hit_ids = (
            await session.scalars(
                select(RateLimitHit.hit_id)
                .where(RateLimitHit.hit_at < cutoff)
                .order_by(RateLimitHit.hit_at.asc())
                .limit(max(0, max_rows))
            )
        ).all()
        if not hit_ids:
            return 0
        result = await session.execute(delete(RateLimitHit).where(RateLimitHit.hit_id.in_(hit_ids)))
        await session.commit()
    return result.rowcount or 0


async def run_housekeeping(session: AsyncSession, app_settings: Settings = settings) -> dict[str, int]:
    cache_deleted = await cache_cleanup(session, app_settings.housekeeping_cache_max_rows)
    rate_limits_deleted = await rate_limit_cleanup(
        session,
        app_settings.housekeeping_rate_limit_max_rows,
        app_settings.housekeeping_rate_limit_retention_seconds,
    )
    result = {"cache_deleted": cache_deleted, "rate_limits_deleted": rate_limits_deleted}
    logger.info("housekeeping_complete", extra={"extra": result})
    return result
