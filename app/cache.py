import json
from datetime import date
from uuid import UUID

from loguru import logger
from redis.asyncio import Redis

from app.settings import REDIS_URL

_redis: Redis | None = None
CALENDAR_TTL = 60  # 1 minute


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def _calendar_key(entry_id: UUID, start: date, end: date) -> str:
    return f"calendar:{entry_id}:{start.isoformat()}:{end.isoformat()}"


def _calendar_pattern(entry_id: UUID) -> str:
    return f"calendar:{entry_id}:*"


async def get_calendar_cache(entry_id: UUID, start: date, end: date) -> list | None:
    try:
        data = await get_redis().get(_calendar_key(entry_id, start, end))
        return json.loads(data) if data else None
    except Exception:
        logger.warning("Redis get failed, skipping calendar cache", exc_info=True)
        return None


async def set_calendar_cache(
    entry_id: UUID, start: date, end: date, days: list
) -> None:
    try:
        await get_redis().setex(
            _calendar_key(entry_id, start, end), CALENDAR_TTL, json.dumps(days)
        )
    except Exception:
        logger.warning("Redis set failed, skipping calendar cache", exc_info=True)


async def invalidate_calendar_cache(entry_id: UUID) -> None:
    """Drop every cached range of one inventory entry."""
    try:
        redis = get_redis()
        keys = [key async for key in redis.scan_iter(match=_calendar_pattern(entry_id))]
        if keys:
            await redis.delete(*keys)
    except Exception:
        logger.warning("Redis invalidate failed for calendar cache", exc_info=True)
