"""
Redis caching service for availability listings.

CACHING STRATEGY
================

What we cache:
  - Availability responses for one tour over a date range (JSON-serialized)
  - Cache key pattern: "availability:{tour_id}:{start}:{end}:{seats}:{today}"

Invalidation strategy:
  - Any seat change on a tour (booking, release, instance cancel/reinstate,
    schedule change) deletes every key under "availability:{tour_id}:"
  - TTL-based expiry as safety net (REDIS_CACHE_TTL)

  The booking engine never reads from the cache: capacity is always re-checked
  under the instance row lock, so a stale listing can only mislead, never
  overbook.

Redis errors degrade to uncached reads and are logged, never raised.
"""

import json
from datetime import date
from typing import Optional

import redis.asyncio as redis

from tourbooking.core.config import get_settings
from tourbooking.core.logging import get_logger
from tourbooking.core.metrics import record_cache_operation

logger = get_logger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled."""
    global _redis_client

    settings = get_settings()
    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except redis.RedisError as e:
            logger.error("redis_connection_failed", error=str(e))
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def _availability_prefix(tour_id: int) -> str:
    return f"availability:{tour_id}:"


def _make_availability_key(tour_id: int, start: date, end: date, seats: int, today: date) -> str:
    # `today` is part of the key: the booking window moves at midnight
    return f"{_availability_prefix(tour_id)}{start}:{end}:{seats}:{today}"


async def get_cached_availability(
    tour_id: int, start: date, end: date, seats: int, today: date
) -> Optional[list]:
    client = await get_redis()
    if not client:
        return None

    key = _make_availability_key(tour_id, start, end, seats, today)
    try:
        data = await client.get(key)
        if data:
            logger.debug("cache_hit", key=key)
            record_cache_operation("get", hit=True)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
        record_cache_operation("get", hit=False)
    except redis.RedisError as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_availability(
    tour_id: int, start: date, end: date, seats: int, today: date, data: list
) -> None:
    client = await get_redis()
    if not client:
        return

    settings = get_settings()
    key = _make_availability_key(tour_id, start, end, seats, today)
    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.REDIS_CACHE_TTL)
    except redis.RedisError as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_availability_cache(tour_id: int) -> None:
    """
    Drop every cached listing for one tour.
    Uses SCAN to find and delete all keys matching the tour prefix.
    """
    client = await get_redis()
    if not client:
        return

    try:
        deleted = 0
        async for key in client.scan_iter(match=f"{_availability_prefix(tour_id)}*", count=100):
            await client.delete(key)
            deleted += 1
        logger.info("cache_invalidated", tour_id=tour_id, keys_deleted=deleted)
    except redis.RedisError as e:
        logger.error("cache_invalidation_error", tour_id=tour_id, error=str(e))


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}
