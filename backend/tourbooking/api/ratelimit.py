"""
Per-client rate limit on the public booking endpoint.

GCRA (generic cell rate algorithm) keyed by client IP: a client may spend
BOOKING_RATE_LIMIT_ATTEMPTS attempts at once, and one attempt comes back
every WINDOW / ATTEMPTS seconds. The decision runs as one Lua script, so
concurrent workers share a single theoretical arrival time (TAT) per client.

Redis being disabled or unreachable lets the request through.
"""

import math
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import redis.asyncio as redis
from fastapi import Request, Response

from tourbooking.core.config import get_settings
from tourbooking.core.exceptions import RateLimitExceeded
from tourbooking.core.logging import get_logger
from tourbooking.core.metrics import record_rate_limit_decision
from tourbooking.services.cache_service import get_redis

logger = get_logger(__name__)

BUCKET = "booking"
KEY_PREFIX = "ratelimit:booking:"

# KEYS[1] = tat key
# ARGV = now_ms, interval_ms, limit
# returns {allowed, retry_after_ms, remaining, reset_ms}
GCRA_LUA = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local interval_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local tat_ms = tonumber(redis.call('GET', key) or now_ms)
if tat_ms < now_ms then
  tat_ms = now_ms
end

local allow_at_ms = tat_ms - (limit - 1) * interval_ms
if now_ms < allow_at_ms then
  return {0, allow_at_ms - now_ms, 0, tat_ms}
end

local new_tat_ms = tat_ms + interval_ms
redis.call('SET', key, new_tat_ms, 'PX', new_tat_ms - now_ms)
local remaining = math.floor((now_ms + limit * interval_ms - new_tat_ms) / interval_ms)
return {1, 0, remaining, new_tat_ms}
"""


@dataclass
class Decision:
    allowed: bool
    retry_after_s: float
    remaining: int
    limit: int
    reset_epoch_s: float


def gcra_decide(
    now_s: float,
    last_tat_s: Optional[float],
    interval_s: float,
    limit: int,
) -> Tuple[Optional[float], Decision]:
    """
    Pure form of GCRA_LUA.

    Returns (tat to store, decision). A refused request leaves the stored
    TAT unchanged.
    """
    tat = max(last_tat_s if last_tat_s is not None else now_s, now_s)
    allow_at = tat - (limit - 1) * interval_s
    if now_s < allow_at:
        return last_tat_s, Decision(False, allow_at - now_s, 0, limit, tat)

    new_tat = tat + interval_s
    remaining = math.floor((now_s + limit * interval_s - new_tat) / interval_s + 1e-9)
    return new_tat, Decision(True, 0.0, remaining, limit, new_tat)


def resolve_identity(request: Request) -> str:
    client = getattr(request, "client", None)
    ip = getattr(client, "host", None) if client else None
    if not ip:
        ip = request.headers.get("x-forwarded-for", "unknown").split(",")[0].strip()
    return f"ip:{ip}"


def set_rate_headers(response: Response, decision: Decision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(decision.remaining, 0))
    response.headers["X-RateLimit-Reset"] = str(int(decision.reset_epoch_s))


async def booking_rate_limit(request: Request, response: Response) -> None:
    """FastAPI dependency guarding POST /bookings."""
    settings = get_settings()
    if not settings.BOOKING_RATE_LIMIT_ENABLED:
        return

    client = await get_redis()
    if client is None:
        return

    identity = resolve_identity(request)
    limit = settings.BOOKING_RATE_LIMIT_ATTEMPTS
    interval_ms = settings.BOOKING_RATE_LIMIT_WINDOW_SECONDS * 1000 // limit
    try:
        allowed, retry_after_ms, remaining, reset_ms = await client.eval(
            GCRA_LUA, 1, f"{KEY_PREFIX}{identity}", int(time.time() * 1000), interval_ms, limit
        )
    except redis.RedisError as e:
        logger.warning("rate_limit_unavailable", bucket=BUCKET, error=str(e))
        record_rate_limit_decision(BUCKET, "error")
        return

    decision = Decision(
        allowed=bool(int(allowed)),
        retry_after_s=int(retry_after_ms) / 1000.0,
        remaining=int(remaining),
        limit=limit,
        reset_epoch_s=int(reset_ms) / 1000.0,
    )
    set_rate_headers(response, decision)

    if decision.allowed:
        record_rate_limit_decision(BUCKET, "allowed")
        return

    record_rate_limit_decision(BUCKET, "blocked")
    retry_after_s = max(1, math.ceil(decision.retry_after_s))
    logger.warning("booking_rate_limited", identity=identity, retry_after=retry_after_s)
    raise RateLimitExceeded(retry_after_s)
