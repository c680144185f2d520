# =============================================================================
# Rate Limiter — Redis-Based Per-Client Sliding Window
# =============================================================================
#
# Implements a sliding window counter using Redis sorted sets (ZSET).
# Each request adds an entry with its timestamp as the score. On each
# check, entries older than the window are pruned and the remaining
# count is compared against the limit.
#
# Two buckets per client IP:
#   api     settings.api_rate_limit requests per api_rate_window_seconds
#   upload  settings.upload_rate_limit uploads per upload_rate_window_seconds
#
# DESIGN DECISION: Graceful degradation. If Redis is unavailable, the
# request is allowed and a warning is logged.
#
# Uses Redis db 2 (db 0/1 reserved for Celery).
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from fastapi import HTTPException, Request

from esop_analyzer.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis connection
_redis_client = None


@dataclass(frozen=True)
class RateLimitBucket:
    name: str
    limit: int
    window_seconds: int
    message: str


def api_bucket() -> RateLimitBucket:
    return RateLimitBucket(
        name="api",
        limit=settings.api_rate_limit,
        window_seconds=settings.api_rate_window_seconds,
        message="Too many requests from this IP, please try again later.",
    )


def upload_bucket() -> RateLimitBucket:
    return RateLimitBucket(
        name="upload",
        limit=settings.upload_rate_limit,
        window_seconds=settings.upload_rate_window_seconds,
        message="Too many file uploads from this IP, please try again later.",
    )


def _get_rate_limit_redis():
    """Lazily create and cache the async Redis client for rate limiting."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(
            settings.rate_limit_redis_url,
            decode_responses=True,
        )
    return _redis_client


def client_ip(request: Request) -> str:
    """
    The address a client is limited and audited under.

    X-Forwarded-For is only read when the socket peer is one of
    settings.trusted_proxies; otherwise any client could rotate it.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and peer in settings.trusted_proxies:
        return forwarded.split(",")[0].strip()
    return peer


async def check_rate_limit(ip: str, bucket: RateLimitBucket) -> None:
    """
    Count this request against the client's bucket.

    Raises:
        HTTPException 429: Limit exceeded (includes Retry-After header).

    No-op when rate limiting is disabled or Redis is unavailable.
    """
    if not settings.rate_limit_enabled:
        return

    redis_key = f"ratelimit:{bucket.name}:{ip}"

    try:
        r = _get_rate_limit_redis()
        now = time.time()
        window_start = now - bucket.window_seconds

        pipe = r.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {str(now): now})
        pipe.expire(redis_key, bucket.window_seconds + 10)
        results = await pipe.execute()

        current_count = results[1]

        if current_count >= bucket.limit:
            logger.warning(
                "SECURITY_EVENT event=RATE_LIMIT_EXCEEDED ip=%s bucket=%s limit=%d",
                ip, bucket.name, bucket.limit,
            )
            raise HTTPException(
                status_code=429,
                detail=bucket.message,
                headers={"Retry-After": str(bucket.window_seconds)},
            )

    except HTTPException:
        raise
    except Exception as e:
        logger.warning(
            "Rate limiter unavailable (Redis error): %s. "
            "Allowing request through.",
            e,
        )


async def limit_api(request: Request) -> None:
    """FastAPI dependency for the general API bucket."""
    await check_rate_limit(client_ip(request), api_bucket())


async def limit_upload(request: Request) -> None:
    """FastAPI dependency for the upload bucket."""
    await check_rate_limit(client_ip(request), upload_bucket())
