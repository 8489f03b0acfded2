"""
Fixed-window rate limiting for the unauthenticated OTP routes.
Counts live in process memory; when REDIS_URL is set they are also
synced to Redis so several workers share one window.
"""

import logging
import time
from threading import Lock
from typing import Optional

import redis
from fastapi import HTTPException, Request

from .config import REDIS_URL

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None

# {key: {"count": int, "reset_time": int, "last_redis_sync": int}}
memory_cache: dict[str, dict] = {}
cache_lock = Lock()

MEMORY_CACHE_SYNC_INTERVAL = 10
MEMORY_CACHE_CLEANUP_INTERVAL = 60
last_cleanup_time = 0


def get_redis_client() -> Optional[redis.Redis]:
    """Return the shared Redis client, or None when running memory-only"""
    global redis_client

    if redis_client is None and REDIS_URL:
        masked_url = REDIS_URL.split("@")[-1] if "@" in REDIS_URL else "****"
        logger.info(f"📡 Connecting rate limiter to Redis at {masked_url}")
        redis_client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
    return redis_client


def cleanup_expired_cache() -> None:
    global last_cleanup_time
    current_time = int(time.time())
    if current_time - last_cleanup_time < MEMORY_CACHE_CLEANUP_INTERVAL:
        return

    with cache_lock:
        expired = [k for k, v in memory_cache.items() if current_time >= v["reset_time"]]
        for k in expired:
            del memory_cache[k]
    if expired:
        logger.debug(f"🧹 Cleaned up {len(expired)} expired rate limit entries")
    last_cleanup_time = current_time


def _load_entry(key: str, window_seconds: int, client: Optional[redis.Redis], now: int) -> dict:
    if client is not None:
        try:
            count = client.get(key)
            ttl = client.ttl(key)
            if count and ttl > 0:
                return {"count": int(count), "reset_time": now + ttl, "last_redis_sync": now}
        except redis.RedisError as e:
            logger.warning(f"⚠️ Failed to load {key} from Redis, using memory only: {e}")
    return {"count": 0, "reset_time": now + window_seconds, "last_redis_sync": now}


def check_rate_limit(
    key: str, limit: int, window_seconds: int, client: Optional[redis.Redis] = None
) -> tuple[bool, int, int]:
    """
    Count one request against key.

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds)
    """
    now = int(time.time())
    cleanup_expired_cache()

    with cache_lock:
        entry = memory_cache.get(key)
        if entry is None:
            entry = memory_cache[key] = _load_entry(key, window_seconds, client, now)

        if now >= entry["reset_time"]:
            entry["count"] = 0
            entry["reset_time"] = now + window_seconds
            entry["last_redis_sync"] = 0

        is_allowed = entry["count"] < limit
        if is_allowed:
            entry["count"] += 1

        if client is not None and now - entry["last_redis_sync"] >= MEMORY_CACHE_SYNC_INTERVAL:
            try:
                client.set(key, entry["count"], ex=window_seconds)
                entry["last_redis_sync"] = now
            except redis.RedisError as e:
                logger.warning(f"⚠️ Failed to sync {key} to Redis: {e}")

        return is_allowed, entry["count"], max(0, entry["reset_time"] - now)


def enforce_rate_limit(key: str, limit: int, window_seconds: int) -> None:
    """Raise 429 once key has used up its window"""
    is_allowed, count, ttl = check_rate_limit(key, limit, window_seconds, get_redis_client())
    if not is_allowed:
        logger.warning(f"🚫 Rate limit exceeded for {key.split(':')[0]} ({count}/{limit})")
        raise HTTPException(
            status_code=429,
            detail={
                "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                "retry_after": ttl,
            },
            headers={"Retry-After": str(ttl)},
        )


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_rate_limiter(limit: int, window_seconds: int, key_prefix: str):
    """
    Build a per-IP rate limit dependency.

    Example usage:
        rate_limit_otp = create_rate_limiter(limit=10, window_seconds=3600, key_prefix="otp")

        @router.post("/send")
        async def send(_: None = Depends(rate_limit_otp)):
            ...
    """

    async def rate_limiter(request: Request) -> None:
        enforce_rate_limit(f"{key_prefix}:{client_ip(request)}", limit, window_seconds)

    return rate_limiter
