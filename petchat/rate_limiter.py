"""
Hybrid in-memory + Redis rate limiting utilities
Counts live in memory and are synced to Redis periodically so limits
survive a restart of a single worker when Redis is configured
"""

import logging
import os
import time
from threading import Lock
from typing import Optional

import redis

logger = logging.getLogger(__name__)

# Redis connection
redis_client: Optional[redis.Redis] = None
_last_connect_failure = 0.0

# In-memory cache for rate limiting
# Format: {key: {'count': int, 'reset_time': int, 'last_redis_sync': int}}
memory_cache: dict[str, dict] = {}
cache_lock = Lock()

# Configuration
MEMORY_CACHE_SYNC_INTERVAL = 10  # Sync to Redis every 10 seconds
MEMORY_CACHE_CLEANUP_INTERVAL = 60  # Clean up expired entries every 60 seconds
REDIS_RECONNECT_INTERVAL = 30  # Seconds to wait before retrying a failed connection
last_cleanup_time = 0


def get_redis_client() -> redis.Redis:
    """
    Get or create Redis client
    Supports REDIS_URL or individual REDIS_HOST/REDIS_PORT settings
    """
    global redis_client

    if redis_client is None:
        logger.info("🔄 Initializing Redis connection for rate limiting...")

        redis_url = os.getenv("REDIS_URL")

        if redis_url:
            # Mask password in URL for logging
            if "@" in redis_url:
                url_parts = redis_url.split("@")
                protocol = url_parts[0].split(":")[0]
                masked_url = f"{protocol}:****@{url_parts[1]}"
            else:
                masked_url = "****"
            logger.info(f"📡 Using Redis URL connection: {masked_url}")

            client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        else:
            redis_host = os.getenv("REDIS_HOST", "localhost")
            redis_port = int(os.getenv("REDIS_PORT", "6379"))
            redis_password = os.getenv("REDIS_PASSWORD", None)
            redis_db = int(os.getenv("REDIS_DB", "0"))
            redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"

            logger.info(f"📡 Using Redis at {redis_host}:{redis_port} (db {redis_db})")

            client = redis.Redis(
                host=redis_host,
                port=redis_port,
                password=redis_password,
                db=redis_db,
                ssl=redis_ssl,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )

        try:
            client.ping()
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise
        redis_client = client
        logger.info("Redis connected successfully")

    return redis_client


def get_redis_client_or_none() -> Optional[redis.Redis]:
    """Return the Redis client, or None while Redis is unreachable"""
    global _last_connect_failure

    if redis_client is not None:
        return redis_client
    if time.time() - _last_connect_failure < REDIS_RECONNECT_INTERVAL:
        return None
    try:
        return get_redis_client()
    except Exception:
        _last_connect_failure = time.time()
        logger.warning("⚠️ Redis unavailable - rate limiting runs from memory only")
        return None


def cleanup_expired_cache():
    """Remove expired entries from memory cache"""
    global last_cleanup_time
    current_time = int(time.time())

    if current_time - last_cleanup_time < MEMORY_CACHE_CLEANUP_INTERVAL:
        return

    with cache_lock:
        expired_keys = [
            k for k, v in memory_cache.items() if current_time >= v.get("reset_time", 0)
        ]
        for k in expired_keys:
            del memory_cache[k]

        if expired_keys:
            logger.debug(f"🧹 Cleaned up {len(expired_keys)} expired rate limit entries")

    last_cleanup_time = current_time


def _new_entry(current_time: int, window_seconds: int, client: Optional[redis.Redis], key: str) -> dict:
    if client is not None:
        try:
            redis_count = client.get(key)
            redis_ttl = client.ttl(key)
            if redis_count and redis_ttl > 0:
                return {
                    "count": int(redis_count),
                    "reset_time": current_time + redis_ttl,
                    "last_redis_sync": current_time,
                }
        except Exception as e:
            logger.warning(f"⚠️ Failed to load from Redis, using memory only: {e}")
    return {
        "count": 0,
        "reset_time": current_time + window_seconds,
        "last_redis_sync": current_time,
    }


def check_rate_limit(
    key: str, limit: int, window_seconds: int, client: Optional[redis.Redis] = None
) -> tuple[bool, int, int]:
    """Check if rate limit is exceeded using hybrid in-memory + Redis approach

    Args:
        key: Redis key for this rate limit
        limit: Maximum number of requests allowed
        window_seconds: Time window in seconds
        client: Redis client instance, None for memory-only counting

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds)
    """
    try:
        current_time = int(time.time())

        cleanup_expired_cache()

        with cache_lock:
            if key not in memory_cache:
                memory_cache[key] = _new_entry(current_time, window_seconds, client, key)

            cache_entry = memory_cache[key]

            # Check if window has expired
            if current_time >= cache_entry["reset_time"]:
                cache_entry["count"] = 0
                cache_entry["reset_time"] = current_time + window_seconds
                cache_entry["last_redis_sync"] = 0

            current_count = cache_entry["count"]
            is_allowed = current_count < limit

            if is_allowed:
                cache_entry["count"] += 1

            # Sync to Redis periodically (not on every request!)
            time_since_sync = current_time - cache_entry.get("last_redis_sync", 0)
            if client is not None and time_since_sync >= MEMORY_CACHE_SYNC_INTERVAL:
                try:
                    client.set(key, cache_entry["count"], ex=window_seconds)
                    cache_entry["last_redis_sync"] = current_time
                    logger.debug(f"📡 Synced {key} to Redis: {cache_entry['count']}/{limit}")
                except Exception as e:
                    logger.warning(f"⚠️ Failed to sync to Redis: {e}")

            ttl = cache_entry["reset_time"] - current_time
            return is_allowed, cache_entry["count"], max(0, ttl)

    except Exception as e:
        logger.error(f"❌ Rate limit check failed: {str(e)}")
        # Fail closed - deny request if rate limiting fails
        logger.warning("🔒 Denying request due to rate limiting error (fail-closed mode)")
        return False, limit, 0


class UserRateLimiter:
    """
    Per-user rate limits for chat commands

    Example:
        limiter = UserRateLimiter({"start_chat": (10, 60)})
        if not limiter.allow("start_chat", user_id):
            ...
    """

    def __init__(self, limits: dict[str, tuple[int, int]], key_prefix: str = "chat_rate"):
        self.limits = limits
        self.key_prefix = key_prefix

    def allow(self, scope: str, user_id: str) -> bool:
        if scope not in self.limits:
            return True
        limit, window_seconds = self.limits[scope]
        key = f"{self.key_prefix}:{scope}:{user_id}"
        is_allowed, current_count, _ttl = check_rate_limit(
            key, limit, window_seconds, get_redis_client_or_none()
        )
        if not is_allowed:
            logger.warning(f"🚫 Rate limit EXCEEDED for {key} - {current_count}/{limit} requests used")
        return is_allowed
