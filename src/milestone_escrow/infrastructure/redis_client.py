"""Redis client for idempotency keys and distributed escrow locks.

Usage:
    from milestone_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from milestone_escrow.config import get_settings
from milestone_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Connect and ping. Called during app startup; a failure is fatal only for the redis lock backend."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---

IDEMPOTENCY_PREFIX = "escrow:create:idempotency:"


def _idempotency_key(key: str) -> str:
    return f"{IDEMPOTENCY_PREFIX}{key}"


async def get_idempotent_result(key: str) -> str | None:
    """Return the stored result for an idempotency key, or None if the key is new."""
    redis = get_redis()
    return await redis.get(_idempotency_key(key))


async def claim_idempotency(key: str) -> bool:
    """Atomically claim an idempotency key.

    Returns True if this caller claimed the key, False if it was already used.
    """
    settings = get_settings()
    redis = get_redis()
    return bool(
        await redis.set(
            _idempotency_key(key),
            "",
            ex=settings.redis_idempotency_ttl_seconds,
            nx=True,
        )
    )


async def set_idempotent_result(key: str, value: str) -> None:
    """Store the result of an idempotent operation with a TTL."""
    settings = get_settings()
    redis = get_redis()
    await redis.set(
        _idempotency_key(key),
        value,
        ex=settings.redis_idempotency_ttl_seconds,
    )


async def release_idempotency(key: str) -> None:
    """Forget a claimed key so a failed operation can be retried."""
    redis = get_redis()
    await redis.delete(_idempotency_key(key))
