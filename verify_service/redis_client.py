"""
Process-wide Redis connection backing the sliding-window rate limiter.
"""

from fastapi import Request
from redis.asyncio import Redis, from_url

from verify_service.settings import settings

_redis: Redis | None = None


def redis_url(cfg=settings) -> str:
    if cfg.REDIS_URL:
        return str(cfg.REDIS_URL)
    return f"redis://{cfg.REDIS_HOST}:{cfg.REDIS_PORT}/{cfg.REDIS_DB}"


async def init_redis(cfg=settings) -> Redis:
    """Socket timeouts bound every limiter round trip; the limiter fails open past them."""
    global _redis
    if _redis is None:
        _redis = from_url(
            redis_url(cfg),
            decode_responses=True,
            socket_timeout=cfg.EXTERNAL_CALL_TIMEOUT_SECONDS,
            socket_connect_timeout=cfg.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def get_redis(request: Request) -> Redis:
    client = getattr(request.app.state, "redis", None)
    if client is not None:
        return client
    return await init_redis(getattr(request.app.state, "settings", settings))
