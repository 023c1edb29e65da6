"""Redis-backed collaborators for the pickup endpoints."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends
from redis.asyncio import Redis

from smartpick_api.core.settings import settings
from smartpick_api.services.abuse import RateLimiter
from smartpick_api.services.pickups import PickupEventPublisher


@lru_cache
def _redis_client() -> Redis:
    return Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


async def get_redis() -> Redis:
    return _redis_client()


async def get_rate_limiter(redis: Redis = Depends(get_redis)) -> RateLimiter:
    return RateLimiter(redis)


async def get_pickup_publisher(redis: Redis = Depends(get_redis)) -> PickupEventPublisher:
    return PickupEventPublisher(redis)
