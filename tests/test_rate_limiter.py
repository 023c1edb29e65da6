from __future__ import annotations

from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from smartpick_api.services.abuse import RateLimiter


class _UnavailableRedis:
    async def incr(self, key: str) -> int:
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_partner_bucket_blocks_after_limit(fake_redis):
    limiter = RateLimiter(fake_redis, partner_limit=2, ip_limit=100, replay_threshold=100, window_seconds=60)
    partner_id = uuid4()

    first = await limiter.check("pickup_confirm", partner_id=partner_id)
    second = await limiter.check("pickup_confirm", partner_id=partner_id)
    third = await limiter.check("pickup_confirm", partner_id=partner_id)

    assert first.allowed and first.remaining == 1
    assert second.allowed and second.remaining == 0
    assert third.allowed is False
    assert third.reason == "partner_limit"
    assert third.retry_after_seconds == 60
    assert fake_redis.expirations[f"ratelimit:pickup_confirm:partner:{partner_id}"] == 60


@pytest.mark.asyncio
async def test_ip_bucket_is_shared_across_partners(fake_redis):
    limiter = RateLimiter(fake_redis, partner_limit=100, ip_limit=1, replay_threshold=100, window_seconds=30)

    allowed = await limiter.check("pickup_confirm", partner_id=uuid4(), client_ip="203.0.113.5")
    blocked = await limiter.check("pickup_confirm", partner_id=uuid4(), client_ip="203.0.113.5")

    assert allowed.allowed is True
    assert blocked.allowed is False
    assert blocked.reason == "ip_limit"
    assert blocked.retry_after_seconds == 30


@pytest.mark.asyncio
async def test_reset_clears_partner_bucket(fake_redis):
    limiter = RateLimiter(fake_redis, partner_limit=1, ip_limit=100, replay_threshold=100, window_seconds=60)
    partner_id = uuid4()

    await limiter.check("pickup_confirm", partner_id=partner_id)
    assert (await limiter.check("pickup_confirm", partner_id=partner_id)).allowed is False

    await limiter.reset("pickup_confirm", partner_id=partner_id)
    assert (await limiter.check("pickup_confirm", partner_id=partner_id)).allowed is True


@pytest.mark.asyncio
async def test_limiter_fails_open_when_redis_is_down():
    limiter = RateLimiter(_UnavailableRedis(), partner_limit=1, ip_limit=1, replay_threshold=1, window_seconds=60)

    decision = await limiter.check("pickup_confirm", partner_id=uuid4(), reference=uuid4())

    assert decision.allowed is True
    assert decision.reason == "fail_open"
