"""Redis fixed-window rate limiting and replay-storm detection."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from smartpick_api.core.settings import settings


@dataclass(slots=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None = None
    reason: str | None = None


class RateLimiter:
    """Per-identity counters guarding state-changing endpoints.

    Counting failures fail open: a Redis outage lets requests through because
    the reservation CAS, not the limiter, protects the ledger.
    """

    def __init__(
        self,
        redis_client: Redis | None = None,
        *,
        partner_limit: int | None = None,
        ip_limit: int | None = None,
        replay_threshold: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        self._redis = redis_client or Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._partner_limit = partner_limit or settings.pickup_rate_limit_per_minute
        self._ip_limit = ip_limit or settings.pickup_ip_rate_limit_per_minute
        self._replay_threshold = replay_threshold or settings.pickup_replay_threshold
        self._window_seconds = window_seconds or settings.rate_limit_window_seconds

    @staticmethod
    def _partner_key(action: str, partner_id: UUID | str) -> str:
        return f"ratelimit:{action}:partner:{partner_id}"

    @staticmethod
    def _ip_key(action: str, client_ip: str) -> str:
        return f"ratelimit:{action}:ip:{client_ip}"

    @staticmethod
    def _replay_key(action: str, reference: UUID | str) -> str:
        return f"replay:{action}:{reference}"

    async def check(
        self,
        action: str,
        *,
        partner_id: UUID | str,
        reference: UUID | str | None = None,
        client_ip: str | None = None,
    ) -> RateLimitDecision:
        """Count one attempt against every applicable bucket and return the strictest result."""

        buckets: list[tuple[str, int, str]] = [
            (self._partner_key(action, partner_id), self._partner_limit, "partner_limit"),
        ]
        if client_ip:
            buckets.append((self._ip_key(action, client_ip), self._ip_limit, "ip_limit"))
        if reference is not None:
            buckets.append((self._replay_key(action, reference), self._replay_threshold, "replay_storm"))

        decision = RateLimitDecision(allowed=True, limit=self._partner_limit, remaining=self._partner_limit)
        for key, limit, reason in buckets:
            try:
                count, ttl = await self._hit(key)
            except RedisError as exc:
                logger.warning("Rate limiter unavailable; allowing request", key=key, error=str(exc))
                return RateLimitDecision(allowed=True, limit=limit, remaining=limit, reason="fail_open")

            remaining = max(limit - count, 0)
            if count > limit:
                retry_after = ttl if ttl and ttl > 0 else self._window_seconds
                logger.warning(
                    "Rate limit exceeded",
                    key=key,
                    count=count,
                    limit=limit,
                    reason=reason,
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after_seconds=retry_after,
                    reason=reason,
                )
            if reason == "partner_limit":
                decision.remaining = remaining
        return decision

    async def reset(self, action: str, *, partner_id: UUID | str) -> None:
        await self._redis.delete(self._partner_key(action, partner_id))

    async def _hit(self, key: str) -> tuple[int, int]:
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, self._window_seconds)
            return count, self._window_seconds
        ttl = await self._redis.ttl(key)
        return count, int(ttl) if ttl is not None else self._window_seconds
