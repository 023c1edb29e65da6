from .rate_limiter import RateLimitDecision, RateLimiter

__all__ = ["RateLimitDecision", "RateLimiter"]
