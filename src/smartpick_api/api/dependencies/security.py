from fastapi import Header, HTTPException, status
from loguru import logger

from smartpick_api.core.settings import settings


async def require_internal_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard scheduler-facing endpoints; open when no key is configured (local development)."""

    if not settings.internal_api_key:
        if settings.environment == "production":
            logger.warning("Internal API key not configured; rejecting internal request")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Internal API key not configured",
            )
        return

    if x_api_key != settings.internal_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
