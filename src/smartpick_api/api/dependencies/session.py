"""Session-aware dependencies for customer and partner APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.db.session import get_session
from smartpick_api.models.user import Partner, User


async def require_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the authenticated user from forwarded session headers."""

    if not session_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )

    try:
        user_id = UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error

    stmt = select(User).where(User.id == user_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session user not found",
        )

    return user


async def require_partner_session(
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> Partner:
    """Resolve the partner business operated by the session user."""

    stmt = select(Partner).where(Partner.user_id == user.id)
    result = await db.execute(stmt)
    partner = result.scalar_one_or_none()
    if partner is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Session user is not a partner",
        )
    return partner
