"""
FastAPI dependency resolving the bearer token into an Actor

Usage:
    @router.post("/{delivery_id}/claim")
    async def claim(
        delivery_id: int,
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        ...
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, verify_token
from marketplace.core.logging import get_logger
from marketplace.db.database import get_db
from marketplace.db.models.user import User

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """
    Decode the token and check the account still exists and is active.

    The role comes from the stored user, not the token, so a role change
    takes effect without waiting for the token to expire.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    actor = verify_token(credentials.credentials)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await db.execute(select(User).where(User.id == actor.user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        logger.warning(
            "API access denied - user inactive",
            extra_data={
                "user_id": actor.user_id,
                "user_found": user is not None,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is not active",
        )

    return Actor(user_id=user.id, role=user.role)
