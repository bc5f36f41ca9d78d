"""
Caller identity and role checks.

Credentials are verified by the identity provider upstream; this module only
decodes the bearer JWT it issues into an ``Actor`` and answers "may this
actor run this operation".
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt as pyjwt
from pydantic import BaseModel

from marketplace.core.config import settings
from marketplace.core.exceptions import NotAuthorized
from marketplace.core.logging import get_logger
from marketplace.db.models.user import UserRole

logger = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """Resolved (user_id, role) pair"""
    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class AuthorizationResult:
    allowed: bool
    error: Optional[NotAuthorized] = None


def require_role(actor: Optional[Actor], allowed: Iterable[UserRole]) -> AuthorizationResult:
    """Capability check run at the top of every service operation"""
    allowed = tuple(allowed)
    if actor is None:
        return AuthorizationResult(False, NotAuthorized("Not authenticated"))
    if actor.role not in allowed:
        logger.warning(
            "Role check failed",
            extra_data={
                "user_id": actor.user_id,
                "role": actor.role.value,
                "allowed": [r.value for r in allowed],
            },
        )
        return AuthorizationResult(
            False,
            NotAuthorized(
                f"Role '{actor.role.value}' may not perform this action",
                details={"required": [r.value for r in allowed]},
            ),
        )
    return AuthorizationResult(True)


class TokenPayload(BaseModel):
    user_id: int
    role: UserRole
    exp: int


def create_access_token(user_id: int, role: UserRole) -> str:
    """Mint a token - used by tests and operational scripts, not by the API"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not configured")
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "user_id": user_id,
        "role": UserRole(role).value,
        "exp": int(expire.timestamp()),
    }
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Actor]:
    """Decode a bearer token; None if invalid, expired or malformed"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty - tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        data = TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
    return Actor(user_id=data.user_id, role=data.role)
