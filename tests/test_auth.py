"""
Role checks and bearer tokens
"""
import pytest
from datetime import datetime, timedelta, timezone

import jwt as pyjwt

from marketplace.core.auth import Actor, create_access_token, require_role, verify_token
from marketplace.core.config import settings
from marketplace.core.exceptions import ErrorCode
from marketplace.db.models.user import UserRole


@pytest.mark.unit
class TestRequireRole:

    def test_missing_actor_is_rejected(self):
        result = require_role(None, [UserRole.BUYER])
        assert result.allowed is False
        assert result.error.error_code == ErrorCode.NOT_AUTHORIZED

    def test_allowed_role_passes(self):
        assert require_role(Actor(1, UserRole.DRIVER), [UserRole.DRIVER]).allowed is True

    def test_admin_is_not_implicitly_allowed(self):
        result = require_role(Actor(1, UserRole.ADMIN), [UserRole.DRIVER])
        assert result.allowed is False

    def test_error_lists_required_roles(self):
        result = require_role(Actor(7, UserRole.BUYER), [UserRole.SELLER, UserRole.ADMIN])
        assert result.error.details["required"] == ["seller", "admin"]
        assert result.error.status_code == 403


@pytest.mark.unit
class TestTokens:

    def test_round_trip(self):
        token = create_access_token(42, UserRole.SELLER)
        assert verify_token(token) == Actor(user_id=42, role=UserRole.SELLER)

    def test_tampered_token_is_rejected(self):
        token = create_access_token(42, UserRole.BUYER)
        assert verify_token(token[:-2] + "xx") is None

    def test_expired_token_is_rejected(self):
        payload = {
            "user_id": 1,
            "role": "buyer",
            "exp": int((datetime.now(timezone.utc) - timedelta(minutes=1)).timestamp()),
        }
        token = pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
        assert verify_token(token) is None

    def test_unknown_role_is_rejected(self):
        payload = {
            "user_id": 1,
            "role": "superuser",
            "exp": int((datetime.now(timezone.utc) + timedelta(minutes=5)).timestamp()),
        }
        token = pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
        assert verify_token(token) is None

    def test_wrong_secret_is_rejected(self):
        token = pyjwt.encode(
            {"user_id": 1, "role": "admin", "exp": 4102444800},
            "some-other-secret",
            algorithm="HS256",
        )
        assert verify_token(token) is None
