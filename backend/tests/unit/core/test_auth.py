"""
Tests for JWT verification and the role dependencies.

WHY: The engine trusts bearer tokens issued by the marketplace's identity
service. These tests ensure:
1. Tokens are generated with correct claims
2. Expired, forged and malformed tokens are rejected
3. Only vendors (and admins) reach subscription endpoints
4. Inactive or deleted users are rejected even with a valid token
"""

import pytest
from datetime import datetime, timedelta, timezone
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from billing_engine.core.auth import create_access_token, verify_token
from billing_engine.core.config import settings
from billing_engine.core.deps import get_current_user, require_admin, require_vendor
from billing_engine.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    TokenExpiredError,
    TokenInvalidError,
)
from billing_engine.models.user import UserRole

from tests.factories import UserFactory


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestTokenCreation:
    """Test JWT token creation."""

    def test_create_access_token_with_user_data(self):
        """Test JWT token creation with user data."""
        token = create_access_token({"user_id": 1, "role": "vendor"})

        decoded = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        assert decoded["user_id"] == 1
        assert decoded["role"] == "vendor"

    def test_create_access_token_includes_standard_claims(self):
        """Verify token includes exp, iat, and nbf claims."""
        token = create_access_token({"user_id": 1})

        decoded = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        assert "exp" in decoded
        assert "iat" in decoded
        assert "nbf" in decoded

    def test_create_access_token_custom_expiration(self):
        """Test creating token with custom expiration."""
        expires_delta = timedelta(minutes=30)
        token = create_access_token({"user_id": 1}, expires_delta=expires_delta)

        decoded = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        expected_exp = datetime.now(timezone.utc) + expires_delta
        actual_exp = datetime.fromtimestamp(decoded["exp"], tz=timezone.utc)
        assert abs((expected_exp - actual_exp).total_seconds()) < 10


class TestTokenVerification:
    """Test JWT token verification."""

    def test_verify_token_valid(self):
        payload = verify_token(create_access_token({"user_id": 7, "role": "admin"}))

        assert payload["user_id"] == 7
        assert payload["role"] == "admin"

    def test_verify_token_expired(self):
        """Test that expired tokens are rejected."""
        token = create_access_token({"user_id": 1}, expires_delta=timedelta(seconds=-1))

        with pytest.raises(TokenExpiredError) as exc_info:
            verify_token(token)

        assert "expired" in str(exc_info.value).lower()

    def test_verify_token_invalid_signature(self):
        """Test that tokens with wrong signature are rejected."""
        token = jwt.encode({"user_id": 1}, "wrong-secret", algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(TokenInvalidError):
            verify_token(token)

    def test_verify_token_malformed(self):
        with pytest.raises(TokenInvalidError):
            verify_token("not.a.valid.jwt.token")


class TestCurrentUser:
    """Tests for resolving the caller from a token."""

    @pytest.mark.asyncio
    async def test_resolves_active_user(self, db_session, vendor):
        token = create_access_token({"user_id": vendor.id, "role": "vendor"})

        user = await get_current_user(_credentials(token), db_session)

        assert user.id == vendor.id

    @pytest.mark.asyncio
    async def test_missing_user_id_claim(self, db_session):
        token = create_access_token({"role": "vendor"})

        with pytest.raises(AuthenticationError):
            await get_current_user(_credentials(token), db_session)

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        token = create_access_token({"user_id": 9999})

        with pytest.raises(AuthenticationError) as exc_info:
            await get_current_user(_credentials(token), db_session)

        assert exc_info.value.message == "User not found"

    @pytest.mark.asyncio
    async def test_inactive_user(self, db_session):
        """
        Test that deactivated accounts are rejected.

        WHY: The token may outlive the account; the database is authoritative.
        """
        user = await UserFactory.create(db_session, is_active=False)
        token = create_access_token({"user_id": user.id})

        with pytest.raises(AuthenticationError):
            await get_current_user(_credentials(token), db_session)

    @pytest.mark.asyncio
    async def test_expired_token_keeps_status_code(self, db_session, vendor):
        token = create_access_token({"user_id": vendor.id}, expires_delta=timedelta(seconds=-1))

        with pytest.raises(AuthenticationError) as exc_info:
            await get_current_user(_credentials(token), db_session)

        assert exc_info.value.status_code == 401


class TestRoleDependencies:
    """Tests for RBAC on subscription and admin endpoints."""

    @pytest.mark.asyncio
    async def test_vendor_and_admin_may_hold_subscriptions(self, vendor, admin):
        assert await require_vendor(vendor) is vendor
        assert await require_vendor(admin) is admin

    @pytest.mark.asyncio
    async def test_plain_user_cannot_subscribe(self, db_session):
        reviewer = await UserFactory.create(db_session, role=UserRole.USER)

        with pytest.raises(AuthorizationError) as exc_info:
            await require_vendor(reviewer)

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_only(self, vendor, admin):
        assert await require_admin(admin) is admin

        with pytest.raises(AuthorizationError):
            await require_admin(vendor)
