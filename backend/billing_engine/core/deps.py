"""
Authentication and role dependencies for the subscription API.

WHY: Subscription endpoints act on the caller's own rows, so the caller
must be resolved from the token to a live user on every request. Roles
come from the database, not the token, so a demoted admin loses access
immediately.
"""

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.auth import verify_token
from billing_engine.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    TokenExpiredError,
    TokenInvalidError,
)
from billing_engine.dao.user import UserDAO
from billing_engine.db.session import get_db
from billing_engine.models.user import User, UserRole


security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the bearer token to an active user.

    Raises:
        AuthenticationError: For a bad token, a token without ``user_id``,
            or a user that no longer exists or is deactivated (all 401)
    """
    try:
        payload = verify_token(credentials.credentials)
    except (TokenExpiredError, TokenInvalidError) as e:
        raise AuthenticationError(message=e.message, status_code=e.status_code)

    user_id = payload.get("user_id")
    if not user_id:
        raise AuthenticationError(message="Invalid token: missing user_id")

    user = await UserDAO(db).get_by_id(user_id)
    if user is None:
        raise AuthenticationError(message="User not found", user_id=user_id)
    if not user.is_active:
        raise AuthenticationError(message="User account is inactive", user_id=user_id)
    return user


def _forbid(user: User, required: UserRole) -> AuthorizationError:
    return AuthorizationError(
        message=f"{required.value.capitalize()} access required",
        user_id=user.id,
        user_role=UserRole(user.role).value,
        required_role=required.value,
    )


async def require_vendor(current_user: User = Depends(get_current_user)) -> User:
    """Vendors hold subscriptions; admins may manage their own as well."""
    if current_user.role not in (UserRole.VENDOR, UserRole.ADMIN):
        raise _forbid(current_user, UserRole.VENDOR)
    return current_user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Analytics and manual sweeps span every vendor."""
    if current_user.role != UserRole.ADMIN:
        raise _forbid(current_user, UserRole.ADMIN)
    return current_user
