"""
Bearer token handling.

WHY: Login lives in the marketplace's identity service, which signs tokens
with the shared JWT_SECRET. The engine only needs to know which user is
calling; ``create_access_token`` exists for tooling and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from billing_engine.core.config import settings
from billing_engine.core.exceptions import TokenExpiredError, TokenInvalidError


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Sign ``data`` with exp/iat/nbf claims added.

    Example:
        >>> token = create_access_token({"user_id": 1, "role": "vendor"})
        >>> verify_token(token)["user_id"]
        1
    """
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)
    claims = {**data, "iat": issued_at, "nbf": issued_at, "exp": issued_at + lifetime}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Decode a token signed with JWT_SECRET.

    Raises:
        TokenExpiredError: If ``exp`` has passed
        TokenInvalidError: If the token is malformed, forged or uses another algorithm
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError(message="Token has expired")
    except JWTError as e:
        raise TokenInvalidError(message="Invalid token", error=str(e))
