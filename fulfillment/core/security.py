"""
Bearer tokens for API callers.

Tokens are issued by the storefront's auth service with the same secret;
this service only needs to read them. ``create_access_token`` exists for
operational scripts and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from jose import JWTError, jwt

from fulfillment.config import settings
from fulfillment.core.permissions import ActorContext, Role


ACCESS_TOKEN_TYPE = "access"
KNOWN_ROLES = frozenset(r.value for r in Role)


def create_access_token(
    user_id: str | uuid.UUID,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": str(user_id),
        "role": role,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def actor_from_token(token: str) -> Optional[ActorContext]:
    """
    Resolve an access token to an ActorContext.

    Returns None when the token is invalid, expired, not an access token,
    or carries an unknown role.
    """
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

    if claims.get("type") != ACCESS_TOKEN_TYPE or claims.get("role") not in KNOWN_ROLES:
        return None
    try:
        user_id = uuid.UUID(str(claims.get("sub")))
    except ValueError:
        return None

    return ActorContext(user_id=user_id, role=claims["role"])
