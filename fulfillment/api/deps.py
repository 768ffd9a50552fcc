from typing import Annotated
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.database import get_db
from fulfillment.core.exceptions import FulfillmentError, status_code_for
from fulfillment.core.permissions import ActorContext, Role, STAFF_ROLES
from fulfillment.core.security import actor_from_token
from fulfillment.models.user import User


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ActorContext:
    """
    Resolve the bearer token to the calling user and role.

    The role comes from the users table so that a role change takes effect
    without reissuing tokens.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    actor = actor_from_token(credentials.credentials)
    if actor is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    user = await db.get(User, actor.user_id)
    if user is None:
        logger.warning(f"User {actor.user_id} from token not found")
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated"
        )

    return ActorContext(user_id=user.id, role=user.role)


def require_roles(*roles: str):
    """
    Dependency factory to require one of the given roles.

    Usage:
        @router.post("/", dependencies=[Depends(require_roles(*STAFF_ROLES))])
        async def staff_endpoint():
            ...
    """
    async def role_dependency(
        actor: Annotated[ActorContext, Depends(get_current_actor)]
    ) -> ActorContext:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied. Required role: {', '.join(roles)}"
            )
        return actor

    return role_dependency


def http_error(exc: FulfillmentError) -> HTTPException:
    """Translate a service error into the HTTP error returned to the client."""
    return HTTPException(status_code=status_code_for(exc), detail=exc.to_dict())


# Type aliases for cleaner endpoint signatures
DB = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[ActorContext, Depends(get_current_actor)]
StaffActor = Annotated[ActorContext, Depends(require_roles(*sorted(STAFF_ROLES)))]
FieldActor = Annotated[
    ActorContext,
    Depends(require_roles(*sorted(STAFF_ROLES), Role.DELIVERY_DRIVER.value))
]
CustomerActor = Annotated[ActorContext, Depends(require_roles(Role.CUSTOMER.value))]
