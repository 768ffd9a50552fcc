"""
Roles and the caller identity threaded through every service call.

Identity is resolved once per request (see ``fulfillment.api.deps``) into an
``ActorContext``; services never read identity from ambient state.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet

from fulfillment.core.exceptions import ForbiddenError


class Role(str, Enum):
    ADMIN = "Admin"
    STORE_EMPLOYEE = "Store Employee"
    DELIVERY_DRIVER = "Delivery Driver"
    CUSTOMER = "Customer"


STAFF_ROLES: FrozenSet[str] = frozenset({Role.ADMIN.value, Role.STORE_EMPLOYEE.value})


@dataclass(frozen=True)
class ActorContext:
    """Resolved caller: who is acting and in which role."""
    user_id: uuid.UUID
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_driver(self) -> bool:
        return self.role == Role.DELIVERY_DRIVER.value

    @property
    def is_customer(self) -> bool:
        return self.role == Role.CUSTOMER.value


def require_staff(actor: ActorContext, action: str) -> None:
    """Raise ForbiddenError unless the actor is an Admin or Store Employee."""
    if not actor.is_staff:
        raise ForbiddenError(f"Only admins and store employees can {action}")
