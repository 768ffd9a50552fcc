r"""
Delivery State Machine

    Pending -> Preparing -> Out for Delivery -> Delivered
       \__________\_______________\__________> Cancelled (staff only)

Delivered and Cancelled are terminal. Requesting the current status again
is an accepted no-op.
"""

from typing import Dict, List, Optional

from fulfillment.core.exceptions import (
    AlreadyFinalError,
    ForbiddenError,
    InvalidTransitionError,
)
from fulfillment.core.permissions import ActorContext
from fulfillment.models.delivery import DeliveryStatus
from fulfillment.models.order import OrderStatus


DELIVERY_TRANSITIONS: Dict[str, List[str]] = {
    DeliveryStatus.PENDING.value: [
        DeliveryStatus.PREPARING.value,
        DeliveryStatus.CANCELLED.value,
    ],
    DeliveryStatus.PREPARING.value: [
        DeliveryStatus.OUT_FOR_DELIVERY.value,
        DeliveryStatus.CANCELLED.value,
    ],
    DeliveryStatus.OUT_FOR_DELIVERY.value: [
        DeliveryStatus.DELIVERED.value,
        DeliveryStatus.CANCELLED.value,
    ],
    DeliveryStatus.DELIVERED.value: [],
    DeliveryStatus.CANCELLED.value: [],
}

# Forward successor for each non-terminal status
NEXT_STATUS: Dict[str, str] = {
    DeliveryStatus.PENDING.value: DeliveryStatus.PREPARING.value,
    DeliveryStatus.PREPARING.value: DeliveryStatus.OUT_FOR_DELIVERY.value,
    DeliveryStatus.OUT_FOR_DELIVERY.value: DeliveryStatus.DELIVERED.value,
}

TERMINAL_STATUSES = frozenset({
    DeliveryStatus.DELIVERED.value,
    DeliveryStatus.CANCELLED.value,
})

# Order status written alongside a delivery status (best effort)
ORDER_STATUS_MIRROR: Dict[str, str] = {
    DeliveryStatus.PREPARING.value: OrderStatus.PROCESSING.value,
    DeliveryStatus.OUT_FOR_DELIVERY.value: OrderStatus.READY.value,
    DeliveryStatus.DELIVERED.value: OrderStatus.READY.value,
}

# Entering these statuses texts the customer
SMS_STATUSES = frozenset({
    DeliveryStatus.PREPARING.value,
    DeliveryStatus.OUT_FOR_DELIVERY.value,
    DeliveryStatus.DELIVERED.value,
})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current_status: str, new_status: str) -> bool:
    return new_status in DELIVERY_TRANSITIONS.get(current_status, [])


def next_status(current_status: str) -> Optional[str]:
    return NEXT_STATUS.get(current_status)


def validate_delivery_transition(
    current_status: str,
    requested_status: str,
    actor: ActorContext,
) -> bool:
    """
    Validate a delivery status change for ``actor``.

    Returns False for a same-status no-op, True when a write is needed.
    Driver assignment is checked by the caller before this runs.
    """
    if is_terminal(current_status):
        raise AlreadyFinalError(
            f"Delivery is already {current_status}. Status cannot be changed.",
            details={"current_status": current_status, "requested_status": requested_status}
        )

    if current_status == requested_status:
        return False

    if requested_status == DeliveryStatus.CANCELLED.value:
        if not actor.is_staff:
            raise ForbiddenError(
                "Only staff can cancel a delivery",
                details={"role": actor.role}
            )
        return True

    expected = next_status(current_status)
    if requested_status != expected:
        raise InvalidTransitionError(
            f"Invalid status transition from '{current_status}' to '{requested_status}'. "
            f"Next allowed status: {expected}",
            details={
                "current_status": current_status,
                "requested_status": requested_status,
                "allowed": [expected],
            }
        )
    return True
