"""
Order State Machine

Single source of truth for order status transitions.

    Pending Approval -> Waiting Payment -> Processing -> Ready -> Completed

Approval is its own operation (ApproveOrder); AdvanceOrderStatus only walks
Waiting Payment -> Processing -> Ready -> Completed one step at a time.
Rejected is written by RejectOrder from any status but Rejected, and
Cancelled by CancelDelivery. Completed, Rejected and Cancelled are terminal.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import (
    AlreadyFinalError,
    FulfillmentError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
)
from fulfillment.models.order import Order, OrderStatus, OrderStatusHistory


# =============================================================================
# TRANSITION RULES
# =============================================================================

ORDER_TRANSITIONS: Dict[str, List[str]] = {
    OrderStatus.PENDING_APPROVAL.value: [
        OrderStatus.WAITING_PAYMENT.value,  # Approve
        OrderStatus.REJECTED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.WAITING_PAYMENT.value: [
        OrderStatus.PROCESSING.value,
        OrderStatus.REJECTED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PROCESSING.value: [
        OrderStatus.READY.value,
        OrderStatus.WAITING_PAYMENT.value,  # Proof of payment rejected
        OrderStatus.REJECTED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.READY.value: [
        OrderStatus.COMPLETED.value,
        OrderStatus.REJECTED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.COMPLETED.value: [],
    OrderStatus.REJECTED.value: [],
    OrderStatus.CANCELLED.value: [],
}

# Statuses AdvanceOrderStatus accepts, in lifecycle order
ADVANCE_SEQUENCE: List[str] = [
    OrderStatus.WAITING_PAYMENT.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.READY.value,
    OrderStatus.COMPLETED.value,
]

TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED.value,
    OrderStatus.REJECTED.value,
    OrderStatus.CANCELLED.value,
})

# Orders that have been approved but not yet handed over
PLACED_STATUSES = frozenset({
    OrderStatus.WAITING_PAYMENT.value,
    OrderStatus.PROCESSING.value,
})


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in ORDER_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    return ORDER_TRANSITIONS.get(current_status, [])


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_placed(status: str) -> bool:
    return status in PLACED_STATUSES


def can_approve(status: str) -> bool:
    return status == OrderStatus.PENDING_APPROVAL.value


def can_reject(status: str) -> bool:
    return status != OrderStatus.REJECTED.value


def stage_index(status: str) -> int:
    """Position in ADVANCE_SEQUENCE, -1 for statuses outside it."""
    try:
        return ADVANCE_SEQUENCE.index(status)
    except ValueError:
        return -1


def validate_advance(current_status: str, requested_status: str) -> bool:
    """
    Validate an AdvanceOrderStatus request.

    Returns False when the request is a no-op (same status), True when a
    write is needed. Raises AlreadyFinalError or InvalidTransitionError.
    """
    if requested_status not in ADVANCE_SEQUENCE:
        raise InvalidTransitionError(
            f"'{requested_status}' cannot be set through a status update",
            details={"current_status": current_status, "requested_status": requested_status}
        )

    if is_terminal(current_status):
        raise AlreadyFinalError(
            f"Order is already {current_status}. No further status changes are allowed.",
            details={"current_status": current_status}
        )

    if current_status == requested_status:
        return False

    if current_status == OrderStatus.PENDING_APPROVAL.value:
        raise InvalidTransitionError(
            "Order must be approved first",
            details={"current_status": current_status, "requested_status": requested_status}
        )

    if stage_index(requested_status) != stage_index(current_status) + 1:
        allowed = [s for s in get_allowed_transitions(current_status) if s in ADVANCE_SEQUENCE]
        raise InvalidTransitionError(
            f"Cannot change order from '{current_status}' to '{requested_status}'. "
            f"Allowed: {', '.join(allowed) or 'none'}",
            details={
                "current_status": current_status,
                "requested_status": requested_status,
                "allowed": allowed,
            }
        )

    return True


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

async def transition_order(
    db: AsyncSession,
    order: Order,
    new_status: str,
    changed_by: Optional[uuid.UUID] = None,
    note: Optional[str] = None,
    conflict_error: Optional[FulfillmentError] = None,
    **values,
) -> None:
    """
    Write ``new_status`` (plus extra column ``values``) only if the row still
    holds the status that was validated, and append a history entry.

    A concurrent writer that got there first leaves zero matched rows; that
    surfaces as ``conflict_error`` (by default an InvalidTransitionError).
    """
    expected_status = order.status
    now = datetime.now(timezone.utc)

    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == expected_status)
        .values(status=new_status, last_updated=now, **values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        raise conflict_error or InvalidTransitionError(
            f"Order {order.id} changed while processing; it is no longer '{expected_status}'",
            details={"expected_status": expected_status, "requested_status": new_status}
        )

    db.add(OrderStatusHistory(
        order_id=order.id,
        from_status=expected_status,
        to_status=new_status,
        changed_by=changed_by,
        note=note,
    ))


def rejection_blocked_error(order: Order) -> PreconditionFailedError:
    return PreconditionFailedError(
        "Order is already rejected",
        details={"order_id": str(order.id)}
    )


async def lock_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    """Re-read the order row for update inside the current transaction."""
    order = await db.scalar(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": str(order_id)})
    return order
