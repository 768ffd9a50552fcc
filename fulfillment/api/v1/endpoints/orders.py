from typing import Optional, List
import uuid

from fastapi import APIRouter, Query, status

from fulfillment.api.deps import DB, CurrentActor, StaffActor, http_error
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.schemas.delivery import DeliveryResponse
from fulfillment.schemas.order import (
    OrderRejectRequest,
    OrderResponse,
    OrderStatusHistoryResponse,
    OrderStatusUpdate,
)
from fulfillment.services.delivery_service import DeliveryService
from fulfillment.services.order_service import OrderService


router = APIRouter(tags=["Orders"])


@router.get("", response_model=List[OrderResponse])
async def list_orders(
    db: DB,
    actor: CurrentActor,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """List orders. Customers only see their own."""
    try:
        return await OrderService(db).list_orders(actor, status=status_filter, limit=limit, offset=offset)
    except FulfillmentError as e:
        raise http_error(e)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: uuid.UUID, db: DB, actor: CurrentActor):
    try:
        return await OrderService(db).get_order(order_id, actor)
    except FulfillmentError as e:
        raise http_error(e)


@router.get("/{order_id}/history", response_model=List[OrderStatusHistoryResponse])
async def get_order_history(order_id: uuid.UUID, db: DB, actor: CurrentActor):
    try:
        return await OrderService(db).get_status_history(order_id, actor)
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/{order_id}/approve", response_model=OrderResponse)
async def approve_order(order_id: uuid.UUID, db: DB, actor: StaffActor):
    """
    Approve a pending order.

    Flow:
    1. Order must be in Pending Approval
    2. Status moves to Waiting Payment; approved_at/approved_by recorded
    3. Customer is notified (in-app, SMS, email)
    """
    try:
        return await OrderService(db).approve_order(order_id, actor)
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: DB,
    actor: StaffActor,
):
    """
    Advance the order one step: Waiting Payment -> Processing -> Ready -> Completed.

    Ready requires the scheduled date to have arrived, deducts stock and
    sends delivery orders out.
    """
    try:
        return await OrderService(db).advance_order_status(order_id, data.status.value, actor)
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/{order_id}/reject", response_model=OrderResponse)
async def reject_order(
    order_id: uuid.UUID,
    data: OrderRejectRequest,
    db: DB,
    actor: StaffActor,
):
    """Reject an order; stock held for it is returned."""
    try:
        return await OrderService(db).reject_order(order_id, actor, reason=data.reason)
    except FulfillmentError as e:
        raise http_error(e)


@router.post(
    "/{order_id}/delivery",
    response_model=DeliveryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_delivery(order_id: uuid.UUID, db: DB, actor: StaffActor):
    """Create the Pending delivery record for a Standard Delivery order."""
    try:
        return await DeliveryService(db).create_delivery(order_id, actor)
    except FulfillmentError as e:
        raise http_error(e)
