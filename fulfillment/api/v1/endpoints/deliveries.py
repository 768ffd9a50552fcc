from typing import Optional, List
import uuid

from fastapi import APIRouter, Query

from fulfillment.api.deps import DB, CurrentActor, FieldActor, StaffActor, http_error
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.schemas.delivery import (
    DeliveryCancelRequest,
    DeliveryCancelResponse,
    DeliveryResponse,
    DeliveryStatusUpdate,
    DriverAssignment,
    VehicleAssignment,
)
from fulfillment.services.delivery_service import DeliveryService


router = APIRouter(tags=["Deliveries"])


@router.get("", response_model=List[DeliveryResponse])
async def list_deliveries(
    db: DB,
    actor: StaffActor,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    try:
        return await DeliveryService(db).list_deliveries(actor, status=status_filter, limit=limit, offset=offset)
    except FulfillmentError as e:
        raise http_error(e)


@router.get("/mine", response_model=List[DeliveryResponse])
async def list_my_deliveries(db: DB, actor: CurrentActor):
    """Driver work list."""
    try:
        return await DeliveryService(db).list_driver_deliveries(actor)
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/status", response_model=DeliveryResponse)
async def update_delivery_status(data: DeliveryStatusUpdate, db: DB, actor: FieldActor):
    """
    Advance a delivery, addressed by delivery_id or order_id.

    Drivers may only move deliveries assigned to them and cannot cancel.
    """
    try:
        return await DeliveryService(db).advance_delivery_status(
            actor,
            data.status,
            delivery_id=data.delivery_id,
            order_id=data.order_id,
            proof_image=data.proof_image,
        )
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/cancel", response_model=DeliveryCancelResponse)
async def cancel_delivery(data: DeliveryCancelRequest, db: DB, actor: StaffActor):
    try:
        result = await DeliveryService(db).cancel_delivery(
            actor,
            data.reason,
            notes=data.notes,
            delivery_id=data.delivery_id,
            order_id=data.order_id,
        )
    except FulfillmentError as e:
        raise http_error(e)

    return DeliveryCancelResponse(
        delivery=DeliveryResponse.model_validate(result.delivery),
        was_in_progress=result.was_in_progress,
    )


@router.get("/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(delivery_id: uuid.UUID, db: DB, actor: CurrentActor):
    try:
        return await DeliveryService(db).get_delivery(delivery_id, actor)
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/{delivery_id}/drivers", response_model=DeliveryResponse)
async def assign_drivers(
    delivery_id: uuid.UUID,
    data: DriverAssignment,
    db: DB,
    actor: StaffActor,
):
    """Replace the assigned drivers. An empty list unassigns all."""
    try:
        return await DeliveryService(db).assign_drivers(delivery_id, data.driver_ids, actor)
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/{delivery_id}/vehicles", response_model=DeliveryResponse)
async def assign_vehicles(
    delivery_id: uuid.UUID,
    data: VehicleAssignment,
    db: DB,
    actor: StaffActor,
):
    """Replace the assigned vehicles. Requires at least one driver on the delivery."""
    try:
        return await DeliveryService(db).assign_vehicles(delivery_id, data.vehicle_ids, actor)
    except FulfillmentError as e:
        raise http_error(e)
