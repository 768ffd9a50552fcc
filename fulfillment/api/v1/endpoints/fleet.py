from typing import Optional, List
import uuid

from fastapi import APIRouter, Query, status

from fulfillment.api.deps import DB, StaffActor, http_error
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.schemas.fleet import VehicleCreate, VehicleResponse, VehicleUpdate
from fulfillment.services.fleet_service import FleetService


router = APIRouter(tags=["Fleet"])


@router.get("", response_model=List[VehicleResponse])
async def list_vehicles(
    db: DB,
    actor: StaffActor,
    status_filter: Optional[str] = Query(None, alias="status"),
):
    return await FleetService(db).list_vehicles(status=status_filter)


@router.post("", response_model=VehicleResponse, status_code=status.HTTP_201_CREATED)
async def add_vehicle(data: VehicleCreate, db: DB, actor: StaffActor):
    try:
        return await FleetService(db).add_vehicle(
            actor,
            model=data.model,
            capacity=data.capacity,
            capacity_unit=data.capacity_unit.value,
            status=data.status,
        )
    except FulfillmentError as e:
        raise http_error(e)


@router.patch("/{vehicle_id}", response_model=VehicleResponse)
async def update_vehicle(
    vehicle_id: uuid.UUID,
    data: VehicleUpdate,
    db: DB,
    actor: StaffActor,
):
    try:
        return await FleetService(db).update_vehicle(
            actor,
            vehicle_id,
            model=data.model,
            capacity=data.capacity,
            capacity_unit=data.capacity_unit.value if data.capacity_unit else None,
            status=data.status,
        )
    except FulfillmentError as e:
        raise http_error(e)
