"""
Fleet Service

Vehicle registry plus the shared rules for a vehicle's availability:

- ``Unavailable`` is a manual override and blocks assignment.
- ``In Use`` holds exactly while the vehicle is on at least one delivery
  that is not Delivered or Cancelled.
- When a vehicle leaves its last active delivery it returns to
  ``Available`` (an ``Unavailable`` vehicle stays ``Unavailable``).

The helpers at the bottom run inside the caller's transaction so that the
assignment rows and the vehicle status always change together.
"""

import logging
import uuid
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import NotFoundError, PreconditionFailedError
from fulfillment.core.permissions import ActorContext, require_staff
from fulfillment.models.delivery import ACTIVE_DELIVERY_STATUSES, Delivery, delivery_vehicles
from fulfillment.models.fleet import CapacityUnit, FleetVehicle, VehicleStatus
from fulfillment.services.unit_of_work import atomic


logger = logging.getLogger(__name__)


MANUAL_STATUSES = [VehicleStatus.AVAILABLE.value, VehicleStatus.UNAVAILABLE.value]


class FleetService:
    """Service for fleet vehicle management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_vehicles(self, status: Optional[str] = None) -> List[FleetVehicle]:
        stmt = select(FleetVehicle).order_by(FleetVehicle.model)
        if status:
            stmt = stmt.where(FleetVehicle.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_vehicle(self, vehicle_id: uuid.UUID) -> FleetVehicle:
        vehicle = await self.db.get(FleetVehicle, vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found", details={"vehicle_id": str(vehicle_id)})
        return vehicle

    async def add_vehicle(
        self,
        actor: ActorContext,
        model: str,
        capacity: Optional[Decimal] = None,
        capacity_unit: str = CapacityUnit.KG.value,
        status: str = VehicleStatus.AVAILABLE.value,
    ) -> FleetVehicle:
        require_staff(actor, "manage the fleet")
        if status not in MANUAL_STATUSES:
            raise PreconditionFailedError(
                "New vehicles must be Available or Unavailable",
                details={"status": status}
            )

        vehicle = FleetVehicle(
            model=model.strip(),
            capacity=capacity,
            capacity_unit=capacity_unit,
            status=status,
        )
        async with atomic(self.db, "add vehicle"):
            self.db.add(vehicle)

        logger.info(f"Added vehicle {vehicle.id} ({vehicle.model})")
        return vehicle

    async def update_vehicle(
        self,
        actor: ActorContext,
        vehicle_id: uuid.UUID,
        model: Optional[str] = None,
        capacity: Optional[Decimal] = None,
        capacity_unit: Optional[str] = None,
        status: Optional[str] = None,
    ) -> FleetVehicle:
        """
        Edit a vehicle. Only Available/Unavailable can be set by hand, and
        neither while the vehicle is on an active delivery.
        """
        require_staff(actor, "manage the fleet")

        async with atomic(self.db, "update vehicle"):
            vehicle = await self.db.scalar(
                select(FleetVehicle)
                .where(FleetVehicle.id == vehicle_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if vehicle is None:
                raise NotFoundError("Vehicle not found", details={"vehicle_id": str(vehicle_id)})

            if model is not None:
                vehicle.model = model.strip()
            if capacity is not None:
                vehicle.capacity = capacity
            if capacity_unit is not None:
                vehicle.capacity_unit = capacity_unit

            if status is not None and status != vehicle.status:
                if status not in MANUAL_STATUSES:
                    raise PreconditionFailedError(
                        "'In Use' is set by delivery assignment, not by hand",
                        details={"status": status}
                    )
                active = await count_active_deliveries(self.db, vehicle.id)
                if active:
                    raise PreconditionFailedError(
                        f"Vehicle {vehicle.model} is assigned to {active} active delivery(ies)",
                        details={"vehicle_id": str(vehicle.id), "active_deliveries": active}
                    )
                vehicle.status = status

        logger.info(f"Updated vehicle {vehicle.id} ({vehicle.model}) status={vehicle.status}")
        return vehicle


# ==================== ASSIGNMENT HELPERS ====================

async def count_active_deliveries(
    db: AsyncSession,
    vehicle_id: uuid.UUID,
    exclude_delivery_id: Optional[uuid.UUID] = None,
) -> int:
    """Number of non-terminal deliveries the vehicle is assigned to."""
    stmt = (
        select(func.count())
        .select_from(delivery_vehicles)
        .join(Delivery, Delivery.id == delivery_vehicles.c.delivery_id)
        .where(
            delivery_vehicles.c.vehicle_id == vehicle_id,
            Delivery.delivery_status.in_(ACTIVE_DELIVERY_STATUSES),
        )
    )
    if exclude_delivery_id is not None:
        stmt = stmt.where(Delivery.id != exclude_delivery_id)
    return (await db.scalar(stmt)) or 0


async def lock_vehicles(db: AsyncSession, vehicle_ids: Iterable[uuid.UUID]) -> List[FleetVehicle]:
    ids = list(vehicle_ids)
    if not ids:
        return []
    result = await db.execute(
        select(FleetVehicle)
        .where(FleetVehicle.id.in_(ids))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def mark_in_use(vehicles: Iterable[FleetVehicle]) -> None:
    for vehicle in vehicles:
        vehicle.status = VehicleStatus.IN_USE.value


async def release_vehicles(
    db: AsyncSession,
    vehicles: Iterable[FleetVehicle],
    exclude_delivery_id: Optional[uuid.UUID] = None,
) -> List[FleetVehicle]:
    """
    Return vehicles to Available when they no longer serve an active delivery.

    ``exclude_delivery_id`` is the delivery that is letting go of them (its
    own row may not be flushed yet). Returns the vehicles that were released.
    """
    released = []
    for vehicle in vehicles:
        if vehicle.status == VehicleStatus.UNAVAILABLE.value:
            continue
        if await count_active_deliveries(db, vehicle.id, exclude_delivery_id):
            continue
        if vehicle.status != VehicleStatus.AVAILABLE.value:
            vehicle.status = VehicleStatus.AVAILABLE.value
            released.append(vehicle)
            logger.info(f"Vehicle {vehicle.id} ({vehicle.model}) released to Available")
    return released
