import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List, Dict, Any

from sqlalchemy import Column, String, DateTime, ForeignKey, Table, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment.database import Base
from fulfillment.db_types import JSONType, UUIDType

if TYPE_CHECKING:
    from fulfillment.models.fleet import FleetVehicle
    from fulfillment.models.order import Order
    from fulfillment.models.user import User


class DeliveryStatus(str, Enum):
    """Delivery lifecycle. Delivered and Cancelled are terminal."""
    PENDING = "Pending"
    PREPARING = "Preparing"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


ACTIVE_DELIVERY_STATUSES = [
    DeliveryStatus.PENDING.value,
    DeliveryStatus.PREPARING.value,
    DeliveryStatus.OUT_FOR_DELIVERY.value,
]


delivery_drivers = Table(
    "delivery_drivers",
    Base.metadata,
    Column("delivery_id", UUIDType, ForeignKey("deliveries.id", ondelete="CASCADE"), primary_key=True),
    Column("driver_id", UUIDType, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
)


delivery_vehicles = Table(
    "delivery_vehicles",
    Base.metadata,
    Column("delivery_id", UUIDType, ForeignKey("deliveries.id", ondelete="CASCADE"), primary_key=True),
    Column("vehicle_id", UUIDType, ForeignKey("fleet.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
)


class Delivery(Base):
    """
    Dispatch record for a Standard Delivery order.

    At most one per order. Drivers and vehicles are many-to-many through
    ``delivery_drivers`` / ``delivery_vehicles``.
    """
    __tablename__ = "deliveries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    delivery_status: Mapped[str] = mapped_column(
        String(50),
        default=DeliveryStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="Pending, Preparing, Out for Delivery, Delivered, Cancelled"
    )
    delivery_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Free-form details incl. proof_image reference"
    )

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="delivery", lazy="selectin")
    drivers: Mapped[List["User"]] = relationship(
        "User",
        secondary=delivery_drivers,
        lazy="selectin"
    )
    vehicles: Mapped[List["FleetVehicle"]] = relationship(
        "FleetVehicle",
        secondary=delivery_vehicles,
        back_populates="deliveries",
        lazy="selectin"
    )

    @property
    def is_terminal(self) -> bool:
        return self.delivery_status in (DeliveryStatus.DELIVERED.value, DeliveryStatus.CANCELLED.value)

    @property
    def driver_ids(self) -> List[uuid.UUID]:
        return [driver.id for driver in self.drivers]

    @property
    def vehicle_ids(self) -> List[uuid.UUID]:
        return [vehicle.id for vehicle in self.vehicles]

    def is_assigned_to(self, driver_id: uuid.UUID) -> bool:
        return driver_id in self.driver_ids

    def __repr__(self) -> str:
        return f"<Delivery(id='{self.id}', status='{self.delivery_status}')>"
