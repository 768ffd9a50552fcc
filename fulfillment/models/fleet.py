import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment.database import Base
from fulfillment.db_types import UUIDType

if TYPE_CHECKING:
    from fulfillment.models.delivery import Delivery


class VehicleStatus(str, Enum):
    AVAILABLE = "Available"
    IN_USE = "In Use"
    UNAVAILABLE = "Unavailable"


class CapacityUnit(str, Enum):
    KG = "kg"
    G = "g"
    LB = "lb"
    OZ = "oz"
    TON = "ton"


class FleetVehicle(Base):
    """
    Dispatchable vehicle.

    ``In Use`` is owned by the assignment logic: it holds exactly while the
    vehicle is on at least one non-terminal delivery. ``Unavailable`` is a
    manual override and blocks assignment.
    """
    __tablename__ = "fleet"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    model: Mapped[str] = mapped_column(String(150), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default=VehicleStatus.AVAILABLE.value,
        nullable=False,
        index=True,
        comment="Available, In Use, Unavailable"
    )
    capacity: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    capacity_unit: Mapped[str] = mapped_column(String(10), default=CapacityUnit.KG.value, nullable=False)

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

    deliveries: Mapped[List["Delivery"]] = relationship(
        "Delivery",
        secondary="delivery_vehicles",
        back_populates="vehicles",
        lazy="noload"
    )

    def __repr__(self) -> str:
        return f"<FleetVehicle(model='{self.model}', status='{self.status}')>"
