from pydantic import Field
from typing import Optional, Literal
from datetime import datetime
from decimal import Decimal
import uuid

from fulfillment.models.fleet import CapacityUnit
from fulfillment.schemas.base import BaseCreateSchema, BaseResponseSchema, BaseUpdateSchema


class VehicleCreate(BaseCreateSchema):
    model: str = Field(..., min_length=1, max_length=150)
    capacity: Optional[Decimal] = Field(None, gt=0)
    capacity_unit: CapacityUnit = CapacityUnit.KG
    status: Literal["Available", "Unavailable"] = "Available"


class VehicleUpdate(BaseUpdateSchema):
    model: Optional[str] = Field(None, min_length=1, max_length=150)
    capacity: Optional[Decimal] = Field(None, gt=0)
    capacity_unit: Optional[CapacityUnit] = None
    status: Optional[Literal["Available", "In Use", "Unavailable"]] = None


class VehicleResponse(BaseResponseSchema):
    id: uuid.UUID
    model: str
    status: str
    capacity: Optional[Decimal] = None
    capacity_unit: str
    created_at: datetime
    updated_at: datetime


class VehicleBrief(BaseResponseSchema):
    id: uuid.UUID
    model: str
    status: str
