from pydantic import Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
import uuid

from fulfillment.schemas.base import BaseCreateSchema, BaseResponseSchema
from fulfillment.schemas.fleet import VehicleBrief


class DriverBrief(BaseResponseSchema):
    id: uuid.UUID
    full_name: str
    phone: Optional[str] = None


class DeliveryResponse(BaseResponseSchema):
    id: uuid.UUID
    order_id: uuid.UUID
    delivery_status: str
    delivery_details: Optional[Dict[str, Any]] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    drivers: List[DriverBrief] = []
    vehicles: List[VehicleBrief] = []


class _DeliveryTarget(BaseCreateSchema):
    """Addresses a delivery directly or through its order."""
    delivery_id: Optional[uuid.UUID] = None
    order_id: Optional[uuid.UUID] = None

    @model_validator(mode="after")
    def check_target(self):
        if self.delivery_id is None and self.order_id is None:
            raise ValueError("delivery_id or order_id is required")
        return self


class DeliveryStatusUpdate(_DeliveryTarget):
    """AdvanceDeliveryStatus request. Status is matched case-insensitively."""
    status: str = Field(..., min_length=1, max_length=50)
    proof_image: Optional[str] = Field(None, max_length=500)


class DeliveryCancelRequest(_DeliveryTarget):
    reason: str = Field(..., min_length=1, max_length=1000)
    notes: Optional[str] = Field(None, max_length=2000)


class DeliveryCancelResponse(BaseResponseSchema):
    delivery: DeliveryResponse
    was_in_progress: bool


class DriverAssignment(BaseCreateSchema):
    driver_ids: List[uuid.UUID] = []


class VehicleAssignment(BaseCreateSchema):
    vehicle_ids: List[uuid.UUID] = []
