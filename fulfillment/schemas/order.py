from pydantic import Field
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
import uuid

from fulfillment.models.order import OrderStatus
from fulfillment.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== ORDER ITEM SCHEMAS ====================

class OrderItemResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    variation_id: Optional[uuid.UUID] = None
    quantity: int
    unit_price: Decimal


class AvailabilitySlotResponse(BaseResponseSchema):
    slot_number: int
    availability_date: Optional[date] = None
    availability_time: Optional[str] = None


# ==================== TRANSACTION SCHEMAS ====================

class TransactionResponse(BaseResponseSchema):
    id: uuid.UUID
    amount: Decimal
    payment_status: str
    payment_method: Optional[str] = None
    proof_of_payment: Optional[str] = None
    proof_rejected: bool
    proof_updated_at: Optional[datetime] = None
    awaiting_review: bool


# ==================== ORDER SCHEMAS ====================

class OrderResponse(BaseResponseSchema):
    """Order snapshot returned by every order operation."""
    id: uuid.UUID
    customer_id: uuid.UUID
    amount: Decimal
    status: str
    delivery_method: str
    payment_method: Optional[str] = None
    payment: str
    stock_deducted: bool
    availability_date: Optional[date] = None
    availability_time: Optional[str] = None
    scheduled_date: Optional[date] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    collected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    last_updated: datetime
    items: List[OrderItemResponse] = []
    availability_slots: List[AvailabilitySlotResponse] = []
    transaction: Optional[TransactionResponse] = None


class OrderStatusUpdate(BaseCreateSchema):
    """AdvanceOrderStatus request."""
    status: OrderStatus


class OrderRejectRequest(BaseCreateSchema):
    reason: Optional[str] = Field(None, max_length=1000)


class OrderStatusHistoryResponse(BaseResponseSchema):
    id: uuid.UUID
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[uuid.UUID] = None
    note: Optional[str] = None
    created_at: datetime
