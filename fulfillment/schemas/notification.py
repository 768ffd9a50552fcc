from typing import Optional
from datetime import datetime
import uuid

from pydantic import BaseModel

from fulfillment.schemas.base import BaseResponseSchema


class NotificationResponse(BaseResponseSchema):
    id: uuid.UUID
    audience: str
    activity_type: str
    order_id: Optional[uuid.UUID] = None
    message: str
    is_read: bool
    created_at: datetime


class MarkAllReadResponse(BaseModel):
    updated: int
