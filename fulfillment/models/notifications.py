import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment.database import Base
from fulfillment.db_types import UUIDType


class NotificationAudience(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"
    DRIVER = "driver"


class NotificationType(str, Enum):
    """Activity types written to the notification inbox."""
    ORDER_APPROVED = "order_approved"
    ORDER_PROCESSING = "order_processing"
    ORDER_READY = "order_ready"
    ORDER_READY_PICKUP = "order_ready_pickup"
    ORDER_COMPLETED = "order_completed"
    ORDER_REJECTED = "order_rejected"
    ORDER_STATUS_CHANGED = "order_status_changed"
    PAYMENT_METHOD_SELECTED = "payment_method_selected"
    PROOF_OF_PAYMENT_UPDATED = "proof_of_payment_updated"
    PROOF_REJECTED = "proof_rejected"
    PAYMENT_STATUS_UPDATED = "payment_status_updated"
    DELIVERY_STATUS_CHANGED = "delivery_status_changed"
    DELIVERY_COMPLETED = "delivery_completed"
    DELIVERY_CANCELLED = "delivery_cancelled"
    DRIVER_ASSIGNED = "driver_assigned"
    VEHICLE_ASSIGNED = "vehicle_assigned"


class Notification(Base):
    """
    In-app notification.

    Admin notifications go to the shared staff inbox (``recipient_id`` NULL);
    customer and driver notifications target one user.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        Index('ix_notifications_audience_recipient', 'audience', 'recipient_id', 'is_read'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    audience: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="admin, customer, driver"
    )
    recipient_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<Notification(type='{self.activity_type}', audience='{self.audience}')>"
