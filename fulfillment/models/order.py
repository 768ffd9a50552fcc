import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, Date, DateTime, ForeignKey, Integer, Text, Numeric, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment.database import Base
from fulfillment.db_types import UUIDType

if TYPE_CHECKING:
    from fulfillment.models.delivery import Delivery
    from fulfillment.models.product import Product, ProductVariation
    from fulfillment.models.user import User


class OrderStatus(str, Enum):
    """Order lifecycle. Rejected, Cancelled and Completed are terminal."""
    PENDING_APPROVAL = "Pending Approval"
    WAITING_PAYMENT = "Waiting Payment"
    PROCESSING = "Processing"
    READY = "Ready"
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


class DeliveryMethod(str, Enum):
    STANDARD_DELIVERY = "Standard Delivery"
    PICK_UP = "Pick Up"


class PaymentMethod(str, Enum):
    ON_SITE = "On-Site"
    CASH_ON_DELIVERY = "Cash on Delivery"
    GCASH = "GCash"


class OrderPaymentState(str, Enum):
    """Order-level payment flag shown to customers."""
    TO_PAY = "To Pay"
    PAID = "Paid"


class TransactionPaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"


class Order(Base):
    """
    Customer purchase.

    ``stock_deducted`` records whether the inventory ledger currently holds a
    deduction for this order's lines; it is the only guard against deducting
    or restoring twice.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_status_created', 'status', 'created_at'),
        Index('ix_order_customer_created', 'customer_id', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    status: Mapped[str] = mapped_column(
        String(50),
        default=OrderStatus.PENDING_APPROVAL.value,
        nullable=False,
        index=True,
        comment="Pending Approval, Waiting Payment, Processing, Ready, Completed, Rejected, Cancelled"
    )
    delivery_method: Mapped[str] = mapped_column(
        String(50),
        default=DeliveryMethod.STANDARD_DELIVERY.value,
        nullable=False,
        comment="Standard Delivery, Pick Up"
    )
    payment_method: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="On-Site, Cash on Delivery, GCash"
    )
    payment: Mapped[str] = mapped_column(
        String(20),
        default=OrderPaymentState.TO_PAY.value,
        nullable=False,
        comment="To Pay, Paid"
    )
    stock_deducted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Scheduled availability (first preference); further preferences live in slots
    availability_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    availability_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Approval / rejection audit
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    collected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Pickup orders: when the customer collected the goods"
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    customer: Mapped["User"] = relationship("User", foreign_keys=[customer_id], lazy="selectin")
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan"
    )
    availability_slots: Mapped[List["OrderAvailabilitySlot"]] = relationship(
        "OrderAvailabilitySlot",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderAvailabilitySlot.slot_number"
    )
    transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction",
        back_populates="order",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan"
    )
    delivery: Mapped[Optional["Delivery"]] = relationship(
        "Delivery",
        back_populates="order",
        uselist=False,
        lazy="selectin"
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        lazy="raise",
        order_by="OrderStatusHistory.created_at"
    )

    @property
    def is_pickup(self) -> bool:
        return self.delivery_method == DeliveryMethod.PICK_UP.value

    @property
    def scheduled_date(self) -> Optional[date]:
        """Availability date, falling back to the earliest preference slot."""
        if self.availability_date is not None:
            return self.availability_date
        dated = [slot for slot in self.availability_slots if slot.availability_date is not None]
        if not dated:
            return None
        return min(dated, key=lambda slot: slot.slot_number).availability_date

    def __repr__(self) -> str:
        return f"<Order(id='{self.id}', status='{self.status}')>"


class OrderItem(Base):
    """Order line."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False
    )
    variation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("product_variations.id", ondelete="SET NULL"),
        nullable=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="items")
    product: Mapped["Product"] = relationship("Product", lazy="selectin")
    variation: Mapped[Optional["ProductVariation"]] = relationship("ProductVariation", lazy="selectin")


class OrderAvailabilitySlot(Base):
    """Customer's preferred receive/pickup date-time, ranked by slot_number."""
    __tablename__ = "order_availability_slots"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    slot_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    availability_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    availability_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="availability_slots")


class Transaction(Base):
    """Payment record, one per order."""
    __tablename__ = "transactions"

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
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=TransactionPaymentStatus.PENDING.value,
        nullable=False,
        comment="Pending, Paid"
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    proof_of_payment: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Opaque reference into the file store"
    )
    proof_rejected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    proof_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set when a proof is re-uploaded after a rejection"
    )

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

    order: Mapped["Order"] = relationship("Order", back_populates="transaction")

    @property
    def has_proof(self) -> bool:
        return bool(self.proof_of_payment and self.proof_of_payment.strip())

    @property
    def awaiting_review(self) -> bool:
        return self.has_proof and self.payment_method == PaymentMethod.GCASH.value


class OrderStatusHistory(Base):
    """Append-only log of order status writes."""
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")
