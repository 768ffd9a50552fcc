import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment.database import Base
from fulfillment.db_types import UUIDType


class StockStatus(str, Enum):
    IN_STOCK = "In Stock"
    LOW_STOCK = "Low Stock"
    OUT_OF_STOCK = "Out of Stock"


class Product(Base):
    """Catalogue item with a product-level stock counter."""
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    stock_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    minimum_stock: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Low Stock threshold; falls back to DEFAULT_MINIMUM_STOCK"
    )
    stock_status: Mapped[str] = mapped_column(
        String(50),
        default=StockStatus.IN_STOCK.value,
        nullable=False,
        comment="In Stock, Low Stock, Out of Stock"
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

    variations: Mapped[List["ProductVariation"]] = relationship(
        "ProductVariation",
        back_populates="product",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Product(name='{self.name}', stock={self.stock_level})>"


class ProductVariation(Base):
    """
    Size/colour/grade variant of a product.

    ``stock_level`` is NULL when the variation shares the product-level
    counter instead of tracking its own.
    """
    __tablename__ = "product_variations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    stock_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    product: Mapped["Product"] = relationship("Product", back_populates="variations")

    @property
    def tracks_own_stock(self) -> bool:
        return self.stock_level is not None

    def __repr__(self) -> str:
        return f"<ProductVariation(name='{self.name}', stock={self.stock_level})>"
