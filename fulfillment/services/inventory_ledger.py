"""
Inventory Ledger

Moves stock counters as orders enter and leave the reserved state.

Hybrid rule: when an order line names a variation that tracks its own
counter (stock_level NOT NULL) only the variation counter moves. Otherwise
the product counter moves and the product's stock_status label is
recomputed against its minimum stock.

Counters are updated with relative SQL expressions (stock_level - :qty) so
concurrent orders on the same product never lose an update. Lines are
visited in (product, variation) order so two orders sharing products take
their row locks in the same sequence.

The per-order ``stock_deducted`` flag is what makes deduction and
restoration happen at most once; ``deduct_for_order`` and
``restore_for_order`` are the only callers that should touch it.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import settings
from fulfillment.core.exceptions import NotFoundError, PreconditionFailedError
from fulfillment.models.order import Order
from fulfillment.models.product import Product, ProductVariation, StockStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockMovement:
    product_id: uuid.UUID
    variation_id: Optional[uuid.UUID]
    quantity: int  # negative for deduction
    target: str  # "variation" or "product"


def in_lock_order(items):
    """Order lines sorted by (product, variation); every order touches rows in the same sequence."""
    return sorted(items, key=lambda item: (str(item.product_id), str(item.variation_id or "")))


class InventoryLedger:
    """Stock counter mutations for products and product variations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def deduct(
        self,
        product_id: uuid.UUID,
        variation_id: Optional[uuid.UUID],
        quantity: int,
    ) -> StockMovement:
        return await self._move(product_id, variation_id, -quantity)

    async def restore(
        self,
        product_id: uuid.UUID,
        variation_id: Optional[uuid.UUID],
        quantity: int,
    ) -> StockMovement:
        return await self._move(product_id, variation_id, quantity)

    async def deduct_for_order(self, order: Order) -> List[StockMovement]:
        """
        Deduct every line of ``order`` unless already deducted.

        Returns the movements applied (empty when the order was already
        deducted). Raises PreconditionFailedError for an order with no lines.
        """
        if order.stock_deducted:
            logger.info(f"Stock already deducted for order {order.id}, skipping")
            return []
        if not order.items:
            raise PreconditionFailedError(
                "Order has no items",
                details={"order_id": str(order.id)}
            )

        movements = []
        for item in in_lock_order(order.items):
            movements.append(await self.deduct(item.product_id, item.variation_id, item.quantity))
        order.stock_deducted = True

        logger.info(f"Deducted stock for order {order.id} ({len(movements)} lines)")
        return movements

    async def restore_for_order(self, order: Order) -> List[StockMovement]:
        """Put back a previous deduction for ``order``; no-op if none is held."""
        if not order.stock_deducted:
            return []

        movements = []
        for item in in_lock_order(order.items):
            movements.append(await self.restore(item.product_id, item.variation_id, item.quantity))
        order.stock_deducted = False

        logger.info(f"Restored stock for order {order.id} ({len(movements)} lines)")
        return movements

    async def _move(
        self,
        product_id: uuid.UUID,
        variation_id: Optional[uuid.UUID],
        delta: int,
    ) -> StockMovement:
        if variation_id is not None:
            variation_stock = await self.db.scalar(
                select(ProductVariation.stock_level).where(ProductVariation.id == variation_id)
            )
            if variation_stock is not None:
                await self.db.execute(
                    update(ProductVariation)
                    .where(ProductVariation.id == variation_id)
                    .values(stock_level=ProductVariation.stock_level + delta)
                    .execution_options(synchronize_session="fetch")
                )
                return StockMovement(product_id, variation_id, delta, "variation")

        result = await self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_level=Product.stock_level + delta)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise NotFoundError(
                f"Product {product_id} not found",
                details={"product_id": str(product_id)}
            )

        threshold = func.coalesce(Product.minimum_stock, settings.DEFAULT_MINIMUM_STOCK)
        await self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(
                stock_status=case(
                    (Product.stock_level <= 0, StockStatus.OUT_OF_STOCK.value),
                    (Product.stock_level <= threshold, StockStatus.LOW_STOCK.value),
                    else_=StockStatus.IN_STOCK.value,
                )
            )
            .execution_options(synchronize_session="fetch")
        )
        return StockMovement(product_id, variation_id, delta, "product")
