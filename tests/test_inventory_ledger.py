import uuid

import pytest
from sqlalchemy import select

from fulfillment.core.exceptions import NotFoundError, PreconditionFailedError
from fulfillment.models import Product, StockStatus
from fulfillment.services.inventory_ledger import InventoryLedger

from tests.conftest import stock_of, variation_stock_of


async def status_of(db, product):
    return await db.scalar(select(Product.stock_status).where(Product.id == product.id))


class TestStockStatusLabel:

    @pytest.mark.parametrize("stock, minimum, quantity, expected", [
        (5, 5, 5, StockStatus.OUT_OF_STOCK.value),
        (5, 5, 7, StockStatus.OUT_OF_STOCK.value),
        (8, 5, 3, StockStatus.LOW_STOCK.value),
        (9, 5, 3, StockStatus.IN_STOCK.value),
        # DEFAULT_MINIMUM_STOCK is 10
        (12, None, 2, StockStatus.LOW_STOCK.value),
        (13, None, 2, StockStatus.IN_STOCK.value),
    ])
    async def test_thresholds(self, db, make_product, stock, minimum, quantity, expected):
        product = await make_product(stock_level=stock, minimum_stock=minimum)

        await InventoryLedger(db).deduct(product.id, None, quantity)
        await db.commit()

        assert await status_of(db, product) == expected


class TestHybridLedger:

    async def test_variation_with_own_counter_moves_alone(self, db, make_product):
        product = await make_product(stock_level=40, variation_stock=[15])
        variation = product.variations[0]

        movement = await InventoryLedger(db).deduct(product.id, variation.id, 4)
        await db.commit()

        assert movement.target == "variation"
        assert await variation_stock_of(db, variation) == 11
        assert await stock_of(db, product) == 40

    async def test_variation_without_counter_uses_product(self, db, make_product):
        product = await make_product(stock_level=40, variation_stock=[None])
        variation = product.variations[0]

        movement = await InventoryLedger(db).deduct(product.id, variation.id, 4)
        await db.commit()

        assert movement.target == "product"
        assert await stock_of(db, product) == 36
        assert await variation_stock_of(db, variation) is None

    async def test_product_status_follows_counter(self, db, make_product):
        product = await make_product(stock_level=12)
        ledger = InventoryLedger(db)

        await ledger.deduct(product.id, None, 3)
        await db.commit()
        assert await status_of(db, product) == StockStatus.LOW_STOCK.value

        await ledger.deduct(product.id, None, 9)
        await db.commit()
        assert await stock_of(db, product) == 0
        assert await status_of(db, product) == StockStatus.OUT_OF_STOCK.value

        await ledger.restore(product.id, None, 12)
        await db.commit()
        assert await status_of(db, product) == StockStatus.IN_STOCK.value

    async def test_product_minimum_overrides_default(self, db, make_product):
        product = await make_product(stock_level=30, minimum_stock=25)

        await InventoryLedger(db).deduct(product.id, None, 5)
        await db.commit()

        assert await status_of(db, product) == StockStatus.LOW_STOCK.value

    async def test_missing_product(self, db):
        with pytest.raises(NotFoundError):
            await InventoryLedger(db).deduct(uuid.uuid4(), None, 1)


class TestOrderDeduction:

    async def test_deduct_once_per_order(self, db, customer, make_product, make_order):
        cement = await make_product(stock_level=50)
        rebar = await make_product(name="Rebar 10mm", stock_level=80, variation_stock=[20])
        order = await make_order(customer, [(cement, 3), (rebar, 5, rebar.variations[0])])
        ledger = InventoryLedger(db)

        first = await ledger.deduct_for_order(order)
        second = await ledger.deduct_for_order(order)
        await db.commit()

        assert len(first) == 2
        assert second == []
        assert order.stock_deducted is True
        assert await stock_of(db, cement) == 47
        assert await variation_stock_of(db, rebar.variations[0]) == 15
        assert await stock_of(db, rebar) == 80

    async def test_restore_round_trip(self, db, customer, make_product, make_order):
        cement = await make_product(stock_level=50)
        order = await make_order(customer, [(cement, 7)])
        ledger = InventoryLedger(db)

        await ledger.deduct_for_order(order)
        await ledger.restore_for_order(order)
        assert await ledger.restore_for_order(order) == []
        await db.commit()

        assert order.stock_deducted is False
        assert await stock_of(db, cement) == 50

    async def test_restore_without_deduction_is_noop(self, db, customer, make_product, make_order):
        cement = await make_product(stock_level=50)
        order = await make_order(customer, [(cement, 7)])

        assert await InventoryLedger(db).restore_for_order(order) == []
        assert await stock_of(db, cement) == 50

    async def test_order_without_lines(self, db, customer, make_order):
        order = await make_order(customer, [])

        with pytest.raises(PreconditionFailedError):
            await InventoryLedger(db).deduct_for_order(order)

    async def test_lines_move_in_lock_order(self, db, customer, make_product, make_order):
        products = [await make_product(name=f"Hollow Block #{i}", stock_level=30) for i in range(4)]
        order = await make_order(customer, [(p, 2) for p in products])

        movements = await InventoryLedger(db).deduct_for_order(order)
        await db.commit()

        moved = [str(m.product_id) for m in movements]
        assert moved == sorted(str(p.id) for p in products)
        for product in products:
            assert await stock_of(db, product) == 28
