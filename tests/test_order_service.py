import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import InvalidRequestError, OperationalError

from fulfillment.core.clock import business_today, utc_now
from fulfillment.core.exceptions import (
    AlreadyFinalError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    NotYetDueError,
    PreconditionFailedError,
    StorageFailureError,
)
from fulfillment.models import (
    Delivery,
    DeliveryMethod,
    DeliveryStatus,
    Notification,
    NotificationAudience,
    NotificationType,
    Order,
    OrderStatus,
    OrderStatusHistory,
    TransactionPaymentStatus,
)
from fulfillment.services.delivery_service import DeliveryService
from fulfillment.services import order_state_machine as osm
from fulfillment.services.order_service import OrderService

from tests.conftest import actor_for, reload, stock_of, vehicle_status_of


async def notifications_for(db, order, audience):
    result = await db.execute(
        select(Notification).where(
            Notification.order_id == order.id,
            Notification.audience == audience,
        )
    )
    return list(result.scalars().all())


class TestApproveOrder:

    async def test_approve_moves_to_waiting_payment(
        self, db, dispatcher, sms, mailer, admin, customer, make_product, make_order
    ):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], status=OrderStatus.PENDING_APPROVAL.value)

        order = await OrderService(db, dispatcher).approve_order(order.id, actor_for(admin))

        assert order.status == OrderStatus.WAITING_PAYMENT.value
        assert order.approved_by == admin.id
        assert order.approved_at is not None

        customer_notes = await notifications_for(db, order, NotificationAudience.CUSTOMER.value)
        assert [n.activity_type for n in customer_notes] == [NotificationType.ORDER_APPROVED.value]
        assert customer_notes[0].recipient_id == customer.id
        assert len(sms.sent) == 1 and sms.sent[0][0] == customer.phone
        assert mailer.sent[0]["link_url"].endswith(f"orders/{order.id}/payment")

        history = await OrderService(db, dispatcher).get_status_history(order.id, actor_for(admin))
        assert [(h.from_status, h.to_status) for h in history] == [
            (OrderStatus.PENDING_APPROVAL.value, OrderStatus.WAITING_PAYMENT.value)
        ]

    async def test_approve_twice(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], status=OrderStatus.PENDING_APPROVAL.value)
        service = OrderService(db, dispatcher)
        await service.approve_order(order.id, actor_for(admin))

        with pytest.raises(InvalidTransitionError):
            await service.approve_order(order.id, actor_for(admin))

    async def test_approve_rejected_order(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], status=OrderStatus.REJECTED.value)

        with pytest.raises(AlreadyFinalError):
            await OrderService(db, dispatcher).approve_order(order.id, actor_for(admin))

    async def test_customer_cannot_approve(self, db, dispatcher, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], status=OrderStatus.PENDING_APPROVAL.value)

        with pytest.raises(ForbiddenError):
            await OrderService(db, dispatcher).approve_order(order.id, actor_for(customer))


class TestAdvanceOrderStatus:

    async def test_status_never_moves_backwards(self, db, dispatcher, employee, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(
            customer, [(product, 1)],
            delivery_method=DeliveryMethod.PICK_UP.value,
            availability_date=business_today(),
        )
        service = OrderService(db, dispatcher)
        staff = actor_for(employee)
        order_id = order.id
        seen = [order.status]

        for requested in ["Processing", "Waiting Payment", "Ready", "Processing", "Completed", "Ready"]:
            try:
                order = await service.advance_order_status(order_id, requested, staff)
            except (InvalidTransitionError, AlreadyFinalError):
                pass
            order = await reload(db, order)
            seen.append(order.status)

        stages = ["Waiting Payment", "Processing", "Ready", "Completed"]
        indexes = [stages.index(s) for s in seen]
        assert indexes == sorted(indexes)
        assert seen[-1] == OrderStatus.COMPLETED.value

    async def test_skip_leaves_order_untouched(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product(stock_level=20)
        order = await make_order(customer, [(product, 2)])

        with pytest.raises(InvalidTransitionError):
            await OrderService(db, dispatcher).advance_order_status(order.id, "Ready", actor_for(admin))

        order = await reload(db, order)
        assert order.status == OrderStatus.WAITING_PAYMENT.value
        assert await stock_of(db, product) == 20

    async def test_pending_approval_cannot_advance(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], status=OrderStatus.PENDING_APPROVAL.value)

        with pytest.raises(InvalidTransitionError, match="approved first"):
            await OrderService(db, dispatcher).advance_order_status(order.id, "Waiting Payment", actor_for(admin))

    async def test_same_status_is_noop(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], status=OrderStatus.PROCESSING.value)
        service = OrderService(db, dispatcher)

        order = await service.advance_order_status(order.id, "Processing", actor_for(admin))

        assert order.status == OrderStatus.PROCESSING.value
        assert await service.get_status_history(order.id, actor_for(admin)) == []
        assert await notifications_for(db, order, NotificationAudience.ADMIN.value) == []

    async def test_completed_is_final(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], status=OrderStatus.COMPLETED.value)

        with pytest.raises(AlreadyFinalError):
            await OrderService(db, dispatcher).advance_order_status(order.id, "Completed", actor_for(admin))

    async def test_processing_clears_proof_timestamp(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 2)], payment_method="GCash", proof_of_payment="p.jpg")
        order.transaction.proof_updated_at = utc_now()
        await db.commit()

        order = await OrderService(db, dispatcher).advance_order_status(order.id, "Processing", actor_for(admin))

        order = await reload(db, order)
        assert order.transaction.proof_updated_at is None

    async def test_missing_order(self, db, dispatcher, admin):
        with pytest.raises(NotFoundError):
            await OrderService(db, dispatcher).advance_order_status(uuid.uuid4(), "Processing", actor_for(admin))


class TestReadyTransition:

    async def test_ready_before_scheduled_date(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product(stock_level=20)
        order = await make_order(
            customer, [(product, 2)],
            status=OrderStatus.PROCESSING.value,
            availability_date=business_today() + timedelta(days=1),
        )

        with pytest.raises(NotYetDueError):
            await OrderService(db, dispatcher).advance_order_status(order.id, "Ready", actor_for(admin))

        assert await stock_of(db, product) == 20

    async def test_ready_gate_falls_back_to_first_slot(
        self, db, dispatcher, admin, customer, make_product, make_order
    ):
        product = await make_product()
        order = await make_order(
            customer, [(product, 2)],
            status=OrderStatus.PROCESSING.value,
            slot_dates=[business_today() + timedelta(days=2), business_today()],
        )

        with pytest.raises(NotYetDueError):
            await OrderService(db, dispatcher).advance_order_status(order.id, "Ready", actor_for(admin))

    async def test_ready_deducts_and_dispatches_delivery(
        self, db, dispatcher, admin, customer, make_product, make_order
    ):
        product = await make_product(stock_level=20)
        order = await make_order(
            customer, [(product, 4)],
            status=OrderStatus.PROCESSING.value,
            availability_date=business_today(),
        )

        order = await OrderService(db, dispatcher).advance_order_status(order.id, "Ready", actor_for(admin))

        assert order.status == OrderStatus.READY.value
        assert order.stock_deducted is True
        assert await stock_of(db, product) == 16
        delivery = await db.scalar(select(Delivery).where(Delivery.order_id == order.id))
        assert delivery.delivery_status == DeliveryStatus.OUT_FOR_DELIVERY.value

    async def test_ready_moves_existing_delivery_out(
        self, db, dispatcher, admin, customer, make_product, make_order
    ):
        product = await make_product()
        order = await make_order(
            customer, [(product, 1)],
            status=OrderStatus.PROCESSING.value,
            delivery_status=DeliveryStatus.PREPARING.value,
        )

        await OrderService(db, dispatcher).advance_order_status(order.id, "Ready", actor_for(admin))

        deliveries = (await db.execute(select(Delivery).where(Delivery.order_id == order.id))).scalars().all()
        assert len(deliveries) == 1
        assert deliveries[0].delivery_status == DeliveryStatus.OUT_FOR_DELIVERY.value

    async def test_pickup_ready_and_collected(
        self, db, dispatcher, sms, admin, customer, make_product, make_order
    ):
        product = await make_product(stock_level=10)
        order = await make_order(
            customer, [(product, 1)],
            status=OrderStatus.PROCESSING.value,
            delivery_method=DeliveryMethod.PICK_UP.value,
        )
        service = OrderService(db, dispatcher)

        order = await service.advance_order_status(order.id, "Ready", actor_for(admin))

        assert await db.scalar(select(Delivery).where(Delivery.order_id == order.id)) is None
        customer_notes = await notifications_for(db, order, NotificationAudience.CUSTOMER.value)
        assert customer_notes[0].activity_type == NotificationType.ORDER_READY_PICKUP.value
        assert "ready for pickup" in sms.sent[0][1]

        order = await service.advance_order_status(order.id, "Completed", actor_for(admin))
        assert order.collected_at is not None


class TestRejectOrder:

    async def test_reject_restores_paid_order(
        self, db, dispatcher, sms, admin, customer, make_product, make_order
    ):
        product = await make_product(stock_level=95)
        order = await make_order(
            customer, [(product, 5)],
            status=OrderStatus.PROCESSING.value,
            payment_method="GCash",
            proof_of_payment="proofs/1.jpg",
            paid=True,
            stock_deducted=True,
        )

        order = await OrderService(db, dispatcher).reject_order(order.id, actor_for(admin), reason="damaged goods")

        assert await stock_of(db, product) == 100
        order = await reload(db, order)
        assert order.status == OrderStatus.REJECTED.value
        assert order.rejection_reason == "damaged goods"
        assert order.payment == "To Pay"
        assert order.stock_deducted is False
        assert order.transaction.payment_status == TransactionPaymentStatus.PENDING.value

        customer_notes = await notifications_for(db, order, NotificationAudience.CUSTOMER.value)
        assert any("damaged goods" in n.message for n in customer_notes)
        assert "damaged goods" in sms.sent[0][1]

    async def test_reject_without_deduction_leaves_stock(
        self, db, dispatcher, admin, customer, make_product, make_order
    ):
        product = await make_product(stock_level=30)
        order = await make_order(customer, [(product, 5)], status=OrderStatus.PENDING_APPROVAL.value)

        await OrderService(db, dispatcher).reject_order(order.id, actor_for(admin))

        assert await stock_of(db, product) == 30

    async def test_reject_twice(self, db, dispatcher, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 1)])
        service = OrderService(db, dispatcher)
        await service.reject_order(order.id, actor_for(admin))

        with pytest.raises(PreconditionFailedError, match="already rejected"):
            await service.reject_order(order.id, actor_for(admin))

    async def test_ready_then_reject_nets_to_zero(
        self, db, dispatcher, admin, customer, make_product, make_order
    ):
        product = await make_product(stock_level=60)
        order = await make_order(
            customer, [(product, 3), (product, 2)],
            status=OrderStatus.PROCESSING.value,
        )
        service = OrderService(db, dispatcher)

        await service.advance_order_status(order.id, "Ready", actor_for(admin))
        assert await stock_of(db, product) == 55

        await service.reject_order(order.id, actor_for(admin))
        assert await stock_of(db, product) == 60

    async def test_reject_cancels_active_delivery(
        self, db, dispatcher, admin, customer, driver, make_product, make_order, make_vehicle
    ):
        product = await make_product()
        order = await make_order(
            customer, [(product, 1)],
            status=OrderStatus.PROCESSING.value,
            delivery_status=DeliveryStatus.PREPARING.value,
        )
        van = await make_vehicle()
        deliveries = DeliveryService(db, dispatcher)
        await deliveries.assign_drivers(order.delivery.id, [driver.id], actor_for(admin))
        await deliveries.assign_vehicles(order.delivery.id, [van.id], actor_for(admin))
        assert await vehicle_status_of(db, van) == "In Use"

        await OrderService(db, dispatcher).reject_order(order.id, actor_for(admin), reason="out of stock")

        delivery = await reload(db, order.delivery)
        assert delivery.delivery_status == DeliveryStatus.CANCELLED.value
        assert delivery.cancellation_reason == "out of stock"
        assert await vehicle_status_of(db, van) == "Available"


class TestOrderQueries:

    async def test_customer_sees_own_orders(self, db, dispatcher, make_user, customer, make_product, make_order):
        other = await make_user(first_name="Other")
        product = await make_product()
        mine = await make_order(customer, [(product, 1)])
        theirs = await make_order(other, [(product, 1)])
        service = OrderService(db, dispatcher)

        listed = await service.list_orders(actor_for(customer))
        assert [o.id for o in listed] == [mine.id]

        with pytest.raises(ForbiddenError):
            await service.get_order(theirs.id, actor_for(customer))

    async def test_drivers_cannot_list_orders(self, db, dispatcher, driver):
        with pytest.raises(ForbiddenError):
            await OrderService(db, dispatcher).list_orders(actor_for(driver))

    async def test_history_is_not_lazy_loaded(self, db, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 1)])

        with pytest.raises(InvalidRequestError):
            order.status_history


class TestFailedTransition:

    async def test_storage_failure_leaves_no_partial_writes(
        self, db, dispatcher, admin, customer, make_product, make_order, monkeypatch
    ):
        cement = await make_product(stock_level=20)
        rebar = await make_product(name="Rebar 10mm", stock_level=50)
        order = await make_order(
            customer, [(cement, 4), (rebar, 10)],
            status=OrderStatus.PROCESSING.value,
            availability_date=business_today(),
            delivery_status=DeliveryStatus.PREPARING.value,
        )
        order_id = order.id

        async def disk_full(db, order, new_status, **kwargs):
            raise OperationalError("UPDATE orders", {}, Exception("database or disk is full"))

        monkeypatch.setattr(osm, "transition_order", disk_full)

        with pytest.raises(StorageFailureError):
            await OrderService(db, dispatcher).advance_order_status(order_id, "Ready", actor_for(admin))

        order = await reload(db, order)
        assert order.status == OrderStatus.PROCESSING.value
        assert order.stock_deducted is False
        assert order.delivery.delivery_status == DeliveryStatus.PREPARING.value
        assert await stock_of(db, cement) == 20
        assert await stock_of(db, rebar) == 50
        assert await db.scalar(select(func.count()).select_from(OrderStatusHistory)) == 0


class TestConcurrentTransitions:

    async def change_elsewhere(self, session_factory, order_id, status):
        async with session_factory() as other:
            await other.execute(update(Order).where(Order.id == order_id).values(status=status))
            await other.commit()

    async def test_lost_race_is_invalid_transition(self, db, session_factory, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 1)], status=OrderStatus.PROCESSING.value)
        await self.change_elsewhere(session_factory, order.id, OrderStatus.READY.value)

        with pytest.raises(InvalidTransitionError, match="changed while processing"):
            await osm.transition_order(db, order, OrderStatus.READY.value)

    async def test_lost_race_uses_given_error(self, db, session_factory, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(customer, [(product, 1)], status=OrderStatus.PROCESSING.value)
        await self.change_elsewhere(session_factory, order.id, OrderStatus.REJECTED.value)

        with pytest.raises(PreconditionFailedError, match="already rejected"):
            await osm.transition_order(
                db, order, OrderStatus.REJECTED.value,
                conflict_error=osm.rejection_blocked_error(order),
            )
        assert await db.scalar(select(func.count()).select_from(OrderStatusHistory)) == 0
