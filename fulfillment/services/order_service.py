import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.clock import is_due, utc_now
from fulfillment.core.exceptions import (
    AlreadyFinalError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    NotYetDueError,
)
from fulfillment.core.permissions import ActorContext, require_staff
from fulfillment.models.delivery import Delivery, DeliveryStatus
from fulfillment.models.notifications import NotificationType
from fulfillment.models.order import (
    Order,
    OrderPaymentState,
    OrderStatus,
    OrderStatusHistory,
    TransactionPaymentStatus,
)
from fulfillment.services import delivery_state_machine as dsm
from fulfillment.services import order_state_machine as osm
from fulfillment.services.delivery_service import new_delivery
from fulfillment.services.fleet_service import release_vehicles
from fulfillment.services.inventory_ledger import InventoryLedger
from fulfillment.services.notification_service import (
    NotificationDispatcher,
    NotificationOutbox,
    frontend_link,
)
from fulfillment.services.unit_of_work import atomic


logger = logging.getLogger(__name__)


# Customer-facing notification for each status reached through AdvanceOrderStatus
CUSTOMER_STATUS_NOTIFICATIONS = {
    OrderStatus.PROCESSING.value: NotificationType.ORDER_PROCESSING,
    OrderStatus.READY.value: NotificationType.ORDER_READY,
    OrderStatus.COMPLETED.value: NotificationType.ORDER_COMPLETED,
}


class OrderService:
    """Order lifecycle: approval, status advancement and rejection."""

    def __init__(self, db: AsyncSession, dispatcher: Optional[NotificationDispatcher] = None):
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher(db)
        self.ledger = InventoryLedger(db)

    # ==================== QUERIES ====================

    async def get_order(self, order_id: uuid.UUID, actor: ActorContext) -> Order:
        order = await self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found", details={"order_id": str(order_id)})
        if actor.is_customer and order.customer_id != actor.user_id:
            raise ForbiddenError("This order belongs to another customer")
        if actor.is_driver and not (order.delivery and order.delivery.is_assigned_to(actor.user_id)):
            raise ForbiddenError("This order is not assigned to you")
        return order

    async def list_orders(
        self,
        actor: ActorContext,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        if actor.is_driver:
            raise ForbiddenError("Drivers see orders through their delivery list")
        stmt = select(Order).order_by(Order.created_at.desc()).offset(offset).limit(limit)
        if actor.is_customer:
            stmt = stmt.where(Order.customer_id == actor.user_id)
        if status:
            stmt = stmt.where(Order.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_status_history(self, order_id: uuid.UUID, actor: ActorContext) -> List[OrderStatusHistory]:
        await self.get_order(order_id, actor)
        result = await self.db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at)
        )
        return list(result.scalars().all())

    # ==================== APPROVAL ====================

    async def approve_order(self, order_id: uuid.UUID, actor: ActorContext) -> Order:
        """Pending Approval -> Waiting Payment."""
        require_staff(actor, "approve orders")

        outbox = NotificationOutbox()
        async with atomic(self.db, "order approval"):
            order = await self._lock_order(order_id)
            if osm.is_terminal(order.status):
                raise AlreadyFinalError(f"Order is already {order.status}")
            if not osm.can_approve(order.status):
                raise InvalidTransitionError(
                    f"Order is in {order.status} status and cannot be approved",
                    details={"current_status": order.status}
                )

            now = utc_now()
            await osm.transition_order(
                self.db, order, OrderStatus.WAITING_PAYMENT.value,
                changed_by=actor.user_id,
                note="Approved",
                approved_at=now,
                approved_by=actor.user_id,
            )

            customer = order.customer
            outbox.notify_admin(NotificationType.ORDER_APPROVED, order_id=order.id)
            outbox.notify_customer(NotificationType.ORDER_APPROVED, order.customer_id, order_id=order.id)
            outbox.send_sms(customer.phone, "order_approved", customer_name=customer.first_name, order_id=order.id)
            outbox.send_email(
                to_email=customer.email,
                customer_name=customer.first_name,
                subject=f"Order #{order.id} approved",
                headline="Your order has been approved",
                body=f"Your order #{order.id} has been approved. Please proceed with payment.",
                link_url=frontend_link(f"orders/{order.id}/payment"),
                link_label="Pay now",
            )

        logger.info(f"Order {order.id} approved by {actor.user_id}")
        await self.dispatcher.publish(outbox)
        return order

    # ==================== STATUS ====================

    async def advance_order_status(
        self,
        order_id: uuid.UUID,
        requested_status: str,
        actor: ActorContext,
    ) -> Order:
        """
        Move an order one step along Waiting Payment -> Processing -> Ready ->
        Completed.

        Ready is date-gated and deducts stock (once per order); delivery
        orders also get their delivery sent out. Requesting the current
        status again changes nothing.
        """
        require_staff(actor, "update order status")

        outbox = NotificationOutbox()
        async with atomic(self.db, "order status update"):
            order = await self._lock_order(order_id)
            previous_status = order.status

            if not osm.validate_advance(previous_status, requested_status):
                logger.info(f"Order {order.id} already {requested_status}, nothing to do")
                return order

            now = utc_now()
            extra = {}

            if requested_status == OrderStatus.PROCESSING.value:
                if order.transaction is not None:
                    order.transaction.proof_updated_at = None

            elif requested_status == OrderStatus.READY.value:
                if not is_due(order.scheduled_date):
                    raise NotYetDueError(
                        f"Order is scheduled for {order.scheduled_date} and cannot be marked Ready yet",
                        details={"scheduled_date": str(order.scheduled_date)}
                    )
                await self.ledger.deduct_for_order(order)
                if not order.is_pickup:
                    await self._dispatch_delivery(order)

            elif requested_status == OrderStatus.COMPLETED.value and order.is_pickup:
                extra["collected_at"] = now

            await osm.transition_order(
                self.db, order, requested_status,
                changed_by=actor.user_id,
                **extra,
            )

            self._queue_status_notifications(outbox, order, requested_status)

        logger.info(f"Order {order.id}: {previous_status} -> {requested_status}")
        await self.dispatcher.publish(outbox)
        return order

    async def _dispatch_delivery(self, order: Order) -> Delivery:
        """Ready delivery orders go out: create the delivery if needed and mark it Out for Delivery."""
        delivery = order.delivery
        if delivery is None:
            delivery = await new_delivery(self.db, order)
        if not dsm.is_terminal(delivery.delivery_status):
            delivery.delivery_status = DeliveryStatus.OUT_FOR_DELIVERY.value
            delivery.updated_at = utc_now()
        return delivery

    def _queue_status_notifications(self, outbox: NotificationOutbox, order: Order, new_status: str) -> None:
        outbox.notify_admin(NotificationType.ORDER_STATUS_CHANGED, order_id=order.id, status=new_status)

        activity = CUSTOMER_STATUS_NOTIFICATIONS.get(new_status, NotificationType.ORDER_STATUS_CHANGED)
        if new_status == OrderStatus.READY.value and order.is_pickup:
            activity = NotificationType.ORDER_READY_PICKUP
        outbox.notify_customer(activity, order.customer_id, order_id=order.id, status=new_status)

        if activity == NotificationType.ORDER_READY_PICKUP:
            customer = order.customer
            outbox.send_sms(customer.phone, "ready_for_pickup", customer_name=customer.first_name, order_id=order.id)

    # ==================== REJECTION ====================

    async def reject_order(
        self,
        order_id: uuid.UUID,
        actor: ActorContext,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Reject an order from any status except Rejected.

        Any stock held for the order goes back, a Paid payment drops to
        To Pay / Pending, and an active delivery is cancelled so its vehicles
        are freed.
        """
        require_staff(actor, "reject orders")
        reason = (reason or "").strip() or None

        outbox = NotificationOutbox()
        async with atomic(self.db, "order rejection"):
            order = await self._lock_order(order_id)
            if not osm.can_reject(order.status):
                raise osm.rejection_blocked_error(order)

            await self.ledger.restore_for_order(order)

            transaction = order.transaction
            if transaction is not None and transaction.payment_status == TransactionPaymentStatus.PAID.value:
                transaction.payment_status = TransactionPaymentStatus.PENDING.value

            delivery = order.delivery
            if delivery is not None and not dsm.is_terminal(delivery.delivery_status):
                now = utc_now()
                delivery.delivery_status = DeliveryStatus.CANCELLED.value
                delivery.cancellation_reason = reason or "Order rejected"
                delivery.cancelled_by = actor.user_id
                delivery.cancelled_at = now
                delivery.updated_at = now
                await release_vehicles(self.db, delivery.vehicles, exclude_delivery_id=delivery.id)

            await osm.transition_order(
                self.db, order, OrderStatus.REJECTED.value,
                changed_by=actor.user_id,
                note=reason,
                conflict_error=osm.rejection_blocked_error(order),
                rejection_reason=reason,
                rejected_at=utc_now(),
                rejected_by=actor.user_id,
                payment=OrderPaymentState.TO_PAY.value,
            )

            customer = order.customer
            outbox.notify_admin(NotificationType.ORDER_REJECTED, order_id=order.id, reason=reason)
            outbox.notify_customer(NotificationType.ORDER_REJECTED, order.customer_id, order_id=order.id, reason=reason)
            outbox.send_sms(
                customer.phone, "order_rejected",
                customer_name=customer.first_name, order_id=order.id, reason=reason
            )

        logger.info(f"Order {order.id} rejected by {actor.user_id}")
        await self.dispatcher.publish(outbox)
        return order

    # ==================== HELPERS ====================

    async def _lock_order(self, order_id: uuid.UUID) -> Order:
        return await osm.lock_order(self.db, order_id)
