"""
Delivery Service

Dispatch lifecycle for Standard Delivery orders: explicit creation,
status advancement by staff and assigned drivers, driver/vehicle
assignment, and cancellation.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.clock import is_due, utc_now
from fulfillment.core.enum_utils import normalize_delivery_status
from fulfillment.core.exceptions import (
    AlreadyFinalError,
    FulfillmentError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    NotYetDueError,
    PreconditionFailedError,
)
from fulfillment.core.permissions import ActorContext, Role
from fulfillment.models.delivery import Delivery, DeliveryStatus, delivery_drivers
from fulfillment.models.fleet import VehicleStatus
from fulfillment.models.notifications import NotificationType
from fulfillment.models.order import Order, OrderStatus
from fulfillment.models.user import User
from fulfillment.services import delivery_state_machine as dsm
from fulfillment.services import order_state_machine as osm
from fulfillment.services.fleet_service import lock_vehicles, mark_in_use, release_vehicles
from fulfillment.services.inventory_ledger import InventoryLedger
from fulfillment.services.notification_service import (
    NotificationDispatcher,
    NotificationOutbox,
    frontend_link,
)
from fulfillment.services.unit_of_work import atomic


logger = logging.getLogger(__name__)


@dataclass
class CancellationResult:
    delivery: Delivery
    was_in_progress: bool


async def new_delivery(db: AsyncSession, order: Order) -> Delivery:
    """Create the single Pending delivery for ``order`` inside the caller's transaction."""
    delivery = Delivery(
        order=order,
        delivery_status=DeliveryStatus.PENDING.value,
        delivery_details={},
        drivers=[],
        vehicles=[],
    )
    db.add(delivery)
    await db.flush()
    logger.info(f"Created delivery {delivery.id} for order {order.id}")
    return delivery


class DeliveryService:
    """Service for delivery dispatch operations."""

    def __init__(self, db: AsyncSession, dispatcher: Optional[NotificationDispatcher] = None):
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher(db)

    # ==================== QUERIES ====================

    async def get_delivery(self, delivery_id: uuid.UUID, actor: ActorContext) -> Delivery:
        delivery = await self.db.get(Delivery, delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery not found", details={"delivery_id": str(delivery_id)})
        if actor.is_driver and not delivery.is_assigned_to(actor.user_id):
            raise ForbiddenError("This delivery is not assigned to you")
        if actor.is_customer and delivery.order.customer_id != actor.user_id:
            raise ForbiddenError("This delivery belongs to another customer")
        return delivery

    async def list_deliveries(
        self,
        actor: ActorContext,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Delivery]:
        if not actor.is_staff:
            raise ForbiddenError("Only staff can list all deliveries")
        stmt = select(Delivery).order_by(Delivery.created_at.desc()).offset(offset).limit(limit)
        if status:
            stmt = stmt.where(Delivery.delivery_status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_driver_deliveries(self, actor: ActorContext) -> List[Delivery]:
        """Deliveries assigned to the calling driver, newest first."""
        if not actor.is_driver:
            raise ForbiddenError("Only delivery drivers have a delivery work list")
        result = await self.db.execute(
            select(Delivery)
            .join(delivery_drivers, delivery_drivers.c.delivery_id == Delivery.id)
            .where(delivery_drivers.c.driver_id == actor.user_id)
            .order_by(Delivery.created_at.desc())
        )
        return list(result.scalars().all())

    # ==================== CREATE ====================

    async def create_delivery(self, order_id: uuid.UUID, actor: ActorContext) -> Delivery:
        if not actor.is_staff:
            raise ForbiddenError("Only staff can create deliveries")

        async with atomic(self.db, "create delivery"):
            order = await self._lock_order(order_id)
            if order.is_pickup:
                raise PreconditionFailedError("Pickup orders do not have deliveries")
            if order.status in (OrderStatus.REJECTED.value, OrderStatus.CANCELLED.value):
                raise PreconditionFailedError(f"Cannot create a delivery for a {order.status} order")
            if order.delivery is not None:
                raise PreconditionFailedError(
                    "Order already has a delivery",
                    details={"delivery_id": str(order.delivery.id)}
                )
            delivery = await new_delivery(self.db, order)

        return delivery

    # ==================== STATUS ====================

    async def advance_delivery_status(
        self,
        actor: ActorContext,
        requested_status: str,
        delivery_id: Optional[uuid.UUID] = None,
        order_id: Optional[uuid.UUID] = None,
        proof_image: Optional[str] = None,
    ) -> Delivery:
        """
        Move a delivery one step along Pending -> Preparing -> Out for Delivery
        -> Delivered, or cancel it (staff only).

        Drivers may only act on deliveries assigned to them and never create
        one. Staff addressing an order without a delivery get one created.
        """
        if not (actor.is_staff or actor.is_driver):
            raise ForbiddenError("Only staff and delivery drivers can update deliveries")

        new_status = normalize_delivery_status(requested_status)
        if new_status is None:
            raise InvalidTransitionError(
                f"Invalid delivery status '{requested_status}'",
                details={"allowed": [s.value for s in DeliveryStatus]}
            )

        outbox = NotificationOutbox()
        async with atomic(self.db, "delivery status update"):
            delivery = await self._resolve_delivery(actor, delivery_id, order_id, create_missing=True)
            order = delivery.order

            if actor.is_driver and not delivery.is_assigned_to(actor.user_id):
                raise ForbiddenError(
                    "You are not assigned to this delivery",
                    details={"delivery_id": str(delivery.id)}
                )

            current_status = delivery.delivery_status
            if not dsm.validate_delivery_transition(current_status, new_status, actor):
                logger.info(f"Delivery {delivery.id} already {new_status}, nothing to do")
                return delivery

            if order.status == OrderStatus.PENDING_APPROVAL.value:
                raise PreconditionFailedError("Order must be approved first")
            if order.status == OrderStatus.REJECTED.value:
                raise PreconditionFailedError("Cannot update delivery for a rejected order")

            if new_status == DeliveryStatus.OUT_FOR_DELIVERY.value and not is_due(order.scheduled_date):
                raise NotYetDueError(
                    f"Order is scheduled for {order.scheduled_date}; it cannot go out for delivery yet",
                    details={"scheduled_date": str(order.scheduled_date)}
                )

            now = utc_now()
            values = {"delivery_status": new_status, "updated_at": now}
            if new_status == DeliveryStatus.DELIVERED.value:
                details = dict(delivery.delivery_details or {})
                if proof_image:
                    details["proof_image"] = proof_image
                    details["proof_uploaded_at"] = now.isoformat()
                values["delivery_details"] = details
                values["delivered_at"] = now
            elif new_status == DeliveryStatus.CANCELLED.value:
                values["cancelled_by"] = actor.user_id
                values["cancelled_at"] = now

            await self._compare_and_set(delivery, current_status, new_status, actor, values)

            if dsm.is_terminal(new_status):
                await release_vehicles(self.db, delivery.vehicles, exclude_delivery_id=delivery.id)

            if new_status == DeliveryStatus.CANCELLED.value:
                await self._cancel_order(order, actor, "Delivery cancelled by staff", now)
            else:
                mirror_status = dsm.ORDER_STATUS_MIRROR.get(new_status)
                if mirror_status:
                    await self._mirror_order_status(order, mirror_status, actor)

            self._queue_status_notifications(outbox, delivery, order, new_status)

        logger.info(f"Delivery {delivery.id}: {current_status} -> {new_status} by {actor.role}")
        await self.dispatcher.publish(outbox)
        return delivery

    async def _compare_and_set(
        self,
        delivery: Delivery,
        expected_status: str,
        new_status: str,
        actor: ActorContext,
        values: dict,
    ) -> None:
        result = await self.db.execute(
            update(Delivery)
            .where(Delivery.id == delivery.id, Delivery.delivery_status == expected_status)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            return

        # Lost a race: report what the check would say against the fresh row
        await self.db.refresh(delivery, attribute_names=["delivery_status"])
        dsm.validate_delivery_transition(delivery.delivery_status, new_status, actor)
        raise InvalidTransitionError(
            f"Delivery {delivery.id} changed while processing",
            details={"expected_status": expected_status, "current_status": delivery.delivery_status}
        )

    async def _mirror_order_status(self, order: Order, target_status: str, actor: ActorContext) -> None:
        """
        Keep the order roughly in step with its delivery.

        Best effort: runs in a savepoint, only ever moves the order forward,
        and a failure is logged without affecting the delivery update.
        """
        if osm.is_terminal(order.status):
            return
        if osm.stage_index(target_status) <= osm.stage_index(order.status):
            return

        try:
            async with self.db.begin_nested():
                if target_status == OrderStatus.READY.value:
                    await InventoryLedger(self.db).deduct_for_order(order)
                await osm.transition_order(
                    self.db, order, target_status,
                    changed_by=actor.user_id,
                    note="Synced from delivery status",
                )
        except (FulfillmentError, SQLAlchemyError) as e:
            logger.warning(f"Order {order.id} status sync to {target_status} failed: {e}")
            await self.db.refresh(order)

    async def _cancel_order(self, order: Order, actor: ActorContext, note: str, now) -> None:
        """A cancelled delivery cancels its order unless the order is already final."""
        if osm.is_terminal(order.status):
            return
        await osm.transition_order(
            self.db, order, OrderStatus.CANCELLED.value,
            changed_by=actor.user_id,
            note=note,
            cancelled_at=now,
        )

    def _queue_status_notifications(
        self,
        outbox: NotificationOutbox,
        delivery: Delivery,
        order: Order,
        new_status: str,
    ) -> None:
        customer = order.customer
        if new_status == DeliveryStatus.DELIVERED.value:
            activity = NotificationType.DELIVERY_COMPLETED
        elif new_status == DeliveryStatus.CANCELLED.value:
            activity = NotificationType.DELIVERY_CANCELLED
        else:
            activity = NotificationType.DELIVERY_STATUS_CHANGED

        context = {"order_id": order.id, "status": new_status}
        if new_status == DeliveryStatus.CANCELLED.value:
            context["reason"] = "Cancelled by staff"
        outbox.notify_admin(activity, **context)
        outbox.notify_customer(activity, order.customer_id, **context)

        if new_status in dsm.SMS_STATUSES:
            outbox.send_sms(customer.phone, new_status, customer_name=customer.first_name, order_id=order.id)

        if new_status == DeliveryStatus.OUT_FOR_DELIVERY.value:
            outbox.send_email(
                to_email=customer.email,
                customer_name=customer.first_name,
                subject=f"Order #{order.id} is on the way",
                headline="Your order is out for delivery",
                body=f"Your order #{order.id} has left our store and is on its way to you.",
                link_url=frontend_link(f"orders/{order.id}/tracking"),
                link_label="Track delivery",
            )
        elif new_status == DeliveryStatus.DELIVERED.value:
            outbox.send_email(
                to_email=customer.email,
                customer_name=customer.first_name,
                subject=f"Order #{order.id} delivered",
                headline="Your order has been delivered",
                body=f"Your order #{order.id} has been delivered. Thank you for your purchase!",
                link_url=frontend_link(f"orders/{order.id}"),
                link_label="View order",
            )

    # ==================== ASSIGNMENT ====================

    async def assign_drivers(
        self,
        delivery_id: uuid.UUID,
        driver_ids: List[uuid.UUID],
        actor: ActorContext,
    ) -> Delivery:
        """Replace the delivery's driver set. An empty list unassigns everyone."""
        if not actor.is_staff:
            raise ForbiddenError("Only staff can assign drivers")
        driver_ids = list(dict.fromkeys(driver_ids))

        outbox = NotificationOutbox()
        async with atomic(self.db, "driver assignment"):
            delivery = await self._lock_delivery(delivery_id)
            self._ensure_assignable(delivery)

            drivers = []
            if driver_ids:
                result = await self.db.execute(select(User).where(User.id.in_(driver_ids)))
                found = {user.id: user for user in result.scalars().all()}
                missing = [str(i) for i in driver_ids if i not in found]
                if missing:
                    raise NotFoundError("Driver(s) not found", details={"driver_ids": missing})
                not_drivers = [u.full_name for u in found.values() if u.role != Role.DELIVERY_DRIVER.value]
                if not_drivers:
                    raise PreconditionFailedError(
                        f"Not delivery drivers: {', '.join(not_drivers)}",
                        details={"users": not_drivers}
                    )
                drivers = [found[i] for i in driver_ids]

            previous = set(delivery.driver_ids)
            delivery.drivers = drivers
            delivery.updated_at = utc_now()

            order = delivery.order
            for driver in drivers:
                if driver.id not in previous:
                    outbox.notify_driver(NotificationType.DRIVER_ASSIGNED, driver.id, order_id=order.id)
            if drivers:
                outbox.notify_customer(NotificationType.DRIVER_ASSIGNED, order.customer_id, order_id=order.id)

        logger.info(f"Delivery {delivery.id} drivers set to {[str(i) for i in driver_ids]}")
        await self.dispatcher.publish(outbox)
        return delivery

    async def assign_vehicles(
        self,
        delivery_id: uuid.UUID,
        vehicle_ids: List[uuid.UUID],
        actor: ActorContext,
    ) -> Delivery:
        """
        Replace the delivery's vehicle set.

        New vehicles become In Use; vehicles dropped from the set go back to
        Available when no other active delivery uses them. Assignment rows and
        vehicle statuses commit together.
        """
        if not actor.is_staff:
            raise ForbiddenError("Only staff can assign vehicles")
        vehicle_ids = list(dict.fromkeys(vehicle_ids))

        outbox = NotificationOutbox()
        async with atomic(self.db, "vehicle assignment"):
            delivery = await self._lock_delivery(delivery_id)
            self._ensure_assignable(delivery)

            if vehicle_ids and not delivery.drivers:
                raise PreconditionFailedError(
                    "Please assign a driver first before assigning vehicles",
                    details={"delivery_id": str(delivery.id)}
                )

            previous_ids = delivery.vehicle_ids
            locked = await lock_vehicles(self.db, set(vehicle_ids) | set(previous_ids))
            by_id = {vehicle.id: vehicle for vehicle in locked}

            missing = [str(i) for i in vehicle_ids if i not in by_id]
            if missing:
                raise NotFoundError("Vehicle(s) not found", details={"vehicle_ids": missing})

            vehicles = [by_id[i] for i in vehicle_ids]
            unavailable = [v.model for v in vehicles if v.status == VehicleStatus.UNAVAILABLE.value]
            if unavailable:
                raise PreconditionFailedError(
                    f"The following vehicles are unavailable: {', '.join(unavailable)}",
                    details={"vehicles": unavailable}
                )

            delivery.vehicles = vehicles
            delivery.updated_at = utc_now()
            mark_in_use(vehicles)
            removed = [by_id[i] for i in previous_ids if i not in vehicle_ids and i in by_id]
            await release_vehicles(self.db, removed, exclude_delivery_id=delivery.id)

            if vehicles:
                models = ", ".join(v.model for v in vehicles)
                for driver in delivery.drivers:
                    outbox.notify_driver(
                        NotificationType.VEHICLE_ASSIGNED, driver.id,
                        order_id=delivery.order_id, vehicles=models
                    )

        logger.info(f"Delivery {delivery.id} vehicles set to {[str(i) for i in vehicle_ids]}")
        await self.dispatcher.publish(outbox)
        return delivery

    # ==================== CANCEL ====================

    async def cancel_delivery(
        self,
        actor: ActorContext,
        reason: str,
        notes: Optional[str] = None,
        delivery_id: Optional[uuid.UUID] = None,
        order_id: Optional[uuid.UUID] = None,
    ) -> CancellationResult:
        """
        Cancel a delivery and its order (staff only).

        ``was_in_progress`` tells the caller the truck had already left, so
        it can decide whether to reach the driver separately.
        """
        if not actor.is_staff:
            raise ForbiddenError("Only admins and store employees can cancel deliveries")
        reason = (reason or "").strip()
        if not reason:
            raise PreconditionFailedError("Cancellation reason is required")

        outbox = NotificationOutbox()
        async with atomic(self.db, "delivery cancellation"):
            delivery = await self._resolve_delivery(actor, delivery_id, order_id, create_missing=False)
            order = delivery.order
            current_status = delivery.delivery_status

            if dsm.is_terminal(current_status):
                raise AlreadyFinalError(
                    f"Delivery is already {current_status}",
                    details={"current_status": current_status}
                )
            was_in_progress = current_status == DeliveryStatus.OUT_FOR_DELIVERY.value

            now = utc_now()
            await self._compare_and_set(
                delivery, current_status, DeliveryStatus.CANCELLED.value, actor,
                {
                    "delivery_status": DeliveryStatus.CANCELLED.value,
                    "cancellation_reason": reason,
                    "internal_notes": notes,
                    "cancelled_by": actor.user_id,
                    "cancelled_at": now,
                    "updated_at": now,
                }
            )
            await release_vehicles(self.db, delivery.vehicles, exclude_delivery_id=delivery.id)

            await self._cancel_order(order, actor, f"Delivery cancelled: {reason}", now)

            customer = order.customer
            outbox.notify_admin(NotificationType.DELIVERY_CANCELLED, order_id=order.id, reason=reason)
            outbox.notify_customer(
                NotificationType.DELIVERY_CANCELLED, order.customer_id, order_id=order.id, reason=reason
            )
            for driver in delivery.drivers:
                outbox.notify_driver(NotificationType.DELIVERY_CANCELLED, driver.id, order_id=order.id, reason=reason)
            outbox.send_email(
                to_email=customer.email,
                customer_name=customer.first_name,
                subject=f"Delivery for order #{order.id} cancelled",
                headline="Your delivery was cancelled",
                body=f"The delivery for your order #{order.id} was cancelled. Reason: {reason}. "
                     "You can pick a new delivery date using the link below.",
                link_url=frontend_link(f"orders/{order.id}/reschedule"),
                link_label="Reschedule delivery",
            )

        logger.info(f"Delivery {delivery.id} cancelled (was_in_progress={was_in_progress})")
        await self.dispatcher.publish(outbox)
        return CancellationResult(delivery=delivery, was_in_progress=was_in_progress)

    # ==================== HELPERS ====================

    async def _lock_order(self, order_id: uuid.UUID) -> Order:
        return await osm.lock_order(self.db, order_id)

    async def _lock_delivery(self, delivery_id: uuid.UUID) -> Delivery:
        delivery = await self.db.scalar(
            select(Delivery)
            .where(Delivery.id == delivery_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if delivery is None:
            raise NotFoundError("Delivery not found", details={"delivery_id": str(delivery_id)})
        return delivery

    async def _resolve_delivery(
        self,
        actor: ActorContext,
        delivery_id: Optional[uuid.UUID],
        order_id: Optional[uuid.UUID],
        create_missing: bool,
    ) -> Delivery:
        if delivery_id is not None:
            return await self._lock_delivery(delivery_id)
        if order_id is None:
            raise PreconditionFailedError("Either delivery_id or order_id is required")

        order = await self._lock_order(order_id)
        if order.delivery is not None:
            return await self._lock_delivery(order.delivery.id)

        if not create_missing or not actor.is_staff:
            raise NotFoundError("Delivery not found for this order", details={"order_id": str(order_id)})
        if order.is_pickup:
            raise PreconditionFailedError("Pickup orders do not have deliveries")
        return await new_delivery(self.db, order)

    @staticmethod
    def _ensure_assignable(delivery: Delivery) -> None:
        if delivery.is_terminal:
            raise AlreadyFinalError(
                f"Delivery is already {delivery.delivery_status}; assignments are closed",
                details={"current_status": delivery.delivery_status}
            )
