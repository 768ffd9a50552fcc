"""
Payment Service

Payment sub-state of an order: the customer's method selection and
proof-of-payment upload, staff rejection of a proof, and the staff
override of the payment flag.

A first GCash upload with a proof marks the payment Paid and takes the
order's stock out of inventory. A re-upload (there was already a proof, or
the last one was rejected) stays Pending until staff review it.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.clock import utc_now
from fulfillment.core.exceptions import ForbiddenError, PreconditionFailedError
from fulfillment.core.permissions import ActorContext, require_staff
from fulfillment.models.notifications import NotificationType
from fulfillment.models.order import (
    Order,
    OrderPaymentState,
    OrderStatus,
    PaymentMethod,
    Transaction,
    TransactionPaymentStatus,
)
from fulfillment.services import order_state_machine as osm
from fulfillment.services.inventory_ledger import InventoryLedger
from fulfillment.services.notification_service import (
    NotificationDispatcher,
    NotificationOutbox,
    frontend_link,
)
from fulfillment.services.unit_of_work import atomic


logger = logging.getLogger(__name__)


VALID_PAYMENT_METHODS = [method.value for method in PaymentMethod]


class PaymentService:
    """Service for order payment state."""

    def __init__(self, db: AsyncSession, dispatcher: Optional[NotificationDispatcher] = None):
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher(db)
        self.ledger = InventoryLedger(db)

    async def select_payment_method(
        self,
        order_id: uuid.UUID,
        payment_method: str,
        actor: ActorContext,
        proof_of_payment: Optional[str] = None,
    ) -> Order:
        if payment_method not in VALID_PAYMENT_METHODS:
            raise PreconditionFailedError(
                f"Invalid payment method '{payment_method}'",
                details={"allowed": VALID_PAYMENT_METHODS}
            )
        proof_of_payment = (proof_of_payment or "").strip() or None

        outbox = NotificationOutbox()
        async with atomic(self.db, "payment method selection"):
            order = await self._lock_order(order_id)
            if order.customer_id != actor.user_id:
                raise ForbiddenError("You can only pay for your own orders")
            if order.status == OrderStatus.REJECTED.value:
                raise PreconditionFailedError("This order has been rejected and cannot be paid.")
            if osm.is_terminal(order.status):
                raise PreconditionFailedError(f"This order is already {order.status}.")

            transaction = await self._ensure_transaction(order)
            is_gcash_upload = payment_method == PaymentMethod.GCASH.value and proof_of_payment is not None
            is_reupload = is_gcash_upload and (transaction.has_proof or transaction.proof_rejected)
            newly_paid = is_gcash_upload and not is_reupload

            order.payment_method = payment_method
            order.payment = OrderPaymentState.PAID.value if newly_paid else OrderPaymentState.TO_PAY.value

            transaction.payment_method = payment_method
            transaction.payment_status = (
                TransactionPaymentStatus.PAID.value if newly_paid else TransactionPaymentStatus.PENDING.value
            )
            if proof_of_payment is not None:
                transaction.proof_of_payment = proof_of_payment
                if is_reupload:
                    transaction.proof_updated_at = utc_now()
                transaction.proof_rejected = False

            if newly_paid:
                await self.ledger.deduct_for_order(order)

            if is_gcash_upload:
                outbox.notify_admin(NotificationType.PROOF_OF_PAYMENT_UPDATED, order_id=order.id)
            else:
                outbox.notify_admin(
                    NotificationType.PAYMENT_METHOD_SELECTED,
                    order_id=order.id, payment_method=payment_method
                )

        logger.info(
            f"Order {order.id}: payment method {payment_method} "
            f"(reupload={is_reupload}, paid={newly_paid})"
        )
        await self.dispatcher.publish(outbox)
        return order

    async def reject_proof_of_payment(
        self,
        order_id: uuid.UUID,
        actor: ActorContext,
        reason: Optional[str] = None,
    ) -> Order:
        """Send a GCash proof back to the customer for a new upload."""
        require_staff(actor, "reject proof of payment")
        reason = (reason or "").strip() or None

        outbox = NotificationOutbox()
        async with atomic(self.db, "proof of payment rejection"):
            order = await self._lock_order(order_id)
            if not osm.is_placed(order.status):
                raise PreconditionFailedError(
                    f"Proof of payment cannot be rejected for an order in {order.status} status",
                    details={"current_status": order.status}
                )
            transaction = order.transaction
            if transaction is None or transaction.payment_method != PaymentMethod.GCASH.value:
                raise PreconditionFailedError("Only GCash payments have a proof of payment to reject")
            if not transaction.has_proof:
                raise PreconditionFailedError("No proof of payment to reject")

            await self.ledger.restore_for_order(order)

            transaction.proof_of_payment = None
            transaction.proof_rejected = True
            transaction.proof_updated_at = None
            transaction.payment_status = TransactionPaymentStatus.PENDING.value
            order.payment = OrderPaymentState.TO_PAY.value

            if order.status != OrderStatus.WAITING_PAYMENT.value:
                await osm.transition_order(
                    self.db, order, OrderStatus.WAITING_PAYMENT.value,
                    changed_by=actor.user_id,
                    note=f"Proof of payment rejected{': ' + reason if reason else ''}",
                    conflict_error=PreconditionFailedError("Order changed while rejecting the proof of payment"),
                )

            customer = order.customer
            outbox.notify_customer(
                NotificationType.PROOF_REJECTED, order.customer_id, order_id=order.id, reason=reason
            )
            outbox.notify_admin(NotificationType.PROOF_REJECTED, order_id=order.id, reason=reason)
            outbox.send_sms(
                customer.phone, "proof_rejected",
                customer_name=customer.first_name, order_id=order.id
            )
            outbox.send_email(
                to_email=customer.email,
                customer_name=customer.first_name,
                subject=f"Proof of payment for order #{order.id} needs attention",
                headline="Please upload a new proof of payment",
                body=(
                    f"We could not verify the proof of payment for order #{order.id}."
                    f"{' Reason: ' + reason + '.' if reason else ''} Please upload a new proof."
                ),
                link_url=frontend_link(f"orders/{order.id}/payment"),
                link_label="Upload new proof",
            )

        logger.info(f"Order {order.id}: proof of payment rejected by {actor.user_id}")
        await self.dispatcher.publish(outbox)
        return order

    async def update_payment_status(
        self,
        order_id: uuid.UUID,
        payment_status: str,
        actor: ActorContext,
    ) -> Order:
        """
        Staff override of the payment flag (Paid / To Pay).

        Marking Paid takes stock out if that has not happened yet and
        acknowledges any pending proof; going back to To Pay returns it.
        """
        require_staff(actor, "update payment status")
        if payment_status not in (OrderPaymentState.PAID.value, OrderPaymentState.TO_PAY.value):
            raise PreconditionFailedError(
                f"Invalid payment status '{payment_status}'",
                details={"allowed": [s.value for s in OrderPaymentState]}
            )

        outbox = NotificationOutbox()
        async with atomic(self.db, "payment status update"):
            order = await self._lock_order(order_id)
            if not osm.is_placed(order.status):
                raise PreconditionFailedError(
                    f"Payment status cannot be changed for an order in {order.status} status",
                    details={"current_status": order.status}
                )
            if order.payment == payment_status:
                return order

            transaction = await self._ensure_transaction(order)
            order.payment = payment_status
            if payment_status == OrderPaymentState.PAID.value:
                transaction.payment_status = TransactionPaymentStatus.PAID.value
                transaction.proof_updated_at = None
                await self.ledger.deduct_for_order(order)
            else:
                transaction.payment_status = TransactionPaymentStatus.PENDING.value
                await self.ledger.restore_for_order(order)

            outbox.notify_customer(
                NotificationType.PAYMENT_STATUS_UPDATED, order.customer_id,
                order_id=order.id, payment=payment_status
            )

        logger.info(f"Order {order.id}: payment set to {payment_status} by {actor.user_id}")
        await self.dispatcher.publish(outbox)
        return order

    # ==================== HELPERS ====================

    async def _lock_order(self, order_id: uuid.UUID) -> Order:
        return await osm.lock_order(self.db, order_id)

    async def _ensure_transaction(self, order: Order) -> Transaction:
        if order.transaction is None:
            order.transaction = Transaction(order_id=order.id, amount=order.amount)
            await self.db.flush()
        return order.transaction
