"""
Notification fan-out

State-changing services collect what should be announced in a
``NotificationOutbox`` while their transaction is open, commit, and then
hand the outbox to ``NotificationDispatcher.publish``. Publishing writes the
in-app notification rows in their own commit and then attempts SMS and
email. Every step is best effort: failures are logged and swallowed, so a
committed transition is never reported as failed because of a notification.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import settings
from fulfillment.core.exceptions import ForbiddenError, NotFoundError, StorageFailureError
from fulfillment.core.permissions import ActorContext
from fulfillment.models.notifications import Notification, NotificationAudience, NotificationType
from fulfillment.services.email_service import EmailService, SMSService, get_email_service, get_sms_service


logger = logging.getLogger(__name__)


# In-app message templates, keyed by audience then activity type
MESSAGE_TEMPLATES: Dict[str, Dict[str, str]] = {
    NotificationAudience.ADMIN.value: {
        NotificationType.ORDER_APPROVED: "Order #{order_id} was approved and is waiting for payment.",
        NotificationType.ORDER_STATUS_CHANGED: "Order #{order_id} status changed to {status}.",
        NotificationType.ORDER_REJECTED: "Order #{order_id} was rejected.{reason_suffix}",
        NotificationType.PAYMENT_METHOD_SELECTED: "Customer selected {payment_method} for order #{order_id}.",
        NotificationType.PROOF_OF_PAYMENT_UPDATED: "Customer uploaded a new proof of payment for order #{order_id}.",
        NotificationType.PROOF_REJECTED: "Proof of payment for order #{order_id} was rejected.{reason_suffix}",
        NotificationType.DELIVERY_STATUS_CHANGED: "Delivery for order #{order_id} is now {status}.",
        NotificationType.DELIVERY_COMPLETED: "Delivery for order #{order_id} was completed.",
        NotificationType.DELIVERY_CANCELLED: "Delivery for order #{order_id} was cancelled. Reason: {reason}",
    },
    NotificationAudience.CUSTOMER.value: {
        NotificationType.ORDER_APPROVED: "Your order #{order_id} has been approved. Please proceed with payment.",
        NotificationType.ORDER_PROCESSING: "Your order #{order_id} is now being processed.",
        NotificationType.ORDER_READY: "Your order #{order_id} is ready and will be delivered soon.",
        NotificationType.ORDER_READY_PICKUP: "Your order #{order_id} is ready for pickup.",
        NotificationType.ORDER_COMPLETED: "Your order #{order_id} has been completed. Thank you for your purchase!",
        NotificationType.ORDER_REJECTED: "Your order #{order_id} has been rejected.{reason_suffix}",
        NotificationType.PROOF_REJECTED: (
            "Your proof of payment for order #{order_id} was rejected. "
            "{reason_or_default}"
        ),
        NotificationType.PAYMENT_STATUS_UPDATED: "Payment for order #{order_id} is now marked as {payment}.",
        NotificationType.DELIVERY_STATUS_CHANGED: "Your delivery for order #{order_id} is now {status}.",
        NotificationType.DELIVERY_COMPLETED: "Your order #{order_id} has been delivered.",
        NotificationType.DELIVERY_CANCELLED: (
            "The delivery for your order #{order_id} was cancelled. Reason: {reason}. "
            "Please contact us to reschedule."
        ),
        NotificationType.DRIVER_ASSIGNED: "A driver has been assigned to deliver your order #{order_id}.",
    },
    NotificationAudience.DRIVER.value: {
        NotificationType.DRIVER_ASSIGNED: "You have been assigned to deliver order #{order_id}.",
        NotificationType.VEHICLE_ASSIGNED: "Vehicle(s) {vehicles} assigned for order #{order_id}.",
        NotificationType.DELIVERY_CANCELLED: "Delivery for order #{order_id} was cancelled. Reason: {reason}",
    },
}

# SMS templates, keyed by the trigger
SMS_TEMPLATES: Dict[str, str] = {
    "order_approved": "Hi {customer_name}! Your order #{order_id} has been approved. Please proceed with payment.",
    "order_rejected": "Hi {customer_name}, your order #{order_id} has been rejected.{reason_suffix}",
    "proof_rejected": (
        "Hi {customer_name}, your proof of payment for order #{order_id} was rejected. "
        "Please upload a new proof."
    ),
    "ready_for_pickup": "Hi {customer_name}! Your order #{order_id} is ready for pickup.",
    "Preparing": "Hi {customer_name}! Your order #{order_id} is now being prepared. We'll notify you when it's on the way!",
    "Out for Delivery": "Hi {customer_name}! Your order #{order_id} is now out for delivery! It should arrive soon.",
    "Delivered": "Hi {customer_name}! Your order #{order_id} has been delivered. Thank you for your purchase!",
}


class _TemplateContext(dict):
    def __missing__(self, key):
        return ""


def render_message(audience: str, activity_type: str, **context) -> str:
    """Format an in-app template; unknown keys fall back to a generic line."""
    reason = context.get("reason")
    context.setdefault("reason_suffix", f" Reason: {reason}" if reason else "")
    context.setdefault("reason_or_default", f"Reason: {reason}" if reason else "Please upload a new proof.")
    template = MESSAGE_TEMPLATES.get(audience, {}).get(activity_type)
    if template is None:
        return f"Order #{context.get('order_id')}: {activity_type.replace('_', ' ')}"
    return template.format_map(_TemplateContext(context))


def render_sms(trigger: str, **context) -> str:
    reason = context.get("reason")
    context.setdefault("reason_suffix", f" Reason: {reason}" if reason else "")
    context.setdefault("customer_name", "Customer")
    template = SMS_TEMPLATES.get(trigger, "Hi {customer_name}! Your order #{order_id} status: " + trigger)
    return template.format_map(_TemplateContext(context))


@dataclass
class NotificationMessage:
    audience: str
    activity_type: str
    message: str
    order_id: Optional[uuid.UUID] = None
    recipient_id: Optional[uuid.UUID] = None


@dataclass
class SmsMessage:
    phone: Optional[str]
    message: str


@dataclass
class EmailMessage:
    to_email: Optional[str]
    customer_name: str
    subject: str
    headline: str
    body: str
    link_url: Optional[str] = None
    link_label: Optional[str] = None


@dataclass
class NotificationOutbox:
    """Notifications gathered during one transition, published after commit."""
    notifications: List[NotificationMessage] = field(default_factory=list)
    sms: List[SmsMessage] = field(default_factory=list)
    emails: List[EmailMessage] = field(default_factory=list)

    def notify(
        self,
        audience: str,
        activity_type: str,
        order_id: Optional[uuid.UUID] = None,
        recipient_id: Optional[uuid.UUID] = None,
        message: Optional[str] = None,
        **context,
    ) -> None:
        activity_type = getattr(activity_type, "value", activity_type)
        if message is None:
            message = render_message(audience, activity_type, order_id=order_id, **context)
        self.notifications.append(NotificationMessage(
            audience=audience,
            activity_type=activity_type,
            message=message,
            order_id=order_id,
            recipient_id=recipient_id,
        ))

    def notify_admin(self, activity_type, order_id=None, **context) -> None:
        self.notify(NotificationAudience.ADMIN.value, activity_type, order_id=order_id, **context)

    def notify_customer(self, activity_type, customer_id, order_id=None, **context) -> None:
        self.notify(
            NotificationAudience.CUSTOMER.value, activity_type,
            order_id=order_id, recipient_id=customer_id, **context
        )

    def notify_driver(self, activity_type, driver_id, order_id=None, **context) -> None:
        self.notify(
            NotificationAudience.DRIVER.value, activity_type,
            order_id=order_id, recipient_id=driver_id, **context
        )

    def send_sms(self, phone: Optional[str], trigger: str, **context) -> None:
        self.sms.append(SmsMessage(phone=phone, message=render_sms(trigger, **context)))

    def send_email(self, **kwargs) -> None:
        self.emails.append(EmailMessage(**kwargs))

    def __len__(self) -> int:
        return len(self.notifications) + len(self.sms) + len(self.emails)


def frontend_link(path: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/{path.lstrip('/')}"


class NotificationDispatcher:
    """
    Post-commit publisher for a NotificationOutbox.

    ``publish`` never raises.
    """

    def __init__(
        self,
        db: AsyncSession,
        email_service: Optional[EmailService] = None,
        sms_service: Optional[SMSService] = None,
    ):
        self.db = db
        self.email_service = email_service or get_email_service()
        self.sms_service = sms_service or get_sms_service()

    async def publish(self, outbox: NotificationOutbox) -> None:
        if outbox.notifications:
            await self._store_notifications(outbox.notifications)

        for sms in outbox.sms:
            try:
                await self.sms_service.send_sms(sms.phone, sms.message)
            except Exception as e:
                logger.error(f"SMS dispatch failed: {e}")

        for email in outbox.emails:
            if not email.to_email:
                continue
            try:
                await asyncio.to_thread(
                    self.email_service.send_status_email,
                    email.to_email,
                    email.customer_name,
                    email.subject,
                    email.headline,
                    email.body,
                    email.link_url,
                    email.link_label,
                )
            except Exception as e:
                logger.error(f"Email dispatch failed: {e}")

    async def _store_notifications(self, messages: List[NotificationMessage]) -> None:
        # Separate session: a failed insert must not roll back (and expire)
        # the entities the caller is about to return.
        async with AsyncSession(self.db.bind, expire_on_commit=False) as session:
            try:
                session.add_all([
                    Notification(
                        audience=message.audience,
                        activity_type=message.activity_type,
                        message=message.message,
                        order_id=message.order_id,
                        recipient_id=message.recipient_id,
                    )
                    for message in messages
                ])
                await session.commit()
                logger.info(f"Stored {len(messages)} notification(s)")
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to store notifications: {e}")


class NotificationService:
    """Notification inbox reads and read-flag updates."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _inbox_filter(self, actor: ActorContext):
        if actor.is_staff:
            return [Notification.audience == NotificationAudience.ADMIN.value]
        audience = (
            NotificationAudience.DRIVER.value if actor.is_driver
            else NotificationAudience.CUSTOMER.value
        )
        return [Notification.audience == audience, Notification.recipient_id == actor.user_id]

    async def list_notifications(
        self,
        actor: ActorContext,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        stmt = select(Notification).where(*self._inbox_filter(actor))
        if unread_only:
            stmt = stmt.where(Notification.is_read == False)  # noqa: E712
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def mark_read(self, actor: ActorContext, notification_id: uuid.UUID) -> Notification:
        notification = await self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("Notification not found", details={"notification_id": str(notification_id)})

        if actor.is_staff:
            allowed = notification.audience == NotificationAudience.ADMIN.value
        else:
            allowed = notification.recipient_id == actor.user_id
        if not allowed:
            raise ForbiddenError("Notification belongs to another user")

        try:
            if not notification.is_read:
                notification.is_read = True
                notification.read_at = datetime.now(timezone.utc)
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to mark notification {notification_id} read: {e}")
            raise StorageFailureError("Could not update notification")
        return notification

    async def mark_all_read(self, actor: ActorContext) -> int:
        try:
            result = await self.db.execute(
                update(Notification)
                .where(*self._inbox_filter(actor), Notification.is_read == False)  # noqa: E712
                .values(is_read=True, read_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to mark notifications read: {e}")
            raise StorageFailureError("Could not update notifications")
        return result.rowcount
