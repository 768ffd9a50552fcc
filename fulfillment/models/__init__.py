from fulfillment.models.user import User
from fulfillment.models.product import Product, ProductVariation, StockStatus
from fulfillment.models.order import (
    Order,
    OrderItem,
    OrderAvailabilitySlot,
    OrderStatusHistory,
    Transaction,
    OrderStatus,
    DeliveryMethod,
    PaymentMethod,
    OrderPaymentState,
    TransactionPaymentStatus,
)
from fulfillment.models.delivery import (
    Delivery,
    DeliveryStatus,
    delivery_drivers,
    delivery_vehicles,
    ACTIVE_DELIVERY_STATUSES,
)
from fulfillment.models.fleet import FleetVehicle, VehicleStatus, CapacityUnit
from fulfillment.models.notifications import Notification, NotificationAudience, NotificationType

__all__ = [
    "User",
    "Product",
    "ProductVariation",
    "StockStatus",
    "Order",
    "OrderItem",
    "OrderAvailabilitySlot",
    "OrderStatusHistory",
    "Transaction",
    "OrderStatus",
    "DeliveryMethod",
    "PaymentMethod",
    "OrderPaymentState",
    "TransactionPaymentStatus",
    "Delivery",
    "DeliveryStatus",
    "delivery_drivers",
    "delivery_vehicles",
    "ACTIVE_DELIVERY_STATUSES",
    "FleetVehicle",
    "VehicleStatus",
    "CapacityUnit",
    "Notification",
    "NotificationAudience",
    "NotificationType",
]
