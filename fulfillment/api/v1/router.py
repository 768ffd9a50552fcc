from fastapi import APIRouter

from fulfillment.api.v1.endpoints import (
    orders,
    payments,
    deliveries,
    fleet,
    notifications,
)


api_router = APIRouter()

api_router.include_router(orders.router, prefix="/orders")
api_router.include_router(payments.router, prefix="/orders")
api_router.include_router(deliveries.router, prefix="/deliveries")
api_router.include_router(fleet.router, prefix="/fleet")
api_router.include_router(notifications.router, prefix="/notifications")
