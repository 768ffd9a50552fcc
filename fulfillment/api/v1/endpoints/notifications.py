from typing import List
import uuid

from fastapi import APIRouter, Query

from fulfillment.api.deps import DB, CurrentActor, http_error
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.schemas.notification import MarkAllReadResponse, NotificationResponse
from fulfillment.services.notification_service import NotificationService


router = APIRouter(tags=["Notifications"])


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    db: DB,
    actor: CurrentActor,
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
):
    """Staff see the shared admin inbox; customers and drivers see their own."""
    return await NotificationService(db).list_notifications(actor, unread_only=unread_only, limit=limit)


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(db: DB, actor: CurrentActor):
    try:
        updated = await NotificationService(db).mark_all_read(actor)
    except FulfillmentError as e:
        raise http_error(e)
    return MarkAllReadResponse(updated=updated)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: uuid.UUID, db: DB, actor: CurrentActor):
    try:
        return await NotificationService(db).mark_read(actor, notification_id)
    except FulfillmentError as e:
        raise http_error(e)
