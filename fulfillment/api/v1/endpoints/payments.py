import uuid

from fastapi import APIRouter

from fulfillment.api.deps import DB, CustomerActor, StaffActor, http_error
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.schemas.order import OrderResponse
from fulfillment.schemas.payment import PaymentMethodRequest, PaymentStatusRequest, ProofRejectRequest
from fulfillment.services.payment_service import PaymentService


router = APIRouter(tags=["Payments"])


@router.post("/{order_id}/payment", response_model=OrderResponse)
async def select_payment_method(
    order_id: uuid.UUID,
    data: PaymentMethodRequest,
    db: DB,
    actor: CustomerActor,
):
    """
    Record the customer's payment method.

    A first GCash upload with a proof confirms the payment; a re-upload
    waits for staff review.
    """
    try:
        return await PaymentService(db).select_payment_method(
            order_id,
            data.payment_method.value,
            actor,
            proof_of_payment=data.proof_of_payment,
        )
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/{order_id}/payment/reject-proof", response_model=OrderResponse)
async def reject_proof_of_payment(
    order_id: uuid.UUID,
    data: ProofRejectRequest,
    db: DB,
    actor: StaffActor,
):
    try:
        return await PaymentService(db).reject_proof_of_payment(order_id, actor, reason=data.reason)
    except FulfillmentError as e:
        raise http_error(e)


@router.post("/{order_id}/payment/status", response_model=OrderResponse)
async def update_payment_status(
    order_id: uuid.UUID,
    data: PaymentStatusRequest,
    db: DB,
    actor: StaffActor,
):
    try:
        return await PaymentService(db).update_payment_status(order_id, data.payment_status.value, actor)
    except FulfillmentError as e:
        raise http_error(e)
