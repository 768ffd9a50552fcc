from pydantic import Field
from typing import Optional

from fulfillment.models.order import OrderPaymentState, PaymentMethod
from fulfillment.schemas.base import BaseCreateSchema


class PaymentMethodRequest(BaseCreateSchema):
    """Customer selects how they pay; GCash may carry a proof-of-payment reference."""
    payment_method: PaymentMethod
    proof_of_payment: Optional[str] = Field(
        None,
        max_length=500,
        description="Opaque reference to the uploaded proof image"
    )


class ProofRejectRequest(BaseCreateSchema):
    reason: Optional[str] = Field(None, max_length=1000)


class PaymentStatusRequest(BaseCreateSchema):
    payment_status: OrderPaymentState
