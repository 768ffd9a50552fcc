"""
Fulfillment error taxonomy.

Every failure raised by the order/payment/delivery services carries a
``kind`` and a human-readable message. The API layer maps the kind to an
HTTP status (see ``ERROR_STATUS_CODES``) and renders
``{"detail": {"kind", "message", "details"}}``.
"""

from typing import Dict, Optional


class FulfillmentError(Exception):
    """Base exception for fulfillment errors."""
    kind = "FulfillmentError"

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(FulfillmentError):
    """Referenced order, delivery, vehicle or driver does not exist."""
    kind = "NotFound"


class ForbiddenError(FulfillmentError):
    """Actor's role or ownership does not permit the operation."""
    kind = "Forbidden"


class InvalidTransitionError(FulfillmentError):
    """Requested status is not a legal successor of the current status."""
    kind = "InvalidTransition"


class AlreadyFinalError(FulfillmentError):
    """Entity is already in a terminal state."""
    kind = "AlreadyFinal"


class NotYetDueError(FulfillmentError):
    """Date-gated transition requested before its scheduled date."""
    kind = "NotYetDue"


class PreconditionFailedError(FulfillmentError):
    """Operation-specific precondition violated."""
    kind = "PreconditionFailed"


class StorageFailureError(FulfillmentError):
    """Underlying persistence error. The transaction was rolled back."""
    kind = "StorageFailure"


ERROR_STATUS_CODES: Dict[str, int] = {
    NotFoundError.kind: 404,
    ForbiddenError.kind: 403,
    InvalidTransitionError.kind: 409,
    AlreadyFinalError.kind: 409,
    NotYetDueError.kind: 422,
    PreconditionFailedError.kind: 400,
    StorageFailureError.kind: 500,
}


def status_code_for(exc: FulfillmentError) -> int:
    return ERROR_STATUS_CODES.get(exc.kind, 400)
