import logging

from sqlalchemy.orm import Session

from . import store
from .errors import NotFoundError, ValidationError
from .models import ORDER_PROCESSING

logger = logging.getLogger(__name__)


def retry_with_verification(db: Session, gateway, order_id: str, verification_code: str) -> dict:
    """Resubmit an order stuck on a verification challenge.

    Any success reply moves the order back to request_processing; the real
    outcome arrives later through a webhook or the poll sweep.
    """
    order = store.get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if not order.upstream_request_id:
        raise ValidationError("No upstream request ID found")

    upstream_response = gateway.retry_order(order.upstream_request_id, verification_code)

    store.update_order_state(db, order_id, ORDER_PROCESSING, upstream_response)
    logger.info("Order %s retried with verification code", order_id)
    return {
        "message": "Retry request submitted successfully",
        "upstream_response": upstream_response,
    }
