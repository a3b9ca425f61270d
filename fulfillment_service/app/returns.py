"""
Return initiation. Each precondition failure is its own error, checked in
order: unknown order, order not delivered, return already requested, no
merchant order reference in the stored upstream payload.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import store
from .config import Settings
from .errors import NotFoundError, ValidationError
from .models import ORDER_SUCCEEDED, RETURN_PENDING
from .schemas import ReturnResponse

logger = logging.getLogger(__name__)


def merchant_order_id(response) -> Optional[str]:
    if isinstance(response, dict):
        return response.get("merchant_order_id") or None
    return None


def build_return_request(settings: Settings, merchant_id: str, quantity: int, reason: Optional[str]) -> dict:
    return {
        "merchant_order_id": merchant_id,
        "products": [
            {
                "product_id": settings.product_id,
                "quantity": quantity,
                "reason_code": reason or settings.default_return_reason,
            }
        ],
        "method_code": settings.return_method_code,
    }


def request_return(
    db: Session, gateway, settings: Settings, order_id: str, quantity: int, reason: Optional[str] = None
) -> ReturnResponse:
    order = store.get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.status != ORDER_SUCCEEDED:
        raise ValidationError("Order not eligible for return")
    if store.get_return_for_order(db, order_id) is not None:
        raise ValidationError("Return already requested for this order")
    merchant_id = merchant_order_id(order.response)
    if not merchant_id:
        raise ValidationError("Merchant order ID not found")

    # Raises UpstreamResponseError when upstream omits the return request_id,
    # so no return row is ever written with an empty reference.
    payload, request_id = gateway.submit_return(
        order.upstream_request_id, build_return_request(settings, merchant_id, quantity, reason)
    )

    record = store.create_return(db, order_id, request_id, payload)
    return ReturnResponse(returnId=record.id, upstreamRequestId=request_id, status=RETURN_PENDING)
