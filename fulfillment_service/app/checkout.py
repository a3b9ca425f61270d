"""
Checkout: validate, record intent, submit upstream, commit the acknowledgment.

The order row is written before the upstream call and survives whatever that
call does. If submission fails the row stays `initiated` with no upstream
reference; the poll sweep reports such rows as unsubmitted.
"""

import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import store
from .config import Settings
from .errors import ValidationError
from .models import MODE_ANONYMOUS, MODE_CREDENTIALS, ORDER_PROCESSING
from .reconciliation import SOURCE_FAILED, SOURCE_SUCCEEDED, SOURCE_TRACKING
from .schemas import CheckoutRequest, CheckoutResponse

logger = logging.getLogger(__name__)


def generate_idempotency_key() -> str:
    """A fresh 128-bit random token."""
    return str(uuid.uuid4())


def validate_checkout(req: CheckoutRequest, settings: Settings) -> None:
    """Mode-specific checks. Runs before anything is written or sent."""
    if req.mode == MODE_CREDENTIALS:
        if req.credentials is None or req.payment is None:
            raise ValidationError("Credentials and payment required for credential mode")
    elif req.mode == MODE_ANONYMOUS:
        if not settings.anonymous_checkout_enabled:
            raise ValidationError("Addax checkout not enabled")


def build_upstream_order(req: CheckoutRequest, idempotency_key: str, settings: Settings) -> dict:
    """Build the order submission body for the fulfillment API."""
    address = req.address.model_dump(exclude_none=True)
    order = {
        "idempotency_key": idempotency_key,
        "retailer": settings.retailer,
        "products": [{"product_id": settings.product_id, "quantity": 1}],
        "max_price": settings.max_price,
        "shipping_method": "free" if req.mode == MODE_CREDENTIALS else "cheapest",
        "shipping_address": address,
        "webhooks": {
            "request_succeeded": settings.webhook_url(SOURCE_SUCCEEDED),
            "request_failed": settings.webhook_url(SOURCE_FAILED),
            "tracking_obtained": settings.webhook_url(SOURCE_TRACKING),
            "tracking_updated": settings.webhook_url(SOURCE_TRACKING),
        },
    }
    if req.mode == MODE_CREDENTIALS:
        order["retailer_credentials"] = req.credentials.model_dump(exclude_none=True)
        order["payment_method"] = {**req.payment.model_dump(), "use_gift": False}
        order["billing_address"] = address
    else:
        order["addax"] = True
    return order


def place_order(db: Session, gateway, settings: Settings, req: CheckoutRequest) -> CheckoutResponse:
    """Create an order and submit it to the fulfillment API."""
    validate_checkout(req, settings)

    # A repeated submission with the same client key is the same order.
    if req.idempotency_key:
        existing = store.get_order_by_idempotency_key(db, req.idempotency_key)
        if existing is not None:
            return _replayed(existing)

    idempotency_key = req.idempotency_key or generate_idempotency_key()
    try:
        order = store.create_order(db, req.mode, idempotency_key)
    except IntegrityError:
        # Lost a race with a concurrent checkout carrying the same key.
        db.rollback()
        existing = store.get_order_by_idempotency_key(db, idempotency_key)
        if existing is None:
            raise
        return _replayed(existing)
    order_id = order.id

    payload, request_id = gateway.submit_order(build_upstream_order(req, idempotency_key, settings))

    store.attach_upstream_reference(db, order_id, request_id, ORDER_PROCESSING, payload)
    logger.info("Order %s submitted upstream as %s", order_id, request_id)
    return CheckoutResponse(orderId=order_id, upstreamRequestId=request_id, status=ORDER_PROCESSING)


def _replayed(order) -> CheckoutResponse:
    logger.info("Checkout replay for order %s", order.id)
    return CheckoutResponse(orderId=order.id, upstreamRequestId=order.upstream_request_id, status=order.status)
