"""
Record stores for orders, returns and the webhook audit log.

Each mutating function is one unit of work: it writes and commits a single
row. Callers re-read the current row before deciding on a change; there is no
version check, so concurrent writers resolve as last-write-wins.
"""

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import ORDER_INITIATED, ORDER_OPEN_STATUSES, RETURN_OPEN_STATUSES, RETURN_PENDING
from .models import Order, Return, WebhookEvent, utcnow

logger = logging.getLogger(__name__)


# --- Orders ---

def create_order(db: Session, mode: str, idempotency_key: str) -> Order:
    """Insert a new order in the initiated state, with no upstream reference yet."""
    order = Order(mode=mode, idempotency_key=idempotency_key, status=ORDER_INITIATED, upstream_request_id="")
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Order %s created in %s mode", order.id, mode)
    return order


def get_order(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_order_by_idempotency_key(db: Session, idempotency_key: str) -> Optional[Order]:
    return db.query(Order).filter(Order.idempotency_key == idempotency_key).first()


def get_order_by_upstream_id(db: Session, upstream_request_id: str) -> Optional[Order]:
    if not upstream_request_id:
        return None
    return db.query(Order).filter(Order.upstream_request_id == upstream_request_id).first()


def list_orders(db: Session) -> List[Order]:
    return db.query(Order).order_by(Order.created_at.desc()).all()


def list_open_orders(db: Session) -> List[Order]:
    """Orders the poll sweep has not yet seen reach a terminal status."""
    return db.query(Order).filter(Order.status.in_(ORDER_OPEN_STATUSES)).order_by(Order.created_at).all()


def attach_upstream_reference(db: Session, order_id: str, upstream_request_id: str, status: str, response) -> None:
    """Record upstream's acceptance of a submission. The reference is set once."""
    updated = (
        db.query(Order)
        .filter(Order.id == order_id, Order.upstream_request_id == "")
        .update(
            {
                Order.upstream_request_id: upstream_request_id,
                Order.status: status,
                Order.response: response,
                Order.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if not updated:
        logger.warning("Order %s already has an upstream reference, keeping it", order_id)


def update_order_state(db: Session, order_id: str, status: str, response) -> None:
    """Overwrite status and payload. Payloads are replaced, never merged."""
    db.query(Order).filter(Order.id == order_id).update(
        {Order.status: status, Order.response: response, Order.updated_at: utcnow()},
        synchronize_session=False,
    )
    db.commit()


# --- Returns ---

def create_return(db: Session, order_id: str, upstream_request_id: str, response) -> Return:
    """Insert the return for an order. A second return for the same order is rejected."""
    record = Return(
        order_id=order_id,
        upstream_request_id=upstream_request_id,
        status=RETURN_PENDING,
        response=response,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError("Return already requested for this order") from exc
    db.refresh(record)
    logger.info("Return %s created for order %s", record.id, order_id)
    return record


def get_return(db: Session, return_id: str) -> Optional[Return]:
    return db.query(Return).filter(Return.id == return_id).first()


def get_return_for_order(db: Session, order_id: str) -> Optional[Return]:
    return db.query(Return).filter(Return.order_id == order_id).first()


def get_return_by_upstream_id(db: Session, upstream_request_id: str) -> Optional[Return]:
    if not upstream_request_id:
        return None
    return db.query(Return).filter(Return.upstream_request_id == upstream_request_id).first()


def list_open_returns(db: Session) -> List[Return]:
    return db.query(Return).filter(Return.status.in_(RETURN_OPEN_STATUSES)).order_by(Return.created_at).all()


def update_return_state(db: Session, return_id: str, status: str, label_url: Optional[str], response) -> None:
    db.query(Return).filter(Return.id == return_id).update(
        {Return.status: status, Return.label_url: label_url, Return.response: response, Return.updated_at: utcnow()},
        synchronize_session=False,
    )
    db.commit()


# --- Webhook audit log ---

def record_webhook(db: Session, source: str, payload) -> WebhookEvent:
    event = WebhookEvent(source=source, payload=payload)
    db.add(event)
    db.commit()
    return event
