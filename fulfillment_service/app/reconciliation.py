"""
Order and return state transitions.

`apply_event` and `apply_return_event` are pure: given the current state and a
decoded upstream event, they return the next state. Webhook deliveries, the
poll sweep and the inline refresh on order reads all go through
`reconcile_order` / `reconcile_return`, so an event has the same effect no
matter which path delivered it.

Transitions are not monotonic. A terminal order can be moved again by a later
event, and replaying an event sets the same fields to the same values.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from . import store
from .models import ORDER_FAILED, ORDER_SUCCEEDED, RETURN_LABEL_GENERATED, Order, Return
from .upstream import DecodedEvent, OrderFailed, OrderPlaced, ReturnUpdate

logger = logging.getLogger(__name__)

# Event sources: the three webhook channels plus the active poll.
SOURCE_SUCCEEDED = "succeeded"
SOURCE_FAILED = "failed"
SOURCE_TRACKING = "tracking"
SOURCE_POLL = "poll"

WEBHOOK_CHANNELS = (SOURCE_SUCCEEDED, SOURCE_FAILED, SOURCE_TRACKING)


def apply_event(current_status: str, source: Optional[str], event: DecodedEvent) -> str:
    """Next order status for an event arriving from `source`."""
    if source == SOURCE_POLL:
        if isinstance(event, OrderPlaced):
            return ORDER_SUCCEEDED
        if isinstance(event, OrderFailed):
            return ORDER_FAILED
        return current_status

    if source == SOURCE_SUCCEEDED:
        if isinstance(event, OrderPlaced):
            return ORDER_SUCCEEDED
    elif source == SOURCE_FAILED:
        if isinstance(event, OrderFailed):
            return ORDER_FAILED
    elif source == SOURCE_TRACKING:
        if isinstance(event, OrderPlaced) and event.tracking:
            return ORDER_SUCCEEDED
        if isinstance(event, OrderFailed) and event.is_tracking_error:
            return ORDER_FAILED
    return current_status


def apply_return_event(
    current_status: str, current_label: Optional[str], event: DecodedEvent
) -> Tuple[str, Optional[str]]:
    """Next (status, label_url) for a return.

    A label URL always wins and moves the return to label_generated. Otherwise
    an explicit upstream status string is adopted verbatim.
    """
    if isinstance(event, ReturnUpdate):
        if event.return_label_url:
            return RETURN_LABEL_GENERATED, event.return_label_url
        if event.status:
            return event.status, current_label
    return current_status, current_label


def reconcile_order(db: Session, order_id: str, source: Optional[str], event: DecodedEvent) -> Optional[Order]:
    """Fold an event into the stored order: status per `apply_event`, payload always replaced."""
    order = store.get_order(db, order_id)
    if order is None:
        logger.warning("Order %s vanished before reconcile", order_id)
        return None

    new_status = apply_event(order.status, source, event)
    if new_status != order.status:
        logger.info("Order %s status %s -> %s (%s)", order.id, order.status, new_status, source)
    store.update_order_state(db, order.id, new_status, event.raw)
    return store.get_order(db, order_id)


def reconcile_return(db: Session, return_id: str, event: DecodedEvent) -> Optional[Return]:
    record = store.get_return(db, return_id)
    if record is None:
        logger.warning("Return %s vanished before reconcile", return_id)
        return None

    new_status, label_url = apply_return_event(record.status, record.label_url, event)
    if new_status != record.status:
        logger.info("Return %s status %s -> %s", record.id, record.status, new_status)
    store.update_return_state(db, record.id, new_status, label_url, event.raw)
    return store.get_return(db, return_id)
