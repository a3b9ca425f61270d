import hmac
import logging

from sqlalchemy.orm import Session

from . import store
from .config import Settings
from .errors import UnauthorizedError
from .reconciliation import WEBHOOK_CHANNELS, reconcile_order, reconcile_return
from .upstream import ReturnUpdate, decode_event

logger = logging.getLogger(__name__)


def authenticate_webhook(secret, settings: Settings) -> None:
    expected = settings.webhook_secret
    if not expected or not secret or not hmac.compare_digest(str(secret).encode(), expected.encode()):
        raise UnauthorizedError("Unauthorized")


def handle_webhook(db: Session, channel: str, payload) -> None:
    """Process one authenticated delivery from the fulfillment API.

    The delivery is always written to the audit log first. Order and return
    updates after that are best-effort: failures are logged and swallowed so
    the sender still gets a success reply and does not redeliver.
    """
    store.record_webhook(db, channel, payload)
    logger.info("Webhook received on %s channel", channel)

    event = decode_event(payload)
    # Unknown slugs overwrite the stored payload but never move the status.
    source = channel if channel in WEBHOOK_CHANNELS else None
    if not event.request_id:
        logger.info("Webhook on %s carries no request_id, nothing to reconcile", channel)
        return

    try:
        order = store.get_order_by_upstream_id(db, event.request_id)
        if order is None:
            logger.warning("Order not found for request_id: %s", event.request_id)
        else:
            reconcile_order(db, order.id, source, event)
    except Exception:
        db.rollback()
        logger.exception("Error updating order from webhook for request_id %s", event.request_id)

    if isinstance(event, ReturnUpdate) and event.return_label_url:
        try:
            record = store.get_return_by_upstream_id(db, event.request_id)
            if record is None:
                logger.warning("Return not found for request_id: %s", event.request_id)
            else:
                reconcile_return(db, record.id, event)
        except Exception:
            db.rollback()
            logger.exception("Error updating return from webhook for request_id %s", event.request_id)
