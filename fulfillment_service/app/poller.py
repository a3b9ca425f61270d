"""
Poll channel: actively ask upstream about every order and return that has
not reached a terminal status yet.

One failing entity never stops the sweep; it is logged and the rest carry on.
The same sweep runs from the `/poll` trigger and, when configured, from a
background thread.
"""

import hmac
import logging
import threading
from datetime import timedelta, timezone

from sqlalchemy.orm import Session

from . import store
from .config import Settings
from .errors import UnauthorizedError
from .models import ORDER_PROCESSING, utcnow
from .reconciliation import SOURCE_POLL, reconcile_order, reconcile_return

logger = logging.getLogger(__name__)


def authenticate_poll(authorization, settings: Settings) -> None:
    expected = f"Bearer {settings.poll_secret}"
    if not settings.poll_secret or not authorization:
        raise UnauthorizedError("Unauthorized")
    if not hmac.compare_digest(str(authorization).encode(), expected.encode()):
        raise UnauthorizedError("Unauthorized")


def poll_order(db: Session, gateway, order_id: str, upstream_request_id: str):
    """Query upstream for one order and fold the reply in."""
    event = gateway.get_order_status(upstream_request_id)
    return reconcile_order(db, order_id, SOURCE_POLL, event)


def poll_return(db: Session, gateway, return_id: str, upstream_request_id: str):
    event = gateway.get_return_status(upstream_request_id)
    return reconcile_return(db, return_id, event)


def refresh_order(db: Session, gateway, order):
    """Inline reconcile on read for an order still processing upstream.

    Upstream trouble is logged and the stored row is returned unchanged.
    """
    if order.status != ORDER_PROCESSING or not order.upstream_request_id:
        return order
    try:
        return poll_order(db, gateway, order.id, order.upstream_request_id) or order
    except Exception:
        db.rollback()
        logger.exception("Error polling upstream for order %s", order.id)
        return store.get_order(db, order.id) or order


def run_poll_sweep(db: Session, gateway, settings: Settings) -> dict:
    """Reconcile every open order and return; returns the sweep counters."""
    logger.info("Starting poll sweep")
    counts = {
        "orders_polled": 0,
        "returns_polled": 0,
        "orders_updated": 0,
        "returns_updated": 0,
        "orders_failed": 0,
        "returns_failed": 0,
        "orders_unsubmitted": 0,
    }

    # Snapshot ids first; every row is re-read right before it is written.
    pending_orders = [(o.id, o.upstream_request_id, o.created_at) for o in store.list_open_orders(db)]
    logger.info("Found %d pending orders to poll", len(pending_orders))
    counts["orders_polled"] = len(pending_orders)

    stale_cutoff = utcnow() - timedelta(seconds=settings.stale_initiated_after_seconds)
    for order_id, upstream_request_id, created_at in pending_orders:
        if not upstream_request_id:
            counts["orders_unsubmitted"] += 1
            if created_at is not None and _as_utc(created_at) < stale_cutoff:
                logger.warning("Order %s was never accepted upstream (created %s)", order_id, created_at)
            continue
        try:
            poll_order(db, gateway, order_id, upstream_request_id)
            counts["orders_updated"] += 1
        except Exception:
            db.rollback()
            counts["orders_failed"] += 1
            logger.exception("Error polling order %s", order_id)

    pending_returns = [(r.id, r.upstream_request_id) for r in store.list_open_returns(db)]
    logger.info("Found %d pending returns to poll", len(pending_returns))
    counts["returns_polled"] = len(pending_returns)

    for return_id, upstream_request_id in pending_returns:
        if not upstream_request_id:
            continue
        try:
            poll_return(db, gateway, return_id, upstream_request_id)
            counts["returns_updated"] += 1
        except Exception:
            db.rollback()
            counts["returns_failed"] += 1
            logger.exception("Error polling return %s", return_id)

    logger.info("Poll sweep completed: %s", counts)
    return counts


def _as_utc(value):
    # SQLite hands back naive datetimes.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class PollWorker:
    """Runs the poll sweep on a fixed interval until stopped."""

    def __init__(self, session_factory, gateway, settings: Settings):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self.stop_event = threading.Event()
        self.thread = None

    def run_once(self):
        db = self.session_factory()
        try:
            return run_poll_sweep(db, self.gateway, self.settings)
        finally:
            db.close()

    def loop(self):
        interval = self.settings.poll_interval_seconds
        logger.info(" [*] Poll worker started, sweeping every %ss", interval)
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Poll sweep failed")
            self.stop_event.wait(interval)

    def start(self):
        self.thread = threading.Thread(target=self.loop, name="poll-worker", daemon=True)
        self.thread.start()

    def stop(self, timeout=None):
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout)


def start_poll_thread(session_factory, gateway, settings: Settings) -> PollWorker:
    """Helper to run the poll sweep in a background thread."""
    worker = PollWorker(session_factory, gateway, settings)
    worker.start()
    return worker
