import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String

from .database import Base

# Order statuses
ORDER_INITIATED = "initiated"
ORDER_PROCESSING = "request_processing"
ORDER_SUCCEEDED = "order_response"
ORDER_FAILED = "error"

# Orders the poll sweep still queries upstream for.
ORDER_OPEN_STATUSES = (ORDER_INITIATED, ORDER_PROCESSING)

# Return statuses; upstream carrier statuses are stored verbatim alongside these.
RETURN_PENDING = "pending"
RETURN_IN_PROGRESS = "in_progress"
RETURN_LABEL_GENERATED = "label_generated"

RETURN_OPEN_STATUSES = (RETURN_PENDING, RETURN_IN_PROGRESS)

# Checkout modes
MODE_CREDENTIALS = "credentials"
MODE_ANONYMOUS = "addax"


def _new_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


# Defines the ORM model for an 'Order' placed with the fulfillment API.
class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    idempotency_key = Column(String(64), unique=True, nullable=False)  # Sent upstream to dedupe submissions.
    mode = Column(String(32), nullable=False)
    upstream_request_id = Column(String(128), nullable=False, default="", index=True)  # Empty until upstream accepts.
    status = Column(String(64), nullable=False, default=ORDER_INITIATED, index=True)
    response = Column(JSON, nullable=True)  # Last upstream payload, overwritten on every reconcile.
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "mode": self.mode,
            "idempotency_key": self.idempotency_key,
            "upstream_request_id": self.upstream_request_id,
            "status": self.status,
            "response": self.response,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# A return requested against exactly one order.
class Return(Base):
    __tablename__ = "returns"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)  # One return per order.
    upstream_request_id = Column(String(128), nullable=False, index=True)
    status = Column(String(64), nullable=False, default=RETURN_PENDING, index=True)
    label_url = Column(String(2048), nullable=True)
    response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "upstream_request_id": self.upstream_request_id,
            "status": self.status,
            "label_url": self.label_url,
            "response": self.response,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# Append-only audit log of accepted webhook deliveries.
class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=_new_id)
    source = Column(String(32), nullable=False)  # Channel slug the delivery arrived on.
    payload = Column(JSON, nullable=False)
    handled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
