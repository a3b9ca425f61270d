from typing import Literal, Optional

from pydantic import BaseModel, Field


# --- Request Models ---

class Address(BaseModel):
    """Shipping (and, in credential mode, billing) address."""
    first_name: str
    last_name: str
    address_line1: str
    address_line2: Optional[str] = None
    zip_code: str
    city: str
    state: str
    country: str


class RetailerCredentials(BaseModel):
    email: str
    password: str
    totp_2fa_key: Optional[str] = None


class PaymentCard(BaseModel):
    name_on_card: str
    number: str
    security_code: str
    expiration_month: int = Field(ge=1, le=12)
    expiration_year: int


class CheckoutRequest(BaseModel):
    """Defines the data model for an incoming checkout request."""
    mode: Literal["credentials", "addax"]
    address: Address
    credentials: Optional[RetailerCredentials] = None
    payment: Optional[PaymentCard] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=64)


class RetryRequest(BaseModel):
    verificationCode: str = Field(min_length=1)


class ReturnRequest(BaseModel):
    orderId: str
    quantity: int = Field(gt=0)
    reason: Optional[str] = None


# --- Response Models ---

class CheckoutResponse(BaseModel):
    orderId: str
    upstreamRequestId: str
    status: str


class ReturnResponse(BaseModel):
    returnId: str
    upstreamRequestId: str
    status: str


class PollResponse(BaseModel):
    message: str = "Poll completed"
    orders_polled: int
    returns_polled: int
    orders_updated: int
    returns_updated: int
    orders_failed: int
    returns_failed: int
    orders_unsubmitted: int
