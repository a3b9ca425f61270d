"""
Client for the third-party fulfillment API.

Every call carries the static client token as HTTP Basic credentials and
sends/receives JSON. Replies are decoded once, here, into a closed set of
event variants so callers branch on types instead of raw field presence.
"""

import logging
from typing import List, Optional, Union

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """The fulfillment API answered with a non-success status."""

    def __init__(self, status_code: Optional[int], raw_body: str = "", message: Optional[str] = None):
        super().__init__(message or f"Upstream API error: {status_code}")
        self.status_code = status_code
        self.raw_body = raw_body


class UpstreamConnectionError(UpstreamError):
    """The fulfillment API could not be reached at all."""

    def __init__(self, message: str):
        super().__init__(None, "", message)


class UpstreamResponseError(UpstreamError):
    """A success reply that is missing something we cannot proceed without."""

    def __init__(self, message: str, raw_body: str = ""):
        super().__init__(None, raw_body, message)


# --- Decoded upstream events ---

class UpstreamEvent(BaseModel):
    """Any upstream payload. `raw` is the exact JSON received, kept for storage."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    type: Optional[str] = Field(default=None, alias="_type")
    request_id: Optional[str] = None
    raw: dict = Field(default_factory=dict, exclude=True)


class TrackingEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    product_id: Optional[str] = None
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None


class OrderPlaced(UpstreamEvent):
    """`order_response`: the order went through at the retailer."""

    merchant_order_id: Optional[str] = None
    tracking: List[TrackingEntry] = Field(default_factory=list)
    delivery_date: Optional[str] = None

    @field_validator("tracking", mode="before")
    @classmethod
    def keep_tracking_entries(cls, value):
        # Anything that is not a list of objects carries no usable tracking.
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]


class OrderFailed(UpstreamEvent):
    """`error`: the request failed, or a tracking lookup failed."""

    code: str = ""
    message: str = ""

    @property
    def is_tracking_error(self) -> bool:
        return "tracking" in self.code


class ReturnUpdate(UpstreamEvent):
    """`return_response`: progress on a return request."""

    return_label_url: Optional[str] = None
    status: Optional[str] = None


class Unrecognized(UpstreamEvent):
    """Any other `_type`, including none at all."""


DecodedEvent = Union[OrderPlaced, OrderFailed, ReturnUpdate, Unrecognized]

_VARIANTS = {
    "order_response": OrderPlaced,
    "error": OrderFailed,
    "return_response": ReturnUpdate,
}


def decode_event(payload) -> DecodedEvent:
    """Decode a raw upstream JSON payload into its event variant.

    The variant is chosen by `_type` alone. Fields that fail validation are
    dropped rather than demoting the event, so a status change is never lost
    to an odd field value.
    """
    if not isinstance(payload, dict):
        return Unrecognized(raw={"value": payload})
    tag = payload.get("_type")
    model = _VARIANTS.get(tag, Unrecognized) if isinstance(tag, str) else Unrecognized
    # Null list/str fields are as good as absent.
    cleaned = {key: value for key, value in payload.items() if value is not None}
    try:
        event = model.model_validate(cleaned)
    except ValidationError as exc:
        bad_fields = {error["loc"][0] for error in exc.errors() if error["loc"]}
        logger.warning(
            "Dropping malformed fields %s from upstream %s payload for request %s",
            sorted(str(field) for field in bad_fields),
            payload.get("_type"),
            payload.get("request_id"),
        )
        event = model.model_validate({key: value for key, value in cleaned.items() if key not in bad_fields})
    event.raw = payload
    return event


# --- Gateway ---

class UpstreamGateway:
    """Wraps all calls to the fulfillment API. No retries happen here."""

    def __init__(self, base_url: str, token: str, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        # Client token as username, empty password.
        self.auth = (token, "")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.upstream_base_url, settings.upstream_token, settings.upstream_timeout_seconds)

    def call(self, path: str, method: str = "GET", body: Optional[dict] = None) -> dict:
        """Send one request and return the decoded JSON reply.

        Raises UpstreamError for non-2xx replies and UpstreamConnectionError
        when no reply arrived.
        """
        url = f"{self.base_url}{path}"
        kwargs = {"auth": self.auth, "timeout": self.timeout, "headers": {"Accept": "application/json"}}
        if body is not None:
            kwargs["json"] = body
        logger.info("Upstream %s %s", method, path)

        try:
            response = requests.request(method, url, **kwargs)
        except requests.exceptions.RequestException as exc:
            raise UpstreamConnectionError(f"Upstream API unreachable: {exc}") from exc

        if not response.ok:
            logger.warning("Upstream %s %s rejected with %s", method, path, response.status_code)
            raise UpstreamError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamResponseError("Upstream API returned a non-JSON body", response.text) from exc

    # --- Operations ---

    def submit_order(self, order: dict):
        """Submit an order; returns (payload, upstream request id)."""
        data = self.call("/v1/orders", "POST", order)
        return data, _require_request_id(data, "order submission")

    def retry_order(self, request_id: str, verification_code: str) -> dict:
        return self.call(
            f"/v1/orders/{request_id}/retry",
            "POST",
            {"retailer_credentials": {"verification_code": verification_code}},
        )

    def get_order_status(self, request_id: str) -> DecodedEvent:
        return decode_event(self.call(f"/v1/orders/{request_id}"))

    def submit_return(self, request_id: str, return_request: dict):
        """Request a return against an order; returns (payload, return request id)."""
        data = self.call(f"/v1/orders/{request_id}/return", "POST", return_request)
        return data, _require_request_id(data, "return request")

    def get_return_status(self, request_id: str) -> DecodedEvent:
        return decode_event(self.call(f"/v1/returns/{request_id}"))


def _require_request_id(data, what: str) -> str:
    request_id = data.get("request_id") if isinstance(data, dict) else None
    if not request_id:
        raise UpstreamResponseError(f"Upstream accepted the {what} but returned no request_id", str(data))
    return request_id
