"""
HTTP surface of the fulfillment service.

Run with: uvicorn --factory fulfillment_service.app.main:create_app
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from . import store
from .checkout import place_order
from .config import Settings, get_settings
from .database import create_db_engine, create_session_factory, get_db, init_db
from .errors import NotFoundError, ServiceError
from .poller import authenticate_poll, refresh_order, run_poll_sweep, start_poll_thread
from .returns import request_return
from .schemas import CheckoutRequest, CheckoutResponse, PollResponse, RetryRequest, ReturnRequest, ReturnResponse
from .upstream import UpstreamError, UpstreamGateway
from .verification import retry_with_verification
from .webhooks import authenticate_webhook, handle_webhook

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure logging from settings"""
    numeric_level = getattr(logging, settings.log_level.upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logging.basicConfig(level=numeric_level, format=settings.log_format, force=True)


# --- Dependencies ---

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request):
    return request.app.state.gateway


async def read_body(request: Request) -> bytes:
    # Raw bytes only; parsing waits until the caller is authenticated.
    return await request.body()


# --- App Instance ---

def create_app(settings: Optional[Settings] = None, gateway=None, engine=None) -> FastAPI:
    """Build the app. Everything configurable is passed in, nothing is read ad hoc."""
    settings = settings or get_settings()
    setup_logging(settings)
    engine = engine if engine is not None else create_db_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create database tables on startup if they don't exist.
        init_db(engine)
        worker = None
        if settings.poll_interval_seconds > 0:
            worker = start_poll_thread(app.state.session_factory, app.state.gateway, settings)
        yield
        if worker is not None:
            worker.stop(timeout=5)

    app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.gateway = gateway if gateway is not None else UpstreamGateway.from_settings(settings)

    register_error_handlers(app)
    register_routes(app)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError):
        logger.error("Upstream failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=502,
            content={"error": str(exc), "upstream_status": exc.status_code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "detail": _jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


# --- Endpoints ---

def register_routes(app: FastAPI) -> None:
    @app.get("/")
    def root():
        """Health check endpoint."""
        return {"message": "Fulfillment service is running"}

    @app.post("/checkout", response_model=CheckoutResponse)
    def checkout(
        req: CheckoutRequest,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        gateway=Depends(get_gateway),
    ):
        """Place the order with the fulfillment API."""
        return place_order(db, gateway, settings, req)

    @app.get("/orders")
    def list_orders(db: Session = Depends(get_db)):
        """Retrieves all orders, newest first."""
        return [order.to_dict() for order in store.list_orders(db)]

    @app.get("/orders/{order_id}")
    def get_order(order_id: str, db: Session = Depends(get_db), gateway=Depends(get_gateway)):
        """Retrieves a single order, refreshing it from upstream while it is processing."""
        order = store.get_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return refresh_order(db, gateway, order).to_dict()

    @app.post("/orders/{order_id}/retry")
    def retry_order(
        order_id: str,
        req: RetryRequest,
        db: Session = Depends(get_db),
        gateway=Depends(get_gateway),
    ):
        """Resubmit an order with the verification code the buyer received."""
        return retry_with_verification(db, gateway, order_id, req.verificationCode)

    @app.post("/returns", response_model=ReturnResponse)
    def create_return(
        req: ReturnRequest,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        gateway=Depends(get_gateway),
    ):
        return request_return(db, gateway, settings, req.orderId, req.quantity, req.reason)

    @app.get("/returns/{return_id}")
    def get_return(return_id: str, db: Session = Depends(get_db)):
        record = store.get_return(db, return_id)
        if record is None:
            raise NotFoundError("Return not found")
        return record.to_dict()

    @app.post("/webhooks/{channel}")
    def receive_webhook(
        channel: str,
        secret: Optional[str] = None,
        body: bytes = Depends(read_body),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ):
        """Inbound event from the fulfillment API. Acknowledged whenever the secret is valid."""
        authenticate_webhook(secret, settings)
        try:
            payload = json.loads(body)
        except ValueError:
            # Kept in the audit log as raw text.
            logger.warning("Webhook on %s channel has a non-JSON body", channel)
            payload = body.decode("utf-8", errors="replace")
        handle_webhook(db, channel, payload)
        return PlainTextResponse("OK")

    @app.get("/poll", response_model=PollResponse)
    def poll(
        authorization: Optional[str] = Header(default=None),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        gateway=Depends(get_gateway),
    ):
        """Scheduled sweep over every order and return not yet terminal."""
        authenticate_poll(authorization, settings)
        return PollResponse(**run_poll_sweep(db, gateway, settings))
