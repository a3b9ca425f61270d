import pytest
from fastapi.testclient import TestClient

from fulfillment_service.app import store
from fulfillment_service.app.config import Settings
from fulfillment_service.app.database import create_db_engine, init_db
from fulfillment_service.app.main import create_app
from fulfillment_service.app.models import ORDER_PROCESSING, ORDER_SUCCEEDED
from fulfillment_service.tests.fakes import POLL_SECRET, WEBHOOK_SECRET, FakeGateway


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        upstream_token="client-token",
        webhook_secret=WEBHOOK_SECRET,
        poll_secret=POLL_SECRET,
        public_base_url="https://shop.example.com",
        anonymous_checkout_enabled=False,
        poll_interval_seconds=0,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, gateway):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    app = create_app(settings=settings, gateway=gateway, engine=engine)
    yield app
    engine.dispose()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
def make_order(db):
    """Insert an order that upstream already accepted."""

    def _make(request_id="req-1", status=ORDER_PROCESSING, response=None):
        order = store.create_order(db, "credentials", f"key-{request_id}")
        store.attach_upstream_reference(db, order.id, request_id, status, response or {"request_id": request_id})
        return store.get_order(db, order.id)

    return _make


@pytest.fixture
def delivered_order(make_order):
    return make_order(
        status=ORDER_SUCCEEDED,
        response={"_type": "order_response", "request_id": "req-1", "merchant_order_id": "112-555"},
    )
