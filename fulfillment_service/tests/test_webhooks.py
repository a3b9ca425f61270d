from unittest.mock import patch

from fulfillment_service.app import store
from fulfillment_service.app.models import (
    ORDER_FAILED,
    ORDER_PROCESSING,
    ORDER_SUCCEEDED,
    RETURN_LABEL_GENERATED,
    RETURN_PENDING,
    WebhookEvent,
)
from fulfillment_service.tests.fakes import WEBHOOK_SECRET, post_webhook

PLACED = {"_type": "order_response", "request_id": "req-1", "merchant_order_id": "112-555"}


def reload_order(db, order_id):
    db.expire_all()
    return store.get_order(db, order_id)


def audit_log(db):
    db.expire_all()
    return db.query(WebhookEvent).all()


def test_wrong_secret_is_rejected_without_side_effects(client, db, make_order):
    order = make_order()

    response = post_webhook(client, "succeeded", PLACED, secret="nope")

    assert response.status_code == 401
    assert audit_log(db) == []
    assert reload_order(db, order.id).status == ORDER_PROCESSING


def test_missing_secret_is_rejected(client, db):
    response = client.post("/webhooks/succeeded", json=PLACED)

    assert response.status_code == 401
    assert audit_log(db) == []


def test_succeeded_channel_marks_order_placed(client, db, make_order):
    order = make_order()

    response = post_webhook(client, "succeeded", PLACED)

    assert response.status_code == 200
    assert response.text == "OK"
    stored = reload_order(db, order.id)
    assert stored.status == ORDER_SUCCEEDED
    assert stored.response == PLACED
    (event,) = audit_log(db)
    assert event.source == "succeeded"
    assert event.payload == PLACED


def test_failed_channel_marks_order_failed(client, db, make_order):
    order = make_order()
    payload = {"_type": "error", "request_id": "req-1", "code": "payment_info_problem"}

    post_webhook(client, "failed", payload)

    assert reload_order(db, order.id).status == ORDER_FAILED


def test_replayed_delivery_reaches_same_state(client, db, make_order):
    order = make_order()

    post_webhook(client, "succeeded", PLACED)
    once = reload_order(db, order.id)
    once_state = (once.status, once.response)
    post_webhook(client, "succeeded", PLACED)
    twice = reload_order(db, order.id)

    assert (twice.status, twice.response) == once_state
    # Every delivery is audited, duplicates included.
    assert len(audit_log(db)) == 2


def test_tracking_with_empty_list_updates_payload_only(client, db, make_order):
    order = make_order()
    payload = {**PLACED, "tracking": []}

    response = post_webhook(client, "tracking", payload)

    assert response.status_code == 200
    stored = reload_order(db, order.id)
    assert stored.status == ORDER_PROCESSING
    assert stored.response == payload


def test_tracking_with_entries_marks_order_placed(client, db, make_order):
    order = make_order()
    payload = {**PLACED, "tracking": [{"carrier": "UPS", "tracking_number": "1Z999"}]}

    post_webhook(client, "tracking", payload)

    assert reload_order(db, order.id).status == ORDER_SUCCEEDED


def test_tracking_error_marks_order_failed(client, db, make_order):
    order = make_order()

    post_webhook(client, "tracking", {"_type": "error", "request_id": "req-1", "code": "tracking_unavailable"})

    assert reload_order(db, order.id).status == ORDER_FAILED


def test_corrective_event_overrides_terminal_status(client, db, make_order):
    order = make_order(status=ORDER_SUCCEEDED)
    payload = {"_type": "error", "request_id": "req-1", "code": "order_cancelled"}

    post_webhook(client, "failed", payload)

    stored = reload_order(db, order.id)
    assert stored.status == ORDER_FAILED
    assert stored.response == payload


def test_unknown_request_id_is_acknowledged_and_audited(client, db, make_order):
    order = make_order()

    response = post_webhook(client, "succeeded", {**PLACED, "request_id": "someone-else"})

    assert response.status_code == 200
    assert len(audit_log(db)) == 1
    assert reload_order(db, order.id).status == ORDER_PROCESSING


def test_payload_without_request_id_is_only_audited(client, db):
    response = post_webhook(client, "tracking", {"_type": "order_response"})

    assert response.status_code == 200
    assert len(audit_log(db)) == 1


def test_return_label_delivery_updates_return(client, db, delivered_order):
    record = store.create_return(db, delivered_order.id, "ret-1", {"request_id": "ret-1"})
    payload = {"_type": "return_response", "request_id": "ret-1", "return_label_url": "https://labels/ret-1.pdf"}

    response = post_webhook(client, "succeeded", payload)

    assert response.status_code == 200
    db.expire_all()
    stored = store.get_return(db, record.id)
    assert stored.status == RETURN_LABEL_GENERATED
    assert stored.label_url == "https://labels/ret-1.pdf"
    assert stored.response == payload


def test_return_response_without_label_leaves_return_alone(client, db, delivered_order):
    record = store.create_return(db, delivered_order.id, "ret-1", {"request_id": "ret-1"})

    post_webhook(client, "succeeded", {"_type": "return_response", "request_id": "ret-1", "status": "x"})

    db.expire_all()
    assert store.get_return(db, record.id).status == RETURN_PENDING


def test_order_update_failure_still_acknowledges(client, db, make_order):
    order = make_order()

    with patch("fulfillment_service.app.webhooks.reconcile_order", side_effect=RuntimeError("db hiccup")):
        response = post_webhook(client, "succeeded", PLACED)

    assert response.status_code == 200
    assert len(audit_log(db)) == 1
    assert reload_order(db, order.id).status == ORDER_PROCESSING


def test_return_update_failure_still_acknowledges(client, db, delivered_order):
    store.create_return(db, delivered_order.id, "ret-1", {"request_id": "ret-1"})
    payload = {"_type": "return_response", "request_id": "ret-1", "return_label_url": "https://labels/ret-1.pdf"}

    with patch("fulfillment_service.app.webhooks.reconcile_return", side_effect=RuntimeError("db hiccup")):
        response = post_webhook(client, "tracking", payload)

    assert response.status_code == 200
    assert len(audit_log(db)) == 1


def test_tracking_number_sent_as_a_number_still_marks_order_placed(client, db, make_order):
    order = make_order()
    payload = {**PLACED, "tracking": [{"carrier": "USPS", "tracking_number": 9400111}]}

    response = post_webhook(client, "tracking", payload)

    assert response.status_code == 200
    stored = reload_order(db, order.id)
    assert stored.status == ORDER_SUCCEEDED
    assert stored.response == payload


def test_unknown_channel_slug_overwrites_payload_only(client, db, make_order):
    order = make_order()
    payload = {"_type": "error", "request_id": "req-1", "code": "x"}

    response = post_webhook(client, "poll", payload)

    assert response.status_code == 200
    stored = reload_order(db, order.id)
    assert stored.status == ORDER_PROCESSING
    assert stored.response == payload
    (event,) = audit_log(db)
    assert event.source == "poll"


def test_secret_is_checked_before_the_body_is_parsed(client, db):
    response = client.post("/webhooks/succeeded", params={"secret": "wrong"}, content=b"not json")

    assert response.status_code == 401
    assert audit_log(db) == []


def test_non_json_body_is_audited_and_acknowledged(client, db, make_order):
    order = make_order()

    response = client.post("/webhooks/succeeded", params={"secret": WEBHOOK_SECRET}, content=b"not json")

    assert response.status_code == 200
    assert response.text == "OK"
    (event,) = audit_log(db)
    assert event.payload == "not json"
    assert reload_order(db, order.id).status == ORDER_PROCESSING
