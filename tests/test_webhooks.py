import json
import logging

from accessedu.models.subscription import Subscription
from accessedu.models.transaction import Transaction
from accessedu.models.webhook_event import WebhookEvent

from conftest import charge_payload, sign, subscription_payload, webhook_body


def _post(client, body: bytes, signature: str = None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["x-paystack-signature"] = signature
    return client.post("/webhooks/payment", content=body, headers=headers)


def _snapshot(session_factory):
    with session_factory() as db:
        subs = [(s.subscription_code, s.status, s.revision) for s in db.query(Subscription).all()]
        txs = [(t.reference, t.status) for t in db.query(Transaction).all()]
        events = db.query(WebhookEvent).count()
    return subs, txs, events


def test_valid_charge_success_activates(client, engine, store):
    engine.initialize_subscription("a@b.com", "monthly", "u1", reference="ref_w")
    body = webhook_body("charge.success", charge_payload("ref_w"))

    resp = _post(client, body, sign(body))

    assert resp.status_code == 200
    assert store.get("ref_w").status == "active"
    assert store.get_transaction("ref_w").status == "success"


def test_bad_signature_is_rejected_without_mutation(client, engine, session_factory, caplog):
    engine.initialize_subscription("a@b.com", "monthly", "u1", reference="ref_w")
    before = _snapshot(session_factory)
    body = webhook_body("charge.success", charge_payload("ref_w"))

    with caplog.at_level(logging.WARNING):
        resp = _post(client, body, sign(body, secret="not-the-secret"))

    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert _snapshot(session_factory) == before
    assert any("signature mismatch" in r.getMessage() for r in caplog.records)


def test_missing_signature_is_rejected(client, session_factory):
    body = webhook_body("subscription.create", subscription_payload("SUB_X"))
    before = _snapshot(session_factory)

    resp = _post(client, body)

    assert resp.status_code == 400
    assert _snapshot(session_factory) == before


def test_signature_over_different_body_is_rejected(client, session_factory):
    body = webhook_body("charge.success", charge_payload("ref_t", amount=5000))
    tampered = webhook_body("charge.success", charge_payload("ref_t", amount=1))

    resp = _post(client, tampered, sign(body))

    assert resp.status_code == 400
    assert _snapshot(session_factory) == ([], [], 0)


def test_duplicate_delivery_produces_one_transaction(client, engine, session_factory):
    engine.initialize_subscription("a@b.com", "monthly", "u1", reference="ref_d")
    body = webhook_body("charge.success", charge_payload("ref_d"))

    first = _post(client, body, sign(body))
    after_first = _snapshot(session_factory)
    second = _post(client, body, sign(body))

    assert first.status_code == second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert _snapshot(session_factory) == after_first
    assert after_first[1] == [("ref_d", "success")]


def test_processing_error_still_acknowledged(client, engine, monkeypatch, caplog):
    def explode(event_type, data):
        raise RuntimeError("database went away")

    monkeypatch.setattr(engine, "handle_webhook", explode)
    body = webhook_body("charge.success", charge_payload("ref_e"))

    with caplog.at_level(logging.ERROR):
        resp = _post(client, body, sign(body))

    assert resp.status_code == 200
    assert any("database went away" in r.getMessage() for r in caplog.records)


def test_unparseable_body_with_valid_signature_is_acknowledged(client):
    body = b"not json at all"
    resp = _post(client, body, sign(body))
    assert resp.status_code == 200


def test_unhandled_event_is_acknowledged(client):
    body = webhook_body("transfer.success", {"reference": "t1"})
    resp = _post(client, body, sign(body))
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "unhandled"


def test_webhook_under_api_prefix(client, store):
    body = json.dumps({"event": "subscription.create", "data": subscription_payload("SUB_API", email="new@b.com")}).encode()
    resp = client.post(
        "/api/webhooks/payment",
        content=body,
        headers={"x-paystack-signature": sign(body), "Content-Type": "application/json"},
    )
    assert resp.status_code == 200
    assert store.get("SUB_API").status == "active"
