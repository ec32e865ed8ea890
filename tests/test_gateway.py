import hashlib
import hmac
import json

import httpx
import pytest

from accessedu.core.errors import GatewayError, ValidationError
from accessedu.services.paystack_gateway import (
    PaystackGateway,
    parse_transaction,
    verify_webhook_signature,
)


def _gateway(handler) -> PaystackGateway:
    return PaystackGateway(
        secret_key="sk_test_secret",
        base_url="https://api.paystack.test",
        timeout=1.0,
        retry_backoff=0,
        transport=httpx.MockTransport(handler),
    )


def _ok(data, status_code=200):
    return httpx.Response(status_code, json={"status": True, "message": "ok", "data": data})


VERIFIED = {
    "reference": "ref123",
    "status": "success",
    "amount": 500000,
    "currency": "NGN",
    "channel": "card",
    "gateway_response": "Successful",
    "paid_at": "2026-01-01T12:00:00.000Z",
    "customer": {"email": "a@b.com", "customer_code": "CUS_1"},
    "plan": "PLN_monthly",
    "metadata": {"userId": "u1"},
}


def test_initialize_sends_bearer_and_body():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return _ok({"authorization_url": "https://checkout.paystack.com/x", "access_code": "ac", "reference": "ref_1"})

    result = _gateway(handler).initialize_payment("a@b.com", "PLN_monthly", 5000, {"userId": "u1"}, reference="ref_1")

    assert seen["auth"] == "Bearer sk_test_secret"
    assert seen["path"] == "/transaction/initialize"
    assert seen["body"] == {"email": "a@b.com", "amount": 5000, "metadata": {"userId": "u1"},
                            "plan": "PLN_monthly", "reference": "ref_1"}
    assert result.authorization_url == "https://checkout.paystack.com/x"
    assert result.reference == "ref_1"


@pytest.mark.parametrize("email,amount", [("", 5000), ("a@b.com", 0), ("a@b.com", -1)])
def test_initialize_validates_before_calling(email, amount):
    calls = []

    def handler(request):
        calls.append(request)
        return _ok({})

    with pytest.raises(ValidationError):
        _gateway(handler).initialize_payment(email, "PLN_monthly", amount)
    assert calls == []


def test_initialize_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as exc:
        _gateway(handler).initialize_payment("a@b.com", None, 5000)
    assert exc.value.code == "unavailable"
    assert len(calls) == 1


def test_verify_parses_transaction():
    calls = []

    def handler(request):
        calls.append(request)
        return _ok(VERIFIED)

    result = _gateway(handler).verify_transaction("ref123")

    assert calls[0].url.path == "/transaction/verify/ref123"
    assert result.status == "success"
    assert result.amount == 500000
    assert result.plan_code == "PLN_monthly"
    assert result.customer["customer_code"] == "CUS_1"
    assert result.paid_at.isoformat() == "2026-01-01T12:00:00"


def test_verify_is_attempted_exactly_once_when_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(GatewayError) as exc:
        _gateway(handler).verify_transaction("ref123")
    assert exc.value.code == "unavailable"
    assert len(calls) == 1


@pytest.mark.parametrize("reference", [
    "../../subscription/SUB_victim",
    "..",
    "ref/../../customer",
    "ref?perPage=100",
    "ref#frag",
    "ref 1",
])
def test_verify_refuses_references_that_escape_the_path(reference):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return _ok({"reference": reference, "status": "success",
                    "customer": {"email": "victim@x.com", "customer_code": "CUS_v"}})

    with pytest.raises(ValidationError):
        _gateway(handler).verify_transaction(reference)
    assert calls == []


def test_verify_keeps_reference_in_one_path_segment():
    paths = []

    def handler(request):
        paths.append(request.url.raw_path)
        return _ok({**VERIFIED, "reference": "AE.ref=1-x"})

    _gateway(handler).verify_transaction("AE.ref=1-x")

    assert paths == [b"/transaction/verify/AE.ref%3D1-x"]


def test_fetch_subscription_refuses_path_traversal():
    calls = []
    handler = lambda request: calls.append(request) or _ok({})
    with pytest.raises(ValidationError):
        _gateway(handler).fetch_subscription("../transaction/verify/ref123")
    assert calls == []


def test_initialize_rejects_reference_unusable_on_verify():
    calls = []
    handler = lambda request: calls.append(request) or _ok({})
    with pytest.raises(ValidationError):
        _gateway(handler).initialize_payment("a@b.com", None, 5000, reference="../plan")
    assert calls == []


def test_verify_non_numeric_amount_is_malformed():
    handler = lambda request: _ok({**VERIFIED, "amount": "N/A"})
    with pytest.raises(GatewayError) as exc:
        _gateway(handler).verify_transaction("ref123")
    assert exc.value.code == "malformed"
    assert exc.value.status_code == 502


def test_disable_retries_once_when_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        return _ok(None)

    ack = _gateway(handler).disable_subscription("SUB_1", "tok_1")

    assert len(calls) == 2
    assert ack.message == "Subscription disabled"


def test_rejection_is_not_retried_and_maps_to_400():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})

    with pytest.raises(GatewayError) as exc:
        _gateway(handler).verify_transaction("missing")
    assert exc.value.code == "rejected"
    assert exc.value.status_code == 400
    assert exc.value.message == "Transaction reference not found"
    assert len(calls) == 1


def test_bad_credentials_are_a_502():
    handler = lambda request: httpx.Response(401, json={"status": False, "message": "Invalid key"})
    with pytest.raises(GatewayError) as exc:
        _gateway(handler).verify_transaction("ref123")
    assert exc.value.status_code == 502


def test_server_error_is_upstream():
    handler = lambda request: httpx.Response(503, text="Service Unavailable")
    with pytest.raises(GatewayError) as exc:
        _gateway(handler).verify_transaction("ref123")
    assert exc.value.code == "upstream"
    assert exc.value.status_code == 502


def test_non_json_body_is_malformed():
    handler = lambda request: httpx.Response(200, text="<html>gateway</html>")
    with pytest.raises(GatewayError) as exc:
        _gateway(handler).verify_transaction("ref123")
    assert exc.value.code == "malformed"


def test_false_status_envelope_is_rejected():
    handler = lambda request: httpx.Response(200, json={"status": False, "message": "Nope"})
    with pytest.raises(GatewayError) as exc:
        _gateway(handler).verify_transaction("ref123")
    assert exc.value.code == "rejected"


def test_create_plan_sends_paystack_interval():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return _ok({"plan_code": "PLN_abc"})

    code = _gateway(handler).create_plan("Yearly Plan", 50000, "yearly")

    assert code == "PLN_abc"
    assert seen["body"]["interval"] == "annually"


def test_create_plan_rejects_unknown_interval():
    with pytest.raises(ValidationError):
        _gateway(lambda r: _ok({})).create_plan("Weekly", 100, "weekly")


def test_disable_and_enable_subscription():
    seen = []

    def handler(request):
        seen.append((request.url.path, json.loads(request.content)))
        return _ok(None)

    gw = _gateway(handler)
    gw.disable_subscription("SUB_1", "tok_1")
    gw.enable_subscription("SUB_1", "tok_1")

    assert seen == [
        ("/subscription/disable", {"code": "SUB_1", "token": "tok_1"}),
        ("/subscription/enable", {"code": "SUB_1", "token": "tok_1"}),
    ]


def test_disable_requires_token():
    with pytest.raises(ValidationError):
        _gateway(lambda r: _ok(None)).disable_subscription("SUB_1", "")


def test_fetch_subscription():
    handler = lambda request: _ok({"subscription_code": "SUB_1", "status": "active"})
    assert _gateway(handler).fetch_subscription("SUB_1")["status"] == "active"


def test_parse_transaction_normalizes_status_and_metadata():
    result = parse_transaction({
        "reference": "r",
        "status": "reversed",
        "amount": "5000",
        "metadata": json.dumps({"userId": "u1"}),
        "subscription": {"subscription_code": "SUB_1", "email_token": "tok"},
    })
    assert result.status == "failed"
    assert result.amount == 5000
    assert result.metadata == {"userId": "u1"}
    assert result.subscription_code == "SUB_1"
    assert result.email_token == "tok"

    assert parse_transaction({"reference": "r", "status": "abandoned"}).status == "pending"


def test_verify_webhook_signature():
    body = b'{"event":"charge.success"}'
    good = hmac.new(b"secret", body, hashlib.sha512).hexdigest()

    assert verify_webhook_signature(body, good, "secret")
    assert not verify_webhook_signature(body, good, "other")
    assert not verify_webhook_signature(body + b" ", good, "secret")
    assert not verify_webhook_signature(body, None, "secret")
    assert not verify_webhook_signature(body, good, "")
