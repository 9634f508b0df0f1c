"""
Tests for the Cashfree client, driven through httpx.MockTransport.
"""
import json
from decimal import Decimal

import httpx
import pytest

from meterguard.core.errors import GatewayError
from meterguard.features.gateway.cashfree_provider import BASE_URLS, CashfreeProvider, compute_webhook_signature
from meterguard.features.gateway.provider import GatewayCustomer, GatewayPlanRequest, SubscriptionPlanDetails

CUSTOMER = GatewayCustomer(customer_id="u_1", email="a@example.com", phone="9999999999", name="A")


def _provider(handler, environment="sandbox"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CashfreeProvider("app-id", "secret-key", environment=environment, api_version="2025-01-01", http_client=client)


def _recording_handler(response_json, status_code=200):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, json=response_json)

    return handler, seen


def test_create_order_sends_credentials_and_body():
    handler, seen = _recording_handler({"payment_session_id": "session_abc"})
    provider = _provider(handler)

    session_id = provider.create_order(
        order_id="ORDER_1",
        amount=Decimal("199.00"),
        currency="INR",
        customer=CUSTOMER,
        return_url="https://app.example.com/return?order_id=ORDER_1",
    )

    assert session_id == "session_abc"
    [request] = seen
    assert str(request.url) == f"{BASE_URLS['sandbox']}/orders"
    assert request.headers["x-client-id"] == "app-id"
    assert request.headers["x-client-secret"] == "secret-key"
    assert request.headers["x-api-version"] == "2025-01-01"
    body = json.loads(request.content)
    assert body["order_id"] == "ORDER_1"
    assert body["order_amount"] == 199.0
    assert body["customer_details"]["customer_email"] == "a@example.com"
    assert body["order_meta"] == {"return_url": "https://app.example.com/return?order_id=ORDER_1"}
    assert "order_note" not in body


def test_production_environment_uses_live_host():
    handler, seen = _recording_handler({"payment_session_id": "s"})
    provider = _provider(handler, environment="production")
    provider.create_order(order_id="O", amount=Decimal("1"), currency="INR", customer=CUSTOMER, return_url="r")
    assert seen[0].url.host == "api.cashfree.com"


def test_order_response_without_session_is_an_error():
    handler, _ = _recording_handler({"order_id": "ORDER_1"})
    with pytest.raises(GatewayError):
        _provider(handler).create_order(
            order_id="ORDER_1", amount=Decimal("1"), currency="INR", customer=CUSTOMER, return_url="r"
        )


def test_create_subscription_maps_response():
    handler, seen = _recording_handler(
        {"cf_subscription_id": 12345, "subscription_session_id": "sub_sess", "subscription_status": "INITIALIZED"}
    )
    details = SubscriptionPlanDetails(
        gateway_plan_id="plan_1",
        plan_name="Pro",
        amount=Decimal("499.00"),
        max_amount=None,
        currency="INR",
        max_cycles=12,
        intervals=1,
        interval_type="MONTH",
    )

    result = _provider(handler).create_subscription(subscription_id="SUB_1", plan_details=details, customer=CUSTOMER)

    assert result.gateway_subscription_id == "12345"
    assert result.session_id == "sub_sess"
    assert result.status == "INITIALIZED"
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/pg/subscriptions"
    assert body["plan_details"]["plan_type"] == "PERIODIC"
    assert body["plan_details"]["plan_max_cycles"] == 12
    assert "plan_max_amount" not in body["plan_details"]


def test_create_plan_returns_gateway_plan_id():
    handler, seen = _recording_handler({"plan_id": "plan_1", "plan_status": "ACTIVE"})
    request = GatewayPlanRequest(
        plan_id="plan_1",
        plan_name="Pro",
        currency="INR",
        recurring_amount=Decimal("499"),
        max_amount=Decimal("499"),
        max_cycles=12,
        intervals=1,
        interval_type="MONTH",
        note="Subscription for Pro",
    )
    assert _provider(handler).create_plan(request) == "plan_1"
    body = json.loads(seen[0].content)
    assert body["plan_recurring_amount"] == 499.0
    assert body["plan_interval_type"] == "MONTH"


def test_rejection_surfaces_gateway_message():
    handler, _ = _recording_handler({"message": "order_amount : invalid value", "code": "order_amount_invalid"}, 400)
    with pytest.raises(GatewayError) as exc:
        _provider(handler).create_order(
            order_id="O", amount=Decimal("1"), currency="INR", customer=CUSTOMER, return_url="r"
        )
    assert exc.value.message == "order_amount : invalid value"
    assert exc.value.status_code == 502


def test_rejection_without_json_body():
    def handler(request):
        return httpx.Response(503, text="upstream unavailable")

    with pytest.raises(GatewayError) as exc:
        _provider(handler).create_plan(
            GatewayPlanRequest("p", "n", "INR", Decimal("1"), Decimal("1"), 1, 1, "MONTH", "note")
        )
    assert "HTTP 503" in exc.value.message


@pytest.mark.parametrize(
    "error_cls,fragment",
    [(httpx.ReadTimeout, "timed out"), (httpx.ConnectError, "request failed")],
)
def test_transport_failures_become_gateway_errors(error_cls, fragment):
    def handler(request):
        raise error_cls("boom", request=request)

    with pytest.raises(GatewayError) as exc:
        _provider(handler).create_order(
            order_id="O", amount=Decimal("1"), currency="INR", customer=CUSTOMER, return_url="r"
        )
    assert fragment in exc.value.message


def test_non_json_success_is_an_error():
    def handler(request):
        return httpx.Response(200, text="<html>ok</html>")

    with pytest.raises(GatewayError):
        _provider(handler).create_order(
            order_id="O", amount=Decimal("1"), currency="INR", customer=CUSTOMER, return_url="r"
        )


def test_webhook_signature_verification():
    provider = _provider(lambda request: httpx.Response(200, json={}))
    body = b'{"type":"PAYMENT_SUCCESS_WEBHOOK","data":{}}'
    signature = compute_webhook_signature("secret-key", body, "1700000000")

    assert provider.verify_webhook_signature(signature, body, "1700000000")
    assert not provider.verify_webhook_signature(signature, body + b" ", "1700000000")
    assert not provider.verify_webhook_signature(signature, body, "1700000001")
    assert not provider.verify_webhook_signature("", body, "1700000000")
    assert not provider.verify_webhook_signature(compute_webhook_signature("other", body, "1700000000"), body, "1700000000")


def test_constructor_rejects_missing_credentials_and_unknown_environment():
    with pytest.raises(GatewayError):
        CashfreeProvider("", "secret")
    with pytest.raises(GatewayError):
        CashfreeProvider("app", "secret", environment="staging")
