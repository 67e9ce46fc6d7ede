"""Gateway adapter: request shape, retries, response validation, webhooks."""

import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from festpay.common.state_machine import FAILED, PENDING, SUCCESS
from festpay.services.checkout.errors import (
    GatewayRejectedError,
    GatewayResponseError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from festpay.services.checkout.gateway import (
    HttpPaymentGateway,
    parse_payment_records,
    parse_webhook_attempt,
    sign_webhook,
    verify_webhook_signature,
)


ORDER = SimpleNamespace(
    order_id="ORD_20260301T100000_abcdefghijklmnop",
    final_amount=95000,
    currency="INR",
    customer_name="Asha Rao",
    customer_email="asha@example.com",
    customer_phone="9876543210",
)


def make_gateway(handler, max_retries=3):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    gateway = HttpPaymentGateway(
        base_url="https://pg.test/pg/",
        app_id="app_123",
        secret_key="secret_456",
        api_version="2025-01-01",
        return_url="https://fest.test/payment/success?order_id={order_id}",
        payment_methods="upi,cc",
        max_retries=max_retries,
        backoff_base_seconds=0.5,
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )
    return gateway, sleeps


def session_body(order_id=ORDER.order_id, amount=950.0):
    return {"order_id": order_id, "payment_session_id": "session_xyz", "order_amount": amount, "order_currency": "INR"}


def test_create_session_sends_order_request():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json=session_body())

    gateway, sleeps = make_gateway(handler)
    session = asyncio.run(gateway.create_remote_session(ORDER))

    assert session.gateway_session_id == "session_xyz"
    assert sleeps == []
    request = seen[0]
    assert request.url == "https://pg.test/pg/orders"
    assert request.headers["x-client-id"] == "app_123"
    assert request.headers["x-api-version"] == "2025-01-01"
    body = json.loads(request.content)
    assert body["order_id"] == ORDER.order_id
    assert body["order_amount"] == 950.0
    assert body["customer_details"]["customer_phone"] == "9876543210"
    assert body["order_meta"]["return_url"].endswith(f"order_id={ORDER.order_id}")


def test_transient_errors_retried_with_backoff():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"message": "try later"})
        return httpx.Response(200, json=session_body())

    gateway, sleeps = make_gateway(handler)
    session = asyncio.run(gateway.create_remote_session(ORDER))

    assert session.gateway_session_id == "session_xyz"
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]


def test_exhausted_timeouts_raise_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    gateway, sleeps = make_gateway(handler)
    with pytest.raises(GatewayTimeoutError):
        asyncio.run(gateway.create_remote_session(ORDER))
    assert sleeps == [0.5, 1.0]


def test_exhausted_network_errors_raise_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    gateway, _ = make_gateway(handler, max_retries=2)
    with pytest.raises(GatewayUnavailableError) as exc:
        asyncio.run(gateway.fetch_attempts(ORDER.order_id))
    assert not isinstance(exc.value, GatewayTimeoutError)


def test_client_error_is_rejection_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"message": "order_amount : invalid value"})

    gateway, sleeps = make_gateway(handler)
    with pytest.raises(GatewayRejectedError) as exc:
        asyncio.run(gateway.create_remote_session(ORDER))

    assert exc.value.status_code == 400
    assert "order_amount" in exc.value.message
    assert len(calls) == 1
    assert sleeps == []


def test_existing_order_fetched_on_conflict():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(409, json={"message": "order already exists"})
        assert request.url.path.endswith(f"/orders/{ORDER.order_id}")
        return httpx.Response(200, json=session_body())

    gateway, _ = make_gateway(handler)
    session = asyncio.run(gateway.create_remote_session(ORDER))

    assert session.order_id == ORDER.order_id


def test_malformed_session_response():
    def handler(request):
        return httpx.Response(200, json={"order_id": ORDER.order_id})

    gateway, _ = make_gateway(handler)
    with pytest.raises(GatewayResponseError):
        asyncio.run(gateway.create_remote_session(ORDER))


def test_session_amount_mismatch_rejected():
    def handler(request):
        return httpx.Response(200, json=session_body(amount=1.0))

    gateway, _ = make_gateway(handler)
    with pytest.raises(GatewayResponseError):
        asyncio.run(gateway.create_remote_session(ORDER))


def test_fetch_attempts_maps_statuses():
    records = [
        {"cf_payment_id": 111, "payment_status": "FAILED", "payment_amount": 950.0, "payment_currency": "INR"},
        {"cf_payment_id": "222", "payment_status": "USER_DROPPED", "payment_amount": 950, "payment_currency": "INR"},
        {"cf_payment_id": "333", "payment_status": "NOT_ATTEMPTED", "payment_amount": 950, "payment_currency": "INR"},
        {"cf_payment_id": "444", "payment_status": "SUCCESS", "payment_amount": "950.00", "payment_currency": "inr",
         "payment_completion_time": "2026-03-01T15:42:44+05:30", "payment_group": "upi"},
        {"cf_payment_id": "555", "payment_status": "FLAGGED", "payment_amount": 950, "payment_currency": "INR"},
    ]

    def handler(request):
        assert request.url.path.endswith(f"/orders/{ORDER.order_id}/payments")
        return httpx.Response(200, json=records)

    gateway, _ = make_gateway(handler)
    attempts = asyncio.run(gateway.fetch_attempts(ORDER.order_id))

    assert [(a.payment_id, a.status) for a in attempts] == [
        ("111", FAILED),
        ("222", FAILED),
        ("333", PENDING),
        ("444", SUCCESS),
    ]
    success = attempts[-1]
    assert success.amount == 95000
    assert success.currency == "INR"
    assert success.completed_at is not None
    assert success.payment_group == "upi"


def test_fetch_attempts_unknown_order_is_empty():
    gateway, _ = make_gateway(lambda request: httpx.Response(404, json={"message": "order not found"}))

    assert asyncio.run(gateway.fetch_attempts(ORDER.order_id)) == []


def test_malformed_payment_records():
    with pytest.raises(GatewayResponseError):
        parse_payment_records(ORDER.order_id, {"payments": []})
    with pytest.raises(GatewayResponseError):
        parse_payment_records(ORDER.order_id, [{"cf_payment_id": "1", "payment_status": "SUCCESS"}])


def test_records_for_other_orders_skipped():
    body = [
        {"cf_payment_id": "1", "order_id": "ORD_other", "payment_status": "SUCCESS",
         "payment_amount": 10, "payment_currency": "INR"},
    ]

    assert parse_payment_records(ORDER.order_id, body) == []


def test_webhook_signature_round_trip():
    body = b'{"type":"PAYMENT_SUCCESS_WEBHOOK"}'
    signature = sign_webhook("whsec", "1772359200", body)

    assert verify_webhook_signature("whsec", "1772359200", body, signature)
    assert not verify_webhook_signature("whsec", "1772359201", body, signature)
    assert not verify_webhook_signature("whsec", "1772359200", body + b" ", signature)
    assert not verify_webhook_signature("", "1772359200", body, signature)
    assert not verify_webhook_signature("whsec", None, body, signature)


def test_parse_webhook_attempt():
    payload = {
        "type": "PAYMENT_SUCCESS_WEBHOOK",
        "data": {
            "order": {"order_id": ORDER.order_id, "order_amount": 950.0, "order_currency": "INR"},
            "payment": {
                "cf_payment_id": 5114910,
                "payment_status": "SUCCESS",
                "payment_amount": 950.0,
                "payment_time": "2026-03-01T15:42:44+05:30",
                "payment_group": "upi",
            },
        },
    }

    attempt = parse_webhook_attempt(payload)

    assert attempt.order_id == ORDER.order_id
    assert attempt.payment_id == "5114910"
    assert attempt.status == SUCCESS
    assert attempt.currency == "INR"
    assert attempt.amount == 95000


def test_parse_webhook_rejects_missing_blocks():
    with pytest.raises(GatewayResponseError):
        parse_webhook_attempt({"data": {"order": {"order_id": ORDER.order_id}}})
