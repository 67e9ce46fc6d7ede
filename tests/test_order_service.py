"""Order creation, idempotency and status application."""

import asyncio
import threading

import pytest
from conftest import make_attempt, make_request
from sqlalchemy import create_engine, select

from festpay.common.db import Base, make_session_factory
from festpay.common.events import ORDER_FAILED_TOPIC, ORDER_SUCCEEDED_TOPIC
from festpay.common.state_machine import CREATED, FAILED, PENDING, SUCCESS
from festpay.services.checkout.errors import (
    CouponRejectedError,
    EmptyCartError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    NothingToChargeError,
    OrderNotFoundError,
)
from festpay.services.checkout.models import (
    Coupon,
    Order,
    OrderIdempotency,
    OrderTimeline,
    OutboxEvent,
    PaymentAttempt,
)
from festpay.services.checkout.schemas import CartItem
from festpay.services.checkout.service import OrderService


def count(session_factory, model, *where):
    with session_factory() as db:
        return len(db.execute(select(model).where(*where)).scalars().all())


def create(order_service, request):
    return asyncio.run(order_service.create_order(request))


def test_create_order_with_coupon(order_service, add_coupon, gateway):
    add_coupon("EARLYBIRD", "PERCENTAGE", "5")

    order = create(order_service, make_request(amount=1000, coupon_code="earlybird"))

    assert order.status == CREATED
    assert order.requested_amount == 1000
    assert order.discount_amount == 50
    assert order.final_amount == 950
    assert order.coupon_code == "EARLYBIRD"
    assert order.gateway_session_id == f"session_{order.order_id}"
    assert gateway.create_calls == 1


def test_requested_amount_sums_cart(order_service):
    items = [
        CartItem(item_id="evt-1", title="Hackathon", unit_price=300, quantity=2),
        CartItem(item_id="combo-1", kind="combo", title="Tech Combo", unit_price=1200),
    ]

    order = create(order_service, make_request(items=items))

    assert order.requested_amount == 1800
    assert order.final_amount == 1800
    assert order.cart[0]["quantity"] == 2


def test_duplicate_submits_in_one_loop_share_order(order_service, session_factory, gateway):
    request = make_request("key-double-click")

    async def submit_many():
        return await asyncio.gather(*(order_service.create_order(request) for _ in range(5)))

    orders = asyncio.run(submit_many())

    assert len({o.order_id for o in orders}) == 1
    assert count(session_factory, Order) == 1
    assert gateway.create_calls == 1


def test_racing_submits_on_separate_connections_create_one_order(tmp_path, gateway, clock):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    service = OrderService(factory, gateway, service_name="checkout-test", currency="INR", clock=clock)
    callers = 4
    barrier = threading.Barrier(callers, timeout=10)
    lookup = service._find_active_order

    def lookup_then_wait(key):
        found = lookup(key)
        barrier.wait()
        return found

    service._find_active_order = lookup_then_wait
    request = make_request("key-thread-race")
    orders, errors = [], []

    def submit():
        try:
            orders.append(asyncio.run(service.create_order(request)))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=submit) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    try:
        assert errors == []
        assert len({o.order_id for o in orders}) == 1
        assert count(factory, Order) == 1
        assert count(factory, OrderTimeline, OrderTimeline.to_state == CREATED) == 1
        with factory() as db:
            assert db.get(OrderIdempotency, "key-thread-race").order_id == orders[0].order_id
    finally:
        engine.dispose()


def test_repeat_after_completion_returns_same_order(order_service, session_factory):
    first = create(order_service, make_request("key-repeat"))
    second = create(order_service, make_request("key-repeat"))

    assert second.order_id == first.order_id
    assert second.gateway_session_id == first.gateway_session_id
    assert count(session_factory, Order) == 1


def test_lookup_race_resolved_inside_insert(order_service, session_factory, monkeypatch):
    first = create(order_service, make_request("key-race"))
    monkeypatch.setattr(order_service, "_find_active_order", lambda key: None)

    second = create(order_service, make_request("key-race"))

    assert second.order_id == first.order_id
    assert count(session_factory, Order) == 1


def test_empty_cart_rejected(order_service, session_factory):
    with pytest.raises(EmptyCartError):
        create(order_service, make_request(items=[]))
    assert count(session_factory, Order) == 0


def test_rejected_coupon_blocks_order(order_service, add_coupon, session_factory, gateway):
    add_coupon("BIGSPENDER", "FIXED", "20", min_order_amount=100)

    with pytest.raises(CouponRejectedError) as exc:
        create(order_service, make_request(amount=80, coupon_code="BIGSPENDER"))

    assert exc.value.reason == "BELOW_MINIMUM"
    assert count(session_factory, Order) == 0
    assert gateway.create_calls == 0


def test_fully_discounted_order_rejected(order_service, add_coupon):
    add_coupon("FREEPASS", "FIXED", "5000")

    with pytest.raises(NothingToChargeError):
        create(order_service, make_request(amount=1000, coupon_code="FREEPASS"))


def test_gateway_rejection_fails_order_and_key_can_retry(order_service, session_factory, gateway):
    gateway.create_error = GatewayRejectedError("customer_phone is invalid", 400)

    with pytest.raises(GatewayRejectedError):
        create(order_service, make_request("key-retry"))

    with session_factory() as db:
        failed = db.execute(select(Order)).scalar_one()
    assert failed.status == FAILED

    gateway.create_error = None
    retried = create(order_service, make_request("key-retry"))

    assert retried.order_id != failed.order_id
    assert retried.status == CREATED
    with session_factory() as db:
        assert db.get(OrderIdempotency, "key-retry").order_id == retried.order_id


def test_gateway_unavailable_fails_order(order_service, session_factory, gateway):
    gateway.create_error = GatewayUnavailableError()

    with pytest.raises(GatewayUnavailableError):
        create(order_service, make_request())

    assert count(session_factory, Order, Order.status == FAILED) == 1
    assert count(session_factory, OutboxEvent, OutboxEvent.topic == ORDER_FAILED_TOPIC) == 1


def test_gateway_timeout_leaves_order_pending(order_service, gateway):
    gateway.create_error = GatewayTimeoutError()

    order = create(order_service, make_request("key-timeout"))

    assert order.status == PENDING
    assert order.gateway_session_id is None

    gateway.create_error = None
    repeated = create(order_service, make_request("key-timeout"))

    assert repeated.order_id == order.order_id
    assert repeated.status == PENDING
    assert repeated.gateway_session_id == f"session_{order.order_id}"


def test_failed_then_success_in_one_batch_succeeds(order_service, session_factory):
    order = create(order_service, make_request())

    updated = order_service.apply_attempts(
        order.order_id,
        [make_attempt(order, "pay_1", FAILED), make_attempt(order, "pay_2", SUCCESS)],
        source="poll",
    )

    assert updated.status == SUCCESS
    assert count(session_factory, PaymentAttempt) == 2
    assert count(session_factory, OutboxEvent, OutboxEvent.topic == ORDER_SUCCEEDED_TOPIC) == 1


def test_pending_attempt_moves_created_to_pending(order_service):
    order = create(order_service, make_request())

    updated = order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", PENDING)], "webhook")

    assert updated.status == PENDING


def test_replayed_attempts_change_nothing(order_service, session_factory):
    order = create(order_service, make_request())
    batch = [make_attempt(order, "pay_1", SUCCESS)]

    first = order_service.apply_attempts(order.order_id, batch, source="webhook")
    second = order_service.apply_attempts(order.order_id, batch, source="poll")

    assert first.status == second.status == SUCCESS
    assert second.state_version == first.state_version
    assert count(session_factory, OrderTimeline, OrderTimeline.to_state == SUCCESS) == 1
    assert count(session_factory, OutboxEvent) == 1


def test_terminal_status_is_sticky(order_service, session_factory):
    order = create(order_service, make_request())
    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", SUCCESS)], "webhook")

    later = order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_2", FAILED)], "poll")

    assert later.status == SUCCESS
    assert not later.needs_attention
    assert count(session_factory, OutboxEvent) == 1


def test_success_after_failed_is_flagged_not_applied(order_service):
    order = create(order_service, make_request())
    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", FAILED)], "webhook")

    later = order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_2", SUCCESS)], "reconcile")

    assert later.status == FAILED
    assert later.needs_attention
    assert later.attention_reason == "success_after_failed"


def test_stored_final_attempt_not_downgraded(order_service, session_factory):
    order = create(order_service, make_request())
    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", PENDING)], "webhook")
    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", SUCCESS)], "webhook")

    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", PENDING)], "poll")

    with session_factory() as db:
        assert db.get(PaymentAttempt, "pay_1").status == SUCCESS


def test_coupon_redeemed_once_on_success(order_service, add_coupon, session_factory):
    add_coupon("EARLYBIRD", "PERCENTAGE", "5", usage_limit=10)
    order = create(order_service, make_request(amount=1000, coupon_code="EARLYBIRD"))

    with session_factory() as db:
        assert db.get(Coupon, "EARLYBIRD").usage_count == 0

    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", SUCCESS)], "webhook")
    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", SUCCESS)], "poll")

    with session_factory() as db:
        assert db.get(Coupon, "EARLYBIRD").usage_count == 1


def test_failed_order_does_not_redeem_coupon(order_service, add_coupon, session_factory):
    add_coupon("EARLYBIRD", "PERCENTAGE", "5")
    order = create(order_service, make_request(amount=1000, coupon_code="EARLYBIRD"))

    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", FAILED)], "webhook")

    with session_factory() as db:
        assert db.get(Coupon, "EARLYBIRD").usage_count == 0


def test_redemption_over_limit_flags_order(order_service, add_coupon, session_factory):
    add_coupon("ONCE", "FIXED", "100", usage_limit=1)
    first = create(order_service, make_request("key-once-a", amount=1000, coupon_code="ONCE"))
    second = create(order_service, make_request("key-once-b", amount=1000, coupon_code="ONCE"))

    order_service.apply_attempts(first.order_id, [make_attempt(first, "pay_a", SUCCESS)], "webhook")
    late = order_service.apply_attempts(second.order_id, [make_attempt(second, "pay_b", SUCCESS)], "webhook")

    assert late.status == SUCCESS
    assert late.needs_attention
    assert late.attention_reason == "coupon_redemption_rejected:LIMIT_EXCEEDED"
    with session_factory() as db:
        assert db.get(Coupon, "ONCE").usage_count == 1


def test_later_flags_keep_earlier_reasons(order_service, add_coupon):
    add_coupon("ONCE", "FIXED", "100", usage_limit=1)
    first = create(order_service, make_request("key-once-a", amount=1000, coupon_code="ONCE"))
    second = create(order_service, make_request("key-once-b", amount=1000, coupon_code="ONCE"))
    order_service.apply_attempts(first.order_id, [make_attempt(first, "pay_a", SUCCESS)], "webhook")
    order_service.apply_attempts(second.order_id, [make_attempt(second, "pay_b", SUCCESS)], "webhook")

    duplicate = [make_attempt(second, "pay_c", SUCCESS)]
    order_service.apply_attempts(second.order_id, duplicate, "reconcile")
    late = order_service.apply_attempts(second.order_id, duplicate, "reconcile")

    assert late.needs_attention
    assert late.attention_reason == "coupon_redemption_rejected:LIMIT_EXCEEDED;multiple_success_attempts"


def test_amount_mismatch_is_flagged(order_service):
    order = create(order_service, make_request(amount=1000))

    updated = order_service.apply_attempts(
        order.order_id, [make_attempt(order, "pay_1", SUCCESS, amount=1)], "webhook"
    )

    assert updated.needs_attention
    assert updated.attention_reason == "attempt_amount_mismatch"


def test_apply_to_unknown_order(order_service):
    with pytest.raises(OrderNotFoundError):
        order_service.apply_attempts("ORD_missing", [], "poll")


def test_refresh_status_uses_gateway(order_service, gateway):
    order = create(order_service, make_request())
    gateway.attempts[order.order_id] = [make_attempt(order, "pay_1", SUCCESS)]

    refreshed = asyncio.run(order_service.refresh_status(order.order_id))

    assert refreshed.status == SUCCESS


def test_refresh_status_degrades_on_gateway_error(order_service, gateway):
    order = create(order_service, make_request())
    gateway.fetch_error = GatewayUnavailableError()

    refreshed = asyncio.run(order_service.refresh_status(order.order_id))

    assert refreshed.status == CREATED


def test_refresh_skips_gateway_for_terminal_orders(order_service, gateway):
    order = create(order_service, make_request())
    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", FAILED)], "webhook")

    asyncio.run(order_service.refresh_status(order.order_id))

    assert gateway.fetch_calls == 0


def test_outbox_payload_describes_outcome(order_service, session_factory):
    order = create(order_service, make_request())
    order_service.apply_attempts(order.order_id, [make_attempt(order, "pay_1", SUCCESS)], "webhook")

    with session_factory() as db:
        row = db.execute(select(OutboxEvent)).scalar_one()

    assert row.aggregate_id == order.order_id
    assert row.payload["payload"]["status"] == SUCCESS
    assert row.payload["payload"]["customer_email"] == "asha@example.com"
    assert row.payload["payload"]["final_amount"] == order.final_amount
