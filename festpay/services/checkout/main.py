"""Checkout HTTP surface and background workers.

Customer-facing endpoints (create order, status, coupon check) are rate
limited per client with a Redis token bucket; the gateway webhook is
authenticated by signature and the internal endpoints by API key.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from time import perf_counter, time
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from festpay.common.config import settings
from festpay.common.db import SessionLocal
from festpay.common.ids import is_order_id
from festpay.common.logging import configure_logging, logger, order_context, trace_id_ctx
from festpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    order_create_latency_seconds,
)
from festpay.common.startup import log_startup_config
from festpay.common.state_machine import CUSTOMER_MESSAGES
from festpay.common.tracing import instrument_app, setup_tracing
from festpay.services.checkout.errors import (
    CheckoutError,
    CouponRejectedError,
    EmptyCartError,
    GatewayRejectedError,
    GatewayResponseError,
    GatewayUnavailableError,
    NothingToChargeError,
    OrderNotFoundError,
)
from festpay.services.checkout.gateway import HttpPaymentGateway, parse_webhook_attempt, verify_webhook_signature
from festpay.services.checkout.reconciliation import ReconciliationService
from festpay.services.checkout.schemas import (
    AttemptView,
    CouponValidateRequest,
    CouponValidateResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    ErrorResponse,
    OrderStatusResponse,
    ReconcileResponse,
)
from festpay.services.checkout.service import OrderService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "RATE_LIMIT_PER_MINUTE",
        "GATEWAY_API_URL",
        "GATEWAY_APP_ID",
        "GATEWAY_SECRET_KEY",
        "GATEWAY_WEBHOOK_SECRET",
        "ORDER_CURRENCY",
        "RECONCILE_GRACE_SECONDS",
        "RECONCILE_INTERVAL_SECONDS",
    ],
)
service = OrderService(SessionLocal, HttpPaymentGateway.from_settings(settings), service_name=settings.service_name)
reconciler = ReconciliationService(service)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and the reconciliation loop with app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    reconcile_task = asyncio.create_task(reconciler.run_forever())
    yield
    publisher_task.cancel()
    reconcile_task.cancel()
    await service.kafka.close()


app = FastAPI(title="FestPay Checkout", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
            elapsed
        )
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def _error_status(exc: CheckoutError) -> int:
    if isinstance(exc, (EmptyCartError, NothingToChargeError, CouponRejectedError)):
        return 400
    if isinstance(exc, OrderNotFoundError):
        return 404
    if isinstance(exc, GatewayUnavailableError):
        return 503
    if isinstance(exc, (GatewayRejectedError, GatewayResponseError)):
        return 502
    return 409


ORDER_ERROR_RESPONSES = {
    status: {"model": ErrorResponse} for status in (400, 404, 409, 502, 503)
}


@app.exception_handler(CheckoutError)
async def checkout_error_handler(_: Request, exc: CheckoutError):
    return JSONResponse(status_code=_error_status(exc), content={"reason": exc.reason, "message": exc.message})


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def enforce_rate_limit(client_key: str) -> None:
    # Redis token bucket (capacity = refill rate = limit per minute).
    key = f"tokenbucket:{client_key}"
    now = time()
    capacity = float(settings.rate_limit_per_minute)
    refill_per_sec = capacity / 60.0
    try:
        values = rdb.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        tokens = min(capacity, tokens + max(0.0, now - updated_at) * refill_per_sec)
        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        rdb.expire(key, 120)
    except redis.RedisError as exc:
        # Fail open: checkout must not depend on the limiter being up.
        logger.warning("rate_limiter_unavailable: %s", exc)
        return
    if not allowed:
        raise HTTPException(status_code=429, detail="rate limit exceeded")


def _client_key(request: Request, fallback: str | None = None) -> str:
    if fallback:
        return fallback
    return request.client.host if request.client else "anonymous"


def _order_response(order) -> CreateOrderResponse:
    return CreateOrderResponse(
        order_id=order.order_id,
        gateway_session_id=order.gateway_session_id,
        status=order.status,
        requested_amount=order.requested_amount,
        discount_amount=order.discount_amount,
        final_amount=order.final_amount,
        currency=order.currency,
        coupon_code=order.coupon_code,
    )


@app.post("/orders", response_model=CreateOrderResponse, responses=ORDER_ERROR_RESPONSES)
async def create_order(
    req: CreateOrderRequest,
    request: Request,
    x_correlation_id: str | None = Header(default=None),
):
    """Create (or return the existing) order for the idempotency key.

    A timed-out gateway call still answers 200 with `PENDING` and no session;
    repeating the request with the same key retries the session.
    """

    enforce_rate_limit(_client_key(request, req.customer_details.phone))
    trace_id_ctx.set(x_correlation_id or str(uuid4()))
    with order_create_latency_seconds.labels(service=settings.service_name).time():
        order = await service.create_order(req)
    return _order_response(order)


@app.get("/orders/{order_id}", response_model=OrderStatusResponse, responses=ORDER_ERROR_RESPONSES)
async def get_order_status(order_id: str, request: Request):
    """Canonical status, refreshed from the gateway while the order is open."""

    enforce_rate_limit(_client_key(request))
    if not is_order_id(order_id):
        raise OrderNotFoundError(order_id)
    with order_context(order_id):
        order = await service.refresh_status(order_id)
        attempts = service.list_attempts(order_id)
    return OrderStatusResponse(
        order_id=order.order_id,
        status=order.status,
        message=CUSTOMER_MESSAGES[order.status],
        final_amount=order.final_amount,
        currency=order.currency,
        attempts=[
            AttemptView(
                payment_id=a.payment_id,
                status=a.status,
                gateway_status=a.gateway_status,
                amount=a.amount,
                currency=a.currency,
                message=a.message,
            )
            for a in attempts
        ],
    )


@app.post("/coupons/validate", response_model=CouponValidateResponse)
def validate_coupon(req: CouponValidateRequest, request: Request):
    """Preview a coupon against an order amount. Never consumes a use."""

    enforce_rate_limit(_client_key(request))
    result = service.validate_coupon(req.code, req.order_amount)
    return CouponValidateResponse(
        is_valid=result.is_valid,
        discount_amount=result.discount_amount,
        final_amount=result.final_amount,
        error_reason=result.error_reason.value if result.error_reason else None,
        error_message=result.error_message,
    )


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    x_webhook_timestamp: str | None = Header(default=None),
):
    """Gateway callback; verified, then fed through the shared resolver."""

    raw_body = await request.body()
    if not verify_webhook_signature(settings.gateway_webhook_secret, x_webhook_timestamp, raw_body, x_webhook_signature):
        logger.warning("webhook_signature_invalid")
        raise HTTPException(status_code=401, detail="invalid webhook signature")
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="webhook body is not JSON") from exc

    attempt = parse_webhook_attempt(payload)
    if attempt is None:
        return {"ok": True, "applied": False}
    order = service.handle_webhook_attempt(attempt)
    return {"ok": True, "applied": True, "status": order.status}


@app.post("/internal/reconcile", response_model=ReconcileResponse)
async def run_reconcile(x_api_key: str | None = Header(default=None)):
    """Run one reconciliation pass now."""

    enforce_api_key(x_api_key)
    stats = await reconciler.run_once()
    return ReconcileResponse(**stats.as_dict())


@app.get("/internal/orders/attention")
def orders_needing_attention(limit: int = 100, x_api_key: str | None = Header(default=None)):
    """Orders flagged for an operator (stuck, conflicting or over-redeemed)."""

    enforce_api_key(x_api_key)
    return [
        {
            "order_id": order.order_id,
            "status": order.status,
            "attention_reason": order.attention_reason,
            "reconcile_failures": order.reconcile_failures,
            "final_amount": order.final_amount,
        }
        for order in service.list_orders_needing_attention(limit)
    ]


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
