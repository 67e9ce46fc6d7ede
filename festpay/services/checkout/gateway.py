"""Gateway Adapter: stateless translator between orders and the payment gateway.

The gateway is treated as an untrusted, possibly slow remote authority. Every
response is shape-validated before it reaches the Status Resolver, transient
failures are retried here with bounded exponential backoff, and session
creation is keyed on our own order ID so a retried request cannot open a
second charge.
"""

import asyncio
import base64
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from festpay.common.logging import logger
from festpay.common.metrics import gateway_latency_seconds, gateway_requests_total, retries_total
from festpay.common.state_machine import FAILED, PENDING, SUCCESS
from festpay.common.tracing import get_tracer
from festpay.services.checkout.errors import (
    GatewayRejectedError,
    GatewayResponseError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)


# Gateway payment_status -> internal attempt status. Anything not listed is
# logged and ignored rather than guessed.
GATEWAY_STATUS_MAP: dict[str, str] = {
    "SUCCESS": SUCCESS,
    "PENDING": PENDING,
    "NOT_ATTEMPTED": PENDING,
    "FAILED": FAILED,
    "USER_DROPPED": FAILED,
    "CANCELLED": FAILED,
    "VOID": FAILED,
}

tracer = get_tracer(__name__)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_major_units(amount: int) -> float:
    return float((Decimal(amount) / 100).quantize(Decimal("0.01")))


@dataclass(frozen=True)
class RemoteSession:
    order_id: str
    gateway_session_id: str


@dataclass(frozen=True)
class GatewayAttempt:
    """One validated payment attempt with its status mapped to our vocabulary."""

    payment_id: str
    order_id: str
    status: str
    gateway_status: str
    amount: int
    currency: str
    completed_at: datetime | None = None
    message: str | None = None
    payment_group: str | None = None


class GatewayPaymentRecord(BaseModel):
    """Shape check for one element of the gateway's payments list."""

    model_config = ConfigDict(extra="ignore")

    cf_payment_id: str = Field(min_length=1)
    order_id: str | None = None
    payment_status: str = Field(min_length=1)
    payment_amount: Decimal = Field(ge=0)
    payment_currency: str = Field(min_length=3, max_length=3)
    payment_completion_time: datetime | None = None
    payment_time: datetime | None = None
    payment_message: str | None = None
    payment_group: str | None = None

    @field_validator("cf_payment_id", mode="before")
    @classmethod
    def _payment_id_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class GatewayOrderResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order_id: str = Field(min_length=1)
    payment_session_id: str = Field(min_length=1)
    order_amount: Decimal | None = None
    order_currency: str | None = None


_records_adapter = TypeAdapter(list[GatewayPaymentRecord])


def map_attempt(order_id: str, record: GatewayPaymentRecord) -> GatewayAttempt | None:
    """Translate one record, or return None when its status is unmapped."""

    status = GATEWAY_STATUS_MAP.get(record.payment_status.upper())
    if status is None:
        logger.warning(
            "gateway_status_unmapped order_id=%s payment_id=%s gateway_status=%s",
            order_id,
            record.cf_payment_id,
            record.payment_status,
        )
        return None
    return GatewayAttempt(
        payment_id=record.cf_payment_id,
        order_id=order_id,
        status=status,
        gateway_status=record.payment_status.upper(),
        amount=to_minor_units(record.payment_amount),
        currency=record.payment_currency.upper(),
        completed_at=record.payment_completion_time or record.payment_time,
        message=record.payment_message,
        payment_group=record.payment_group,
    )


def parse_payment_records(order_id: str, body: Any) -> list[GatewayAttempt]:
    """Validate a payments list body and map it; raises GatewayResponseError on bad shape."""

    try:
        records = _records_adapter.validate_python(body)
    except ValidationError as exc:
        raise GatewayResponseError(f"malformed payments list for order {order_id}: {exc.error_count()} errors") from exc

    attempts = []
    for record in records:
        if record.order_id is not None and record.order_id != order_id:
            logger.warning(
                "gateway_record_order_mismatch order_id=%s record_order_id=%s payment_id=%s",
                order_id,
                record.order_id,
                record.cf_payment_id,
            )
            continue
        attempt = map_attempt(order_id, record)
        if attempt is not None:
            attempts.append(attempt)
    return attempts


def sign_webhook(secret: str, timestamp: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(secret: str, timestamp: str | None, raw_body: bytes, signature: str | None) -> bool:
    """Check the gateway's HMAC-SHA256 webhook signature."""

    if not secret or not timestamp or not signature:
        return False
    return hmac.compare_digest(sign_webhook(secret, timestamp, raw_body), signature)


def parse_webhook_attempt(payload: dict) -> GatewayAttempt | None:
    """Extract the payment attempt carried by a webhook body.

    Raises GatewayResponseError when the body lacks the order/payment blocks.
    """

    data = payload.get("data") if isinstance(payload, dict) else None
    order = data.get("order") if isinstance(data, dict) else None
    payment = data.get("payment") if isinstance(data, dict) else None
    if not isinstance(order, dict) or not isinstance(payment, dict) or not order.get("order_id"):
        raise GatewayResponseError("webhook body missing order/payment")
    order_id = str(order["order_id"])
    try:
        record = GatewayPaymentRecord.model_validate(
            {
                "payment_currency": order.get("order_currency"),
                **payment,
                "order_id": order_id,
            }
        )
    except ValidationError as exc:
        raise GatewayResponseError(f"malformed webhook payment for order {order_id}") from exc
    return map_attempt(order_id, record)


class PaymentGateway(ABC):
    """Boundary to the payment gateway; implementations hold no order state."""

    @abstractmethod
    async def create_remote_session(self, order) -> RemoteSession:
        """Open (or re-open) the gateway session for `order`, keyed on its order ID."""
        ...

    @abstractmethod
    async def fetch_attempts(self, order_id: str) -> list[GatewayAttempt]:
        """Return every payment attempt the gateway knows for `order_id`."""
        ...


class HttpPaymentGateway(PaymentGateway):
    """Cashfree-style PG REST client over httpx."""

    def __init__(
        self,
        base_url: str,
        app_id: str,
        secret_key: str,
        api_version: str,
        return_url: str,
        payment_methods: str,
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        service_name: str = "checkout",
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.secret_key = secret_key
        self.api_version = api_version
        self.return_url = return_url
        self.payment_methods = payment_methods
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.transport = transport
        self.sleep = sleep
        self.service_name = service_name

    @classmethod
    def from_settings(cls, settings, **overrides) -> "HttpPaymentGateway":
        options = dict(
            base_url=settings.gateway_api_url,
            app_id=settings.gateway_app_id,
            secret_key=settings.gateway_secret_key,
            api_version=settings.gateway_api_version,
            return_url=settings.gateway_return_url,
            payment_methods=settings.gateway_payment_methods,
            timeout_seconds=settings.gateway_timeout_seconds,
            max_retries=settings.gateway_max_retries,
            backoff_base_seconds=settings.gateway_backoff_base_seconds,
            service_name=settings.service_name,
        )
        options.update(overrides)
        return cls(**options)

    def _headers(self) -> dict[str, str]:
        return {
            "x-client-id": self.app_id,
            "x-client-secret": self.secret_key,
            "x-api-version": self.api_version,
            "Accept": "application/json",
        }

    def _count(self, operation: str, outcome: str) -> None:
        gateway_requests_total.labels(service=self.service_name, operation=operation, outcome=outcome).inc()

    async def _request(self, operation: str, method: str, path: str, json: dict | None = None) -> httpx.Response:
        """Send one logical request, retrying timeouts, network errors and 5xx/429."""

        timed_out = False
        last_error = "unknown"
        for attempt in range(1, self.max_retries + 1):
            started = time.perf_counter()
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                    resp = await client.request(method, f"{self.base_url}{path}", headers=self._headers(), json=json)
            except httpx.TimeoutException as exc:
                timed_out = True
                last_error = f"timeout: {exc!r}"
            except httpx.TransportError as exc:
                timed_out = False
                last_error = f"transport: {exc!r}"
            else:
                gateway_latency_seconds.labels(service=self.service_name, operation=operation).observe(
                    time.perf_counter() - started
                )
                if resp.status_code < 500 and resp.status_code != 429:
                    return resp
                timed_out = False
                last_error = f"status={resp.status_code}"

            self._count(operation, "retryable_error")
            if attempt == self.max_retries:
                break
            retries_total.labels(service=self.service_name, dependency="gateway").inc()
            # Exponential backoff: base, 2*base, 4*base, ...
            backoff_seconds = self.backoff_base_seconds * 2 ** (attempt - 1)
            logger.warning(
                "gateway_retry operation=%s attempt=%s backoff_s=%s error=%s",
                operation,
                attempt,
                backoff_seconds,
                last_error,
            )
            await self.sleep(backoff_seconds)

        logger.error("gateway_unavailable operation=%s attempts=%s error=%s", operation, self.max_retries, last_error)
        self._count(operation, "unavailable")
        if timed_out:
            raise GatewayTimeoutError()
        raise GatewayUnavailableError()

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text or f"status={resp.status_code}"
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"status={resp.status_code}"

    def _parse_session(self, order, resp: httpx.Response) -> RemoteSession:
        try:
            body = GatewayOrderResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise GatewayResponseError(f"malformed order response for {order.order_id}") from exc
        if body.order_id != order.order_id:
            raise GatewayResponseError(f"gateway answered for order {body.order_id}, expected {order.order_id}")
        if body.order_amount is not None and to_minor_units(body.order_amount) != order.final_amount:
            raise GatewayResponseError(
                f"gateway amount {body.order_amount} does not match order amount {order.final_amount}"
            )
        return RemoteSession(order_id=body.order_id, gateway_session_id=body.payment_session_id)

    def build_order_request(self, order) -> dict:
        return {
            "order_id": order.order_id,
            "order_amount": to_major_units(order.final_amount),
            "order_currency": order.currency,
            "customer_details": {
                "customer_id": f"cust_{order.customer_phone}",
                "customer_name": order.customer_name,
                "customer_email": order.customer_email,
                "customer_phone": order.customer_phone,
            },
            "order_meta": {
                "return_url": self.return_url.format(order_id=order.order_id),
                "payment_methods": self.payment_methods,
            },
        }

    async def create_remote_session(self, order) -> RemoteSession:
        with tracer.start_as_current_span("gateway.create_order") as span:
            span.set_attribute("festpay.order_id", order.order_id)
            resp = await self._request("create_order", "POST", "/orders", json=self.build_order_request(order))
            if resp.status_code == 409:
                # Already created by an earlier try whose response we lost.
                logger.info("gateway_order_exists order_id=%s", order.order_id)
                resp = await self._request("get_order", "GET", f"/orders/{order.order_id}")
            if resp.status_code >= 400:
                self._count("create_order", "rejected")
                raise GatewayRejectedError(self._error_message(resp), resp.status_code)
            session = self._parse_session(order, resp)
            self._count("create_order", "ok")
            return session

    async def fetch_attempts(self, order_id: str) -> list[GatewayAttempt]:
        with tracer.start_as_current_span("gateway.fetch_payments") as span:
            span.set_attribute("festpay.order_id", order_id)
            resp = await self._request("fetch_payments", "GET", f"/orders/{order_id}/payments")
            if resp.status_code == 404:
                self._count("fetch_payments", "not_found")
                return []
            if resp.status_code >= 400:
                self._count("fetch_payments", "rejected")
                raise GatewayRejectedError(self._error_message(resp), resp.status_code)
            try:
                body = resp.json()
            except ValueError as exc:
                raise GatewayResponseError(f"non-JSON payments response for {order_id}") from exc
            attempts = parse_payment_records(order_id, body)
            self._count("fetch_payments", "ok")
            return attempts
