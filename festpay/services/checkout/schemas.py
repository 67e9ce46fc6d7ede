"""API request/response schemas for checkout endpoints."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
PHONE_PATTERN = r"^\d{10}$"


class CartItem(BaseModel):
    """One selected event or combo; prices are integer minor units."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    item_id: str = Field(min_length=1, max_length=64)
    kind: Literal["event", "combo"] = "event"
    title: str = Field(min_length=1, max_length=200)
    unit_price: int = Field(ge=0)
    quantity: int = Field(default=1, ge=1, le=100)

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class CustomerDetails(BaseModel):
    """Customer contact details; immutable once attached to an order."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    phone: str = Field(pattern=PHONE_PATTERN)


class CreateOrderRequest(BaseModel):
    """Checkout payload accepted from the UI."""

    cart: list[CartItem]
    customer_details: CustomerDetails
    coupon_code: str | None = Field(default=None, max_length=64)
    idempotency_key: str = Field(min_length=5, max_length=128)


class CreateOrderResponse(BaseModel):
    order_id: str
    gateway_session_id: str | None
    status: str
    requested_amount: int
    discount_amount: int
    final_amount: int
    currency: str
    coupon_code: str | None = None


class AttemptView(BaseModel):
    payment_id: str
    status: str
    gateway_status: str
    amount: int
    currency: str
    message: str | None = None


class OrderStatusResponse(BaseModel):
    order_id: str
    status: str
    message: str
    final_amount: int
    currency: str
    attempts: list[AttemptView] = []


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    order_amount: int = Field(ge=0)


class CouponValidateResponse(BaseModel):
    is_valid: bool
    discount_amount: int
    final_amount: int
    error_reason: str | None = None
    error_message: str | None = None


class ErrorResponse(BaseModel):
    reason: str
    message: str


class ReconcileResponse(BaseModel):
    visited: int
    transitioned: int
    expired: int
    gateway_errors: int
    stuck: int
