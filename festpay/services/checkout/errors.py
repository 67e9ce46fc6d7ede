"""Checkout error taxonomy.

Validation errors go straight back to the caller. Gateway errors separate
"temporarily unavailable" (transient, retried in the adapter) from an explicit
rejection. Neither is a FAILED payment attempt.
"""

from enum import Enum


class CouponErrorReason(str, Enum):
    """Why a coupon was refused, in rule order."""

    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    EXPIRED = "EXPIRED"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


class CheckoutError(Exception):
    """Base error with a machine-readable reason and user-safe message."""

    reason = "CHECKOUT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.reason}: {self.message}"


class EmptyCartError(CheckoutError):
    reason = "EMPTY_CART"

    def __init__(self) -> None:
        super().__init__("cart must contain at least one item")


class CouponRejectedError(CheckoutError):
    """Raised when a coupon fails validation or redemption."""

    def __init__(self, reason: CouponErrorReason, message: str) -> None:
        super().__init__(message)
        self.coupon_reason = reason
        self.reason = reason.value


class OrderNotFoundError(CheckoutError):
    reason = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class GatewayError(CheckoutError):
    """Base for payment gateway failures."""

    reason = "GATEWAY_ERROR"


class GatewayUnavailableError(GatewayError):
    """Transient failure (timeouts, 5xx, network) after retries were exhausted."""

    reason = "PAYMENT_SYSTEM_UNAVAILABLE"

    def __init__(self, message: str = "payment system temporarily unavailable") -> None:
        super().__init__(message)


class GatewayTimeoutError(GatewayUnavailableError):
    """The last try timed out, so the gateway may or may not have acted on it."""


class GatewayRejectedError(GatewayError):
    """The gateway explicitly refused the request (4xx)."""

    reason = "GATEWAY_REJECTED"

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayResponseError(GatewayError):
    """The gateway answered with a body that failed shape validation."""

    reason = "GATEWAY_RESPONSE_INVALID"


class NothingToChargeError(CheckoutError):
    """The order total (after any coupon) is zero, so there is nothing to collect."""

    reason = "NOTHING_TO_CHARGE"

    def __init__(self) -> None:
        super().__init__("order total must be greater than zero")


class ConcurrentUpdateError(CheckoutError):
    """A compare-and-set on order status lost to a concurrent writer."""

    reason = "CONCURRENT_UPDATE"
