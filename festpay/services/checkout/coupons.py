"""Coupon Engine and coupon catalog repository.

Validation is a pure read: it may run on every keystroke without touching the
catalog. Redemption is the only write and is an atomic, limit-guarded
increment executed once per completed order.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from sqlalchemy import or_, select, update

from festpay.common.logging import logger
from festpay.services.checkout.errors import CouponErrorReason, CouponRejectedError
from festpay.services.checkout.models import Coupon, CouponRedemption


PERCENTAGE = "PERCENTAGE"
FIXED = "FIXED"


def normalize_code(code: str) -> str:
    return code.strip().upper()


@dataclass(frozen=True)
class CouponRule:
    """Catalog entry as seen by the engine."""

    code: str
    discount_type: str
    discount_value: Decimal
    min_order_amount: int | None = None
    max_discount_amount: int | None = None
    valid_until: datetime | None = None
    usage_limit: int | None = None
    usage_count: int = 0
    is_active: bool = True

    def __post_init__(self) -> None:
        if self.discount_type not in (PERCENTAGE, FIXED):
            raise ValueError(f"unknown discount type {self.discount_type}")
        if self.discount_value < 0:
            raise ValueError("discount value must be >= 0")
        if self.discount_type == PERCENTAGE and not (0 < self.discount_value <= 100):
            raise ValueError("percentage discount must be in (0, 100]")


@dataclass(frozen=True)
class CouponResult:
    is_valid: bool
    discount_amount: int
    final_amount: int
    code: str | None = None
    error_reason: CouponErrorReason | None = None
    error_message: str | None = None

    def raise_for_error(self) -> None:
        if not self.is_valid:
            raise CouponRejectedError(self.error_reason, self.error_message or "invalid coupon")


class CouponRepository(ABC):
    """Catalog access; implementations must make `redeem` atomic."""

    @abstractmethod
    def get(self, code: str) -> CouponRule | None:
        """Return the entry for an already-normalized code, or None."""
        ...

    @abstractmethod
    def redeem(self, code: str, order_id: str, discount_amount: int) -> bool:
        """Count one use of `code` for `order_id`.

        Returns False when the order was already redeemed. Raises
        CouponRejectedError(LIMIT_EXCEEDED) when the usage limit is reached.
        """
        ...


class SqlCouponRepository(CouponRepository):
    """Repository bound to one SQLAlchemy session (and so to its transaction)."""

    def __init__(self, db) -> None:
        self.db = db

    def get(self, code: str) -> CouponRule | None:
        row = self.db.get(Coupon, code)
        if row is None:
            return None
        return CouponRule(
            code=row.code,
            discount_type=row.discount_type,
            discount_value=Decimal(row.discount_value),
            min_order_amount=row.min_order_amount,
            max_discount_amount=row.max_discount_amount,
            valid_until=row.valid_until,
            usage_limit=row.usage_limit,
            usage_count=row.usage_count,
            is_active=row.is_active,
        )

    def redeem(self, code: str, order_id: str, discount_amount: int) -> bool:
        already = self.db.execute(
            select(CouponRedemption).where(CouponRedemption.order_id == order_id)
        ).scalar_one_or_none()
        if already is not None:
            return False

        # Guarded increment: the limit check and the increment are one statement.
        result = self.db.execute(
            update(Coupon)
            .where(
                Coupon.code == code,
                or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
            )
            .values(usage_count=Coupon.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if self.db.get(Coupon, code) is None:
                raise CouponRejectedError(CouponErrorReason.CODE_NOT_FOUND, f"coupon {code} not found")
            raise CouponRejectedError(
                CouponErrorReason.LIMIT_EXCEEDED, f"coupon {code} usage limit reached"
            )
        self.db.add(CouponRedemption(coupon_code=code, order_id=order_id, discount_amount=discount_amount))
        self.db.flush()
        return True


def compute_discount(rule: CouponRule, order_amount: int) -> int:
    """Raw discount for `order_amount`, capped and clamped to the order amount."""

    if rule.discount_type == PERCENTAGE:
        raw = (Decimal(order_amount) * rule.discount_value / Decimal(100)).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
        discount = int(raw)
        if rule.max_discount_amount is not None:
            discount = min(discount, rule.max_discount_amount)
    else:
        discount = int(rule.discount_value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return max(0, min(discount, order_amount))


class CouponEngine:
    """Evaluates coupon codes against an order amount."""

    def __init__(self, repository: CouponRepository, clock: Callable[[], datetime] | None = None) -> None:
        self.repository = repository
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _reject(self, order_amount: int, code: str, reason: CouponErrorReason, message: str) -> CouponResult:
        return CouponResult(
            is_valid=False,
            discount_amount=0,
            final_amount=order_amount,
            code=code,
            error_reason=reason,
            error_message=message,
        )

    def validate(self, code: str, order_amount: int) -> CouponResult:
        """Apply the eligibility rules in order; the first failure wins."""

        if order_amount < 0:
            raise ValueError("order amount must be >= 0")
        normalized = normalize_code(code or "")
        rule = self.repository.get(normalized) if normalized else None

        if rule is None or not rule.is_active:
            return self._reject(order_amount, normalized, CouponErrorReason.CODE_NOT_FOUND, "invalid coupon code")

        if rule.valid_until is not None:
            valid_until = rule.valid_until
            if valid_until.tzinfo is None:
                valid_until = valid_until.replace(tzinfo=timezone.utc)
            if self.clock() > valid_until:
                return self._reject(
                    order_amount,
                    normalized,
                    CouponErrorReason.EXPIRED,
                    f"coupon expired on {valid_until.strftime('%Y-%m-%d %H:%M')} UTC",
                )

        if rule.min_order_amount is not None and order_amount < rule.min_order_amount:
            return self._reject(
                order_amount,
                normalized,
                CouponErrorReason.BELOW_MINIMUM,
                f"minimum order amount for this coupon is {rule.min_order_amount}",
            )

        if rule.usage_limit is not None and rule.usage_count >= rule.usage_limit:
            return self._reject(
                order_amount, normalized, CouponErrorReason.LIMIT_EXCEEDED, "coupon usage limit has been reached"
            )

        discount = compute_discount(rule, order_amount)
        return CouponResult(
            is_valid=True,
            discount_amount=discount,
            final_amount=order_amount - discount,
            code=normalized,
        )

    def redeem(self, code: str, order_id: str, discount_amount: int) -> bool:
        """Count one use for a completed order (at most once per order)."""

        normalized = normalize_code(code)
        redeemed = self.repository.redeem(normalized, order_id, discount_amount)
        if not redeemed:
            logger.info("coupon_redemption_replayed code=%s order_id=%s", normalized, order_id)
        return redeemed
