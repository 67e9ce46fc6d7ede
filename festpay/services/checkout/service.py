"""Order Manager.

Owns order creation and is the only writer of order status. Creation is
serialized per idempotency key by the `order_idempotency` primary key; status
changes go through `resolve_status` and a compare-and-set on
`(order_id, status, state_version)`, so webhook, poll and reconciliation paths
can race without losing or double-applying an update.
"""

from datetime import datetime, timezone
from typing import Callable, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value

from festpay.common.config import settings
from festpay.common.events import KafkaBus, TERMINAL_TOPICS
from festpay.common.ids import generate_order_id
from festpay.common.logging import logger, order_context, trace_id_ctx
from festpay.common.metrics import (
    coupon_redemptions_total,
    coupon_validations_total,
    idempotent_replays_total,
    order_e2e_seconds,
    order_transitions_total,
    orders_created_total,
    terminal_writes_rejected_total,
)
from festpay.common.outbox import OutboxRelay, enqueue_event
from festpay.common.state_machine import (
    CREATED,
    FAILED,
    PENDING,
    SUCCESS,
    is_terminal,
    resolve_status,
    validate_transition,
)
from festpay.services.checkout.coupons import CouponEngine, CouponResult, SqlCouponRepository
from festpay.services.checkout.errors import (
    ConcurrentUpdateError,
    CouponRejectedError,
    EmptyCartError,
    GatewayError,
    GatewayTimeoutError,
    NothingToChargeError,
    OrderNotFoundError,
)
from festpay.services.checkout.gateway import GatewayAttempt, PaymentGateway
from festpay.services.checkout.models import (
    Order,
    OrderIdempotency,
    OrderTimeline,
    OutboxEvent,
    PaymentAttempt,
)
from festpay.services.checkout.schemas import CartItem, CreateOrderRequest


MAX_CAS_RETRIES = 3
FINAL_ATTEMPT_STATUSES = (SUCCESS, FAILED)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_requested_amount(cart: Iterable[CartItem]) -> int:
    """Sum of line totals; rejects an empty cart."""

    items = list(cart)
    if not items:
        raise EmptyCartError()
    return sum(item.line_total for item in items)


class OrderService:
    """Creates orders, opens gateway sessions and applies payment attempts."""

    def __init__(
        self,
        session_factory,
        gateway: PaymentGateway,
        service_name: str = "checkout",
        currency: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.service_name = service_name
        self.currency = (currency or settings.order_currency).upper()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.kafka = KafkaBus()
        self.outbox = OutboxRelay(session_factory, OutboxEvent, self.kafka, service_name)

    # Coupons

    def validate_coupon(self, code: str, order_amount: int) -> CouponResult:
        """Side-effect-free coupon check, safe to call on every keystroke."""

        with self.session_factory() as db:
            result = CouponEngine(SqlCouponRepository(db), self.clock).validate(code, order_amount)
        outcome = "valid" if result.is_valid else result.error_reason.value
        coupon_validations_total.labels(service=self.service_name, outcome=outcome).inc()
        return result

    # Creation

    async def create_order(self, req: CreateOrderRequest) -> Order:
        """Create (or return the existing) order for `req.idempotency_key`."""

        requested_amount = compute_requested_amount(req.cart)

        existing = self._find_active_order(req.idempotency_key)
        if existing is not None:
            return await self._replay(existing)

        coupon_code = None
        discount_amount = 0
        if req.coupon_code:
            result = self.validate_coupon(req.coupon_code, requested_amount)
            result.raise_for_error()
            coupon_code = result.code
            discount_amount = result.discount_amount
        if requested_amount - discount_amount <= 0:
            raise NothingToChargeError()

        order, created = self._insert_order(req, requested_amount, coupon_code, discount_amount)
        if not created:
            return await self._replay(order)

        orders_created_total.labels(service=self.service_name).inc()
        with order_context(order.order_id):
            logger.info(
                "order_created order_id=%s requested=%s discount=%s final=%s coupon=%s",
                order.order_id,
                order.requested_amount,
                order.discount_amount,
                order.final_amount,
                order.coupon_code,
            )
            return await self._open_session(order)

    def _find_active_order(self, idempotency_key: str) -> Order | None:
        """Order mapped to the key, unless that order already FAILED."""

        with self.session_factory() as db:
            mapping = db.get(OrderIdempotency, idempotency_key)
            if mapping is None:
                return None
            order = db.get(Order, mapping.order_id)
            if order is None or order.status == FAILED:
                return None
            return order

    def _reread_key(self, idempotency_key: str) -> Order:
        with self.session_factory() as db:
            mapping = db.get(OrderIdempotency, idempotency_key)
            if mapping is None:
                raise ConcurrentUpdateError(f"idempotency key {idempotency_key} vanished during insert")
            return db.get(Order, mapping.order_id)

    def _insert_order(
        self,
        req: CreateOrderRequest,
        requested_amount: int,
        coupon_code: str | None,
        discount_amount: int,
    ) -> tuple[Order, bool]:
        """Persist a CREATED order and claim the idempotency key for it.

        Returns `(order, True)` when this call won the key, or the winner's
        order and False when a concurrent writer claimed it first.
        """

        customer = req.customer_details
        with self.session_factory() as db:
            mapping = db.get(OrderIdempotency, req.idempotency_key)
            if mapping is not None:
                prior = db.get(Order, mapping.order_id)
                if prior is not None and prior.status != FAILED:
                    return prior, False

            order = Order(
                order_id=generate_order_id(self.clock()),
                customer_name=customer.name,
                customer_email=customer.email,
                customer_phone=customer.phone,
                cart=[item.model_dump() for item in req.cart],
                requested_amount=requested_amount,
                coupon_code=coupon_code,
                discount_amount=discount_amount,
                final_amount=requested_amount - discount_amount,
                currency=self.currency,
                status=CREATED,
                state_version=0,
                created_at=self.clock(),
            )
            db.add(order)
            db.add(
                OrderTimeline(
                    order_id=order.order_id,
                    from_state=None,
                    to_state=CREATED,
                    reason="order_created",
                    source="api",
                )
            )
            try:
                db.flush()
                if mapping is None:
                    db.add(OrderIdempotency(idempotency_key=req.idempotency_key, order_id=order.order_id))
                else:
                    # Previous order for this key failed; move the key with a CAS.
                    moved = db.execute(
                        update(OrderIdempotency)
                        .where(
                            OrderIdempotency.idempotency_key == req.idempotency_key,
                            OrderIdempotency.order_id == mapping.order_id,
                        )
                        .values(order_id=order.order_id, updated_at=self.clock())
                        .execution_options(synchronize_session=False)
                    )
                    if moved.rowcount != 1:
                        db.rollback()
                        return self._reread_key(req.idempotency_key), False
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("idempotency_key_race key=%s", req.idempotency_key)
                return self._reread_key(req.idempotency_key), False
            return order, True

    async def _replay(self, order: Order) -> Order:
        idempotent_replays_total.labels(service=self.service_name).inc()
        with order_context(order.order_id):
            logger.info("order_replayed order_id=%s status=%s", order.order_id, order.status)
            if order.status == PENDING and order.gateway_session_id is None:
                # The first try timed out; re-ask the gateway under the same order ID.
                return await self._open_session(order)
            return order

    async def _open_session(self, order: Order) -> Order:
        """Attach a gateway session; on failure leave the order unambiguous."""

        try:
            session = await self.gateway.create_remote_session(order)
        except GatewayTimeoutError:
            logger.warning("gateway_session_timeout order_id=%s", order.order_id)
            return self.transition_local(order.order_id, PENDING, "gateway_session_timeout")
        except GatewayError as exc:
            logger.error("gateway_session_failed order_id=%s reason=%s error=%s", order.order_id, exc.reason, exc)
            self.transition_local(order.order_id, FAILED, f"gateway_session_failed:{exc.reason}")
            raise

        with self.session_factory() as db:
            db.execute(
                update(Order)
                .where(Order.order_id == order.order_id, Order.gateway_session_id.is_(None))
                .values(gateway_session_id=session.gateway_session_id, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            refreshed = db.get(Order, order.order_id)
        logger.info("gateway_session_opened order_id=%s", order.order_id)
        return refreshed

    # Reads

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            return order

    def list_attempts(self, order_id: str) -> list[PaymentAttempt]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentAttempt)
                    .where(PaymentAttempt.order_id == order_id)
                    .order_by(PaymentAttempt.created_at.asc())
                ).scalars()
            )

    def list_orders_needing_attention(self, limit: int = 100) -> list[Order]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Order)
                    .where(Order.needs_attention.is_(True))
                    .order_by(Order.created_at.asc())
                    .limit(limit)
                ).scalars()
            )

    def count_orders_needing_attention(self) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(Order).where(Order.needs_attention.is_(True))
            ).scalar_one()

    # Status updates

    def _transition(self, db, order: Order, new_status: str, reason: str, source: str) -> None:
        """Apply one validated transition with optimistic concurrency.

        The write is guarded by `(order_id, status, state_version)`; a terminal
        row can never match because nothing is allowed out of a terminal state.
        """

        validate_transition(order.status, new_status)
        from_status = order.status
        current_version = order.state_version
        now = self.clock()

        result = db.execute(
            update(Order)
            .where(
                Order.order_id == order.order_id,
                Order.status == from_status,
                Order.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"optimistic concurrency conflict for order {order.order_id} (expected version {current_version})"
            )

        set_committed_value(order, "status", new_status)
        set_committed_value(order, "state_version", current_version + 1)
        db.add(
            OrderTimeline(
                order_id=order.order_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                source=source,
            )
        )
        if is_terminal(new_status):
            self._on_terminal(db, order, new_status, reason)

    def _on_terminal(self, db, order: Order, new_status: str, reason: str) -> None:
        """Edge-triggered side effects of the first terminal transition (same transaction)."""

        if new_status == SUCCESS and order.coupon_code:
            try:
                CouponEngine(SqlCouponRepository(db), self.clock).redeem(
                    order.coupon_code, order.order_id, order.discount_amount
                )
                coupon_redemptions_total.labels(service=self.service_name, outcome="redeemed").inc()
            except CouponRejectedError as exc:
                coupon_redemptions_total.labels(service=self.service_name, outcome=exc.reason).inc()
                logger.error(
                    "coupon_redemption_rejected order_id=%s code=%s reason=%s",
                    order.order_id,
                    order.coupon_code,
                    exc.reason,
                )
                self._flag(order, f"coupon_redemption_rejected:{exc.reason}")

        enqueue_event(
            db,
            OutboxEvent,
            topic=TERMINAL_TOPICS[new_status],
            aggregate_id=order.order_id,
            trace_id=trace_id_ctx.get() or order.order_id,
            payload={
                "order_id": order.order_id,
                "status": new_status,
                "reason": reason,
                "customer_name": order.customer_name,
                "customer_email": order.customer_email,
                "customer_phone": order.customer_phone,
                "final_amount": order.final_amount,
                "currency": order.currency,
                "coupon_code": order.coupon_code,
            },
        )

    @staticmethod
    def _flag(order: Order, reason: str) -> bool:
        """Mark `order` for an operator; earlier reasons are kept. Returns False if `reason` was already recorded."""

        reasons = order.attention_reason.split(";") if order.attention_reason else []
        order.needs_attention = True
        if reason in reasons:
            return False
        order.attention_reason = ";".join(reasons + [reason])
        return True

    def flag_attention(self, order_id: str, reason: str) -> bool:
        """Flag a stored order; returns True only the first time `reason` is recorded."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            added = self._flag(order, reason)
            db.commit()
        return added

    def _record_attempts(self, db, order: Order, attempts: Iterable[GatewayAttempt], source: str) -> None:
        """Upsert gateway facts; a final status on a stored attempt is never overwritten."""

        for attempt in attempts:
            if attempt.order_id != order.order_id:
                logger.warning(
                    "attempt_order_mismatch order_id=%s attempt_order_id=%s payment_id=%s",
                    order.order_id,
                    attempt.order_id,
                    attempt.payment_id,
                )
                continue
            stored = db.get(PaymentAttempt, attempt.payment_id)
            if stored is None:
                db.add(
                    PaymentAttempt(
                        payment_id=attempt.payment_id,
                        order_id=order.order_id,
                        status=attempt.status,
                        gateway_status=attempt.gateway_status,
                        amount=attempt.amount,
                        currency=attempt.currency,
                        completed_at=attempt.completed_at,
                        message=attempt.message,
                        payment_group=attempt.payment_group,
                        source=source,
                    )
                )
                if attempt.status == SUCCESS and attempt.amount != order.final_amount:
                    logger.error(
                        "attempt_amount_mismatch order_id=%s payment_id=%s amount=%s expected=%s",
                        order.order_id,
                        attempt.payment_id,
                        attempt.amount,
                        order.final_amount,
                    )
                    self._flag(order, "attempt_amount_mismatch")
                continue
            if stored.status == attempt.status:
                continue
            if stored.status in FINAL_ATTEMPT_STATUSES:
                logger.warning(
                    "attempt_status_conflict order_id=%s payment_id=%s stored=%s reported=%s",
                    order.order_id,
                    attempt.payment_id,
                    stored.status,
                    attempt.status,
                )
                continue
            stored.status = attempt.status
            stored.gateway_status = attempt.gateway_status
            stored.completed_at = attempt.completed_at
            stored.message = attempt.message
            stored.source = source
        db.flush()

    def _check_invariants(self, db, order: Order, incoming: list[GatewayAttempt]) -> None:
        """Surface gateway facts that contradict the order's canonical status."""

        known = db.execute(select(PaymentAttempt).where(PaymentAttempt.order_id == order.order_id)).scalars().all()
        success_ids = {a.payment_id for a in known if a.status == SUCCESS}
        if order.status == FAILED and success_ids:
            terminal_writes_rejected_total.labels(service=self.service_name).inc()
            logger.error(
                "terminal_conflict order_id=%s status=FAILED success_attempts=%s",
                order.order_id,
                sorted(success_ids),
            )
            self._flag(order, "success_after_failed")
        elif len(success_ids) > 1:
            logger.error(
                "multiple_success_attempts order_id=%s payment_ids=%s", order.order_id, sorted(success_ids)
            )
            self._flag(order, "multiple_success_attempts")
        elif order.status == SUCCESS and any(a.status != SUCCESS for a in incoming):
            logger.info("late_attempt_dropped order_id=%s", order.order_id)

    def apply_attempts(self, order_id: str, attempts: Iterable[GatewayAttempt], source: str) -> Order:
        """Record attempts and move the order to the status they resolve to.

        Idempotent: replaying the same batch records nothing new and leaves the
        status unchanged.
        """

        batch = list(attempts)
        with order_context(order_id):
            for attempt_no in range(1, MAX_CAS_RETRIES + 1):
                with self.session_factory() as db:
                    order = db.get(Order, order_id)
                    if order is None:
                        raise OrderNotFoundError(order_id)
                    was_terminal = is_terminal(order.status)
                    from_status = order.status
                    try:
                        self._record_attempts(db, order, batch, source)
                        known = db.execute(
                            select(PaymentAttempt).where(PaymentAttempt.order_id == order_id)
                        ).scalars().all()
                        new_status = resolve_status(order.status, known)
                        if new_status != order.status:
                            self._transition(db, order, new_status, reason=f"attempts_resolved:{source}", source=source)
                        if was_terminal or is_terminal(order.status):
                            self._check_invariants(db, order, batch)
                        db.commit()
                    except (ConcurrentUpdateError, IntegrityError) as exc:
                        db.rollback()
                        logger.warning(
                            "status_update_conflict order_id=%s attempt=%s error=%s", order_id, attempt_no, exc
                        )
                        continue

                    if order.status != from_status:
                        self._after_transition(order, from_status, source)
                    return order
            raise ConcurrentUpdateError(f"order {order_id} status update kept conflicting")

    def transition_local(self, order_id: str, new_status: str, reason: str, source: str = "api") -> Order:
        """Move an order without gateway attempts (session failure, timeout, expiry)."""

        with order_context(order_id):
            for _ in range(MAX_CAS_RETRIES):
                with self.session_factory() as db:
                    order = db.get(Order, order_id)
                    if order is None:
                        raise OrderNotFoundError(order_id)
                    from_status = order.status
                    if from_status == new_status:
                        return order
                    if is_terminal(from_status):
                        logger.warning(
                            "terminal_write_rejected order_id=%s status=%s requested=%s reason=%s",
                            order_id,
                            from_status,
                            new_status,
                            reason,
                        )
                        terminal_writes_rejected_total.labels(service=self.service_name).inc()
                        return order
                    try:
                        self._transition(db, order, new_status, reason=reason, source=source)
                        db.commit()
                    except ConcurrentUpdateError:
                        db.rollback()
                        continue
                    self._after_transition(order, from_status, source)
                    return order
            raise ConcurrentUpdateError(f"order {order_id} local transition kept conflicting")

    def expire_if_unattempted(self, order_id: str, reason: str = "expired_without_attempt") -> Order | None:
        """FAIL a non-terminal order that the gateway never saw a payment for."""

        with self.session_factory() as db:
            attempts = db.execute(
                select(func.count()).select_from(PaymentAttempt).where(PaymentAttempt.order_id == order_id)
            ).scalar_one()
        if attempts:
            return None
        return self.transition_local(order_id, FAILED, reason, source="reconcile")

    def _after_transition(self, order: Order, from_status: str, source: str) -> None:
        order_transitions_total.labels(service=self.service_name, to_state=order.status, source=source).inc()
        logger.info(
            "order_transition order_id=%s from=%s to=%s source=%s",
            order.order_id,
            from_status,
            order.status,
            source,
        )
        if is_terminal(order.status) and order.created_at is not None:
            elapsed = max(0.0, (self.clock() - as_utc(order.created_at)).total_seconds())
            order_e2e_seconds.labels(service=self.service_name, terminal_state=order.status).observe(elapsed)

    # Gateway-driven entry points

    async def refresh_status(self, order_id: str) -> Order:
        """Poll path: re-query the gateway for a non-terminal order.

        A slow or failing gateway degrades to the stored status; the
        reconciliation loop converges the order later.
        """

        order = self.get_order(order_id)
        if is_terminal(order.status):
            return order
        try:
            attempts = await self.gateway.fetch_attempts(order_id)
        except GatewayError as exc:
            logger.warning("status_refresh_degraded order_id=%s reason=%s", order_id, exc.reason)
            return order
        return self.apply_attempts(order_id, attempts, source="poll")

    def handle_webhook_attempt(self, attempt: GatewayAttempt) -> Order:
        """Callback path: the same resolver as polling, fed one attempt."""

        return self.apply_attempts(attempt.order_id, [attempt], source="webhook")

    async def outbox_publisher(self) -> None:
        """Continuously publish checkout outbox rows."""

        await self.outbox.run_forever()
