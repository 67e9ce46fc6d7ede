"""Reconciliation loop.

Webhooks can be lost and customers can close the tab before the status poll,
so every non-terminal order past the grace period is periodically re-queried
and pushed through the same resolver as the other paths. Orders that can't be
resolved are flagged for an operator instead of being retried silently forever.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update

from festpay.common.config import settings
from festpay.common.logging import logger, order_context
from festpay.common.metrics import orders_needing_attention, reconcile_orders_total, reconcile_passes_total
from festpay.common.state_machine import CREATED, FAILED, PENDING, is_terminal
from festpay.services.checkout.errors import CheckoutError, GatewayError
from festpay.services.checkout.models import Order
from festpay.services.checkout.service import OrderService, as_utc


@dataclass
class ReconcileStats:
    visited: int = 0
    transitioned: int = 0
    expired: int = 0
    gateway_errors: int = 0
    stuck: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class ReconciliationService:
    """Drives stale non-terminal orders to the status the gateway reports."""

    def __init__(
        self,
        orders: OrderService,
        grace_seconds: int | None = None,
        batch_size: int | None = None,
        max_failures: int | None = None,
        expiry_seconds: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.orders = orders
        self.session_factory = orders.session_factory
        self.gateway = orders.gateway
        self.service_name = orders.service_name
        self.grace_seconds = settings.reconcile_grace_seconds if grace_seconds is None else grace_seconds
        self.batch_size = batch_size or settings.reconcile_batch_size
        self.max_failures = max_failures or settings.reconcile_max_failures
        self.expiry_seconds = settings.order_expiry_seconds if expiry_seconds is None else expiry_seconds
        self.clock = clock or orders.clock

    def _candidates(self, now: datetime) -> list[Order]:
        cutoff = now - timedelta(seconds=self.grace_seconds)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Order)
                    .where(Order.status.in_([CREATED, PENDING]), Order.created_at <= cutoff)
                    .order_by(Order.last_reconciled_at.asc().nulls_first(), Order.created_at.asc())
                    .limit(self.batch_size)
                ).scalars()
            )

    def _mark_visited(self, order_id: str, now: datetime) -> None:
        with self.session_factory() as db:
            db.execute(
                update(Order)
                .where(Order.order_id == order_id)
                .values(reconcile_failures=0, last_reconciled_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def _record_failure(self, order_id: str, exc: CheckoutError, now: datetime) -> bool:
        """Count a failed visit; returns True when the order just crossed the stuck threshold."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                return False
            order.reconcile_failures += 1
            order.last_reconciled_at = now
            newly_stuck = order.reconcile_failures >= self.max_failures and OrderService._flag(
                order, f"reconcile_failed:{exc.reason}"
            )
            db.commit()
            failures = order.reconcile_failures
        if newly_stuck:
            logger.error(
                "order_stuck order_id=%s failures=%s reason=%s", order_id, failures, exc.reason
            )
        return newly_stuck

    async def _reconcile_one(self, order: Order, now: datetime, stats: ReconcileStats) -> None:
        stats.visited += 1
        try:
            attempts = await self.gateway.fetch_attempts(order.order_id)
        except GatewayError as exc:
            stats.gateway_errors += 1
            reconcile_orders_total.labels(service=self.service_name, outcome="gateway_error").inc()
            logger.warning("reconcile_gateway_error order_id=%s reason=%s", order.order_id, exc.reason)
            if self._record_failure(order.order_id, exc, now):
                stats.stuck += 1
            return

        updated = self.orders.apply_attempts(order.order_id, attempts, source="reconcile")
        outcome = "unchanged"
        if updated.status != order.status:
            stats.transitioned += 1
            outcome = "transitioned"
        elif not is_terminal(updated.status):
            age = (now - as_utc(order.created_at)).total_seconds()
            if age >= self.expiry_seconds:
                expired = self.orders.expire_if_unattempted(order.order_id)
                if expired is None:
                    # The gateway knows the order but never settled it.
                    if self.orders.flag_attention(order.order_id, "pending_past_expiry"):
                        logger.error(
                            "order_stuck order_id=%s status=%s age_seconds=%d reason=pending_past_expiry",
                            order.order_id,
                            updated.status,
                            age,
                        )
                        stats.stuck += 1
                        outcome = "stuck"
                elif expired.status == FAILED:
                    stats.expired += 1
                    outcome = "expired"
        reconcile_orders_total.labels(service=self.service_name, outcome=outcome).inc()
        self._mark_visited(order.order_id, now)

    async def run_once(self) -> ReconcileStats:
        """One pass over the oldest-visited stale orders."""

        now = self.clock()
        stats = ReconcileStats()
        for order in self._candidates(now):
            with order_context(order.order_id):
                try:
                    await self._reconcile_one(order, now, stats)
                except CheckoutError as exc:
                    logger.error("reconcile_order_failed order_id=%s error=%s", order.order_id, exc)
        reconcile_passes_total.labels(service=self.service_name).inc()
        orders_needing_attention.labels(service=self.service_name).set(
            float(self.orders.count_orders_needing_attention())
        )
        logger.info("reconcile_pass %s", stats.as_dict())
        return stats

    async def run_forever(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or settings.reconcile_interval_seconds
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("reconcile_pass_failed error=%s", exc)
            await asyncio.sleep(interval)
