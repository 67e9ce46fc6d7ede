"""Transactional outbox for order outcome events.

`enqueue_event` stages a row in the same transaction as the status change it
announces, so an event exists if and only if the transition committed. The
`OutboxRelay` ships committed rows to Kafka with at-least-once delivery;
consumers dedupe on `event_id`.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import func, or_, select, update

from festpay.common.events import EventEnvelope, KafkaBus
from festpay.common.logging import logger
from festpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def enqueue_event(db, outbox_model, topic: str, aggregate_id: str, trace_id: str, payload: dict):
    """Stage one outbox row on `db`; the caller's commit makes it visible."""

    envelope = EventEnvelope(event_type=topic, aggregate_id=aggregate_id, trace_id=trace_id, payload=payload)
    row = outbox_model(
        aggregate_type="order",
        aggregate_id=aggregate_id,
        event_type=topic,
        topic=topic,
        payload=envelope.model_dump(),
        status=PENDING,
    )
    db.add(row)
    return row


class OutboxRelay:
    """Claims committed outbox rows and publishes them in creation order.

    A claim flips rows to PROCESSING and stamps `sent_at`; a claim older than
    `processing_timeout_seconds` is treated as abandoned by a crashed relay and
    may be claimed again.
    """

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus: KafkaBus,
        service_name: str,
        batch_size: int = 100,
        processing_timeout_seconds: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.model = outbox_model
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.processing_timeout_seconds = processing_timeout_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def claim(self) -> list[tuple[str, str, dict]]:
        model = self.model
        now = self.clock()
        abandoned_before = now - timedelta(seconds=self.processing_timeout_seconds)
        with self.session_factory() as db:
            claimable = (
                select(model.id)
                .where(
                    or_(
                        model.status == PENDING,
                        (model.status == PROCESSING) & (model.sent_at < abandoned_before),
                    )
                )
                .order_by(model.created_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            ids = list(db.execute(claimable).scalars())
            if not ids:
                return []
            db.execute(
                update(model)
                .where(model.id.in_(ids))
                .values(status=PROCESSING, sent_at=now)
                .execution_options(synchronize_session=False)
            )
            rows = db.execute(
                select(model.id, model.topic, model.payload).where(model.id.in_(ids)).order_by(model.created_at)
            ).all()
            db.commit()
        return [(row.id, row.topic, row.payload) for row in rows]

    def _settle(self, event_id: str, status: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(self.model)
                .where(self.model.id == event_id, self.model.status == PROCESSING)
                .values(status=status, sent_at=self.clock() if status == SENT else None)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def refresh_backlog_metrics(self) -> None:
        model = self.model
        with self.session_factory() as db:
            pending, oldest = db.execute(
                select(func.count(), func.min(model.created_at)).where(model.status.in_([PENDING, PROCESSING]))
            ).one()
        age_seconds = 0.0
        if oldest is not None:
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=timezone.utc)
            age_seconds = max(0.0, (self.clock() - oldest).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(pending))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)

    async def publish_once(self) -> int:
        """One claim/publish cycle; returns how many rows were delivered."""

        delivered = 0
        for event_id, topic, payload in self.claim():
            try:
                await self.bus.publish(topic, EventEnvelope(**payload))
            except Exception as exc:
                logger.exception("outbox_publish_failed service=%s event_id=%s error=%s", self.service_name, event_id, exc)
                self._settle(event_id, PENDING)
                continue
            self._settle(event_id, SENT)
            delivered += 1
        self.refresh_backlog_metrics()
        return delivered

    async def run_forever(self, poll_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_once()
            except Exception as exc:
                logger.exception("outbox_relay_error service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(poll_seconds)
