"""Notification consumer for terminal order events."""

from sqlalchemy import select

from festpay.common.events import ORDER_FAILED_TOPIC, ORDER_SUCCEEDED_TOPIC, EventEnvelope, consume_forever
from festpay.common.logging import logger
from festpay.common.metrics import duplicate_events_skipped_total
from festpay.services.notification.models import InboxEvent, NotificationLog


def format_amount(amount: int, currency: str) -> str:
    return f"{currency} {amount // 100}.{amount % 100:02d}"


def render_message(event: EventEnvelope) -> tuple[str, str]:
    """Subject and body for one order outcome."""

    payload = event.payload
    order_id = payload.get("order_id", event.aggregate_id)
    name = payload.get("customer_name") or "there"
    amount = format_amount(int(payload.get("final_amount", 0)), payload.get("currency", "INR"))
    if event.event_type == ORDER_SUCCEEDED_TOPIC:
        return (
            f"Booking confirmed: {order_id}",
            f"Hi {name}, we received your payment of {amount} for order {order_id}. See you at the fest!",
        )
    return (
        f"Payment failed: {order_id}",
        f"Hi {name}, your payment of {amount} for order {order_id} did not go through. You have not been charged; please try again.",
    )


class NotificationService:
    """Queues one customer email per terminal order outcome."""

    def __init__(self, session_factory, service_name: str = "notification") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    async def handle_order_outcome(self, event: EventEnvelope) -> None:
        """Persist one notification, skipping redelivered events."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(
                    service=self.service_name,
                    topic=event.event_type,
                ).inc()
                return
            recipient = event.payload.get("customer_email")
            if not recipient:
                logger.warning("notification_without_recipient order_id=%s", event.aggregate_id)
                self._mark_inbox(db, event.event_id)
                db.commit()
                return
            subject, message = render_message(event)
            db.add(
                NotificationLog(
                    order_id=event.aggregate_id,
                    channel="email",
                    recipient=recipient,
                    subject=subject,
                    message=message,
                )
            )
            self._mark_inbox(db, event.event_id)
            db.commit()
            logger.info("notification_queued order_id=%s subject=%s", event.aggregate_id, subject)

    async def start_consumers(self) -> None:
        """Consume both terminal order topics."""

        await consume_forever([ORDER_SUCCEEDED_TOPIC, ORDER_FAILED_TOPIC], "notification", self.handle_order_outcome)
