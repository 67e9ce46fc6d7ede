"""Kafka envelope + producer/consumer helpers.

Terminal order transitions leave the checkout service through the outbox as
`EventEnvelope` messages; consumers share the resilient loop below.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from festpay.common.config import settings
from festpay.common.logging import event_id_ctx, logger, order_id_ctx, trace_id_ctx
from festpay.common.metrics import event_queue_delay_seconds


ORDER_SUCCEEDED_TOPIC = "orders.succeeded"
ORDER_FAILED_TOPIC = "orders.failed"

TERMINAL_TOPICS = {
    "SUCCESS": ORDER_SUCCEEDED_TOPIC,
    "FAILED": ORDER_FAILED_TOPIC,
}

EventHandler = Callable[["EventEnvelope"], Awaitable[None]]


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


def decode_envelope(raw: bytes) -> EventEnvelope:
    """Parse one Kafka message value into an envelope."""

    return EventEnvelope(**json.loads(raw.decode("utf-8")))


def queue_delay_seconds(event: EventEnvelope, now: datetime | None = None) -> float:
    """Seconds between the event's `occurred_at` and `now` (never negative)."""

    now = now or datetime.now(timezone.utc)
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return max(0.0, (now - occurred_at.astimezone(timezone.utc)).total_seconds())


class KafkaBus:
    """Lazy Kafka producer wrapper used by service outbox publishers."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topics: list[str], group_id: str) -> AIOKafkaConsumer:
    """Started consumer for `topics` with manual offset commits."""

    consumer = AIOKafkaConsumer(
        *topics,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


async def dispatch_envelope(topic: str, group_id: str, event: EventEnvelope, handler: EventHandler) -> None:
    """Run `handler` with the envelope's correlation ids bound to the log context."""

    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(
        queue_delay_seconds(event)
    )
    trace_token = trace_id_ctx.set(event.trace_id)
    event_token = event_id_ctx.set(event.event_id)
    order_token = order_id_ctx.set(event.aggregate_id)
    try:
        logger.info("event_received topic=%s group=%s event_id=%s", topic, group_id, event.event_id)
        await handler(event)
    finally:
        trace_id_ctx.reset(trace_token)
        event_id_ctx.reset(event_token)
        order_id_ctx.reset(order_token)


async def _drain(consumer: AIOKafkaConsumer, group_id: str, handler: EventHandler) -> None:
    batches = await consumer.getmany(timeout_ms=500, max_records=50)
    for partition, messages in batches.items():
        for msg in messages:
            try:
                event = decode_envelope(msg.value)
            except (ValueError, TypeError) as exc:
                # Undecodable messages can never succeed; skip past them.
                logger.error("event_undecodable topic=%s offset=%s error=%s", partition.topic, msg.offset, exc)
                continue
            try:
                await dispatch_envelope(partition.topic, group_id, event, handler)
            except Exception as exc:
                logger.error(
                    "handler_error topic=%s group=%s offset=%s error=%s",
                    partition.topic,
                    group_id,
                    msg.offset,
                    exc,
                )
    if batches:
        await consumer.commit()


async def consume_forever(topics: list[str], group_id: str, handler: EventHandler) -> None:
    """Feed every envelope on `topics` to `handler`, reconnecting on broker errors.

    A failing handler is logged and skipped; handlers must be idempotent since
    delivery is at-least-once.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topics, group_id)
            while True:
                await _drain(consumer, group_id, handler)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topics=%s group=%s error=%s", topics, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
