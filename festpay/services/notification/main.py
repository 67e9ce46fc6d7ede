"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import select

from festpay.common.config import settings
from festpay.common.db import SessionLocal
from festpay.common.logging import configure_logging
from festpay.common.metrics import metrics_response
from festpay.common.startup import log_startup_config
from festpay.common.tracing import instrument_app, setup_tracing
from festpay.services.notification.models import NotificationLog
from festpay.services.notification.service import NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS"],
)
service = NotificationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loop with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="FestPay Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/notifications/{order_id}")
def list_notifications(order_id: str):
    """Messages queued for one order, oldest first."""

    with SessionLocal() as db:
        rows = db.execute(
            select(NotificationLog).where(NotificationLog.order_id == order_id).order_by(NotificationLog.created_at)
        ).scalars()
        return [
            {"channel": row.channel, "recipient": row.recipient, "subject": row.subject, "message": row.message}
            for row in rows
        ]


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
