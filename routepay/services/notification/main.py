"""Notification worker lifecycle plus health and metrics endpoints."""

import asyncio
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from routepay.common.config import settings
from routepay.common.db import build_session_factory
from routepay.common.logging import configure_logging
from routepay.common.metrics import metrics_response
from routepay.common.startup import log_startup_config
from routepay.common.tracing import instrument_app, setup_tracing
from routepay.services.notification.service import NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "service_name",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "merchant_notification_topic",
        "notification_timeout_seconds",
    ],
)
http_client = httpx.AsyncClient()
service = NotificationService(build_session_factory(settings.postgres_dsn), http_client)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loop with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()
    await http_client.aclose()


app = FastAPI(title="RoutePay Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/notifications/{transaction_id}")
def list_deliveries(transaction_id: str):
    """Merchant notification attempts recorded for a transaction."""

    return [
        {
            "event_id": log.event_id,
            "outcome": log.outcome,
            "status_code": log.status_code,
            "error_message": log.error_message,
            "created_at": log.created_at,
        }
        for log in service.list_deliveries(transaction_id)
    ]


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
