"""HTTP surface receiving gateway callbacks.

Responses tell the gateway whether to redeliver: 2xx for anything that was
stored and settled (including stale or unhandled events), 401 for failed
verification, 404 for deliveries that reference an unknown transaction, 409
when a concurrent writer won the status update, 503 when the signature
could not be checked.
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from routepay.common.config import settings
from routepay.common.db import build_session_factory
from routepay.common.errors import ConcurrentUpdate, InvalidSignature, TransactionNotFound
from routepay.common.events import KafkaBus
from routepay.common.http import install_http_plumbing
from routepay.common.logging import configure_logging
from routepay.common.metrics import metrics_response
from routepay.common.outbox import publish_outbox_forever
from routepay.common.startup import log_startup_config
from routepay.common.tracing import instrument_app, setup_tracing
from routepay.services.gateways.registry import build_default_registry
from routepay.services.orchestrator.models import OutboxEvent
from routepay.services.orchestrator.repository import SqlAlchemyRepository
from routepay.services.webhooks.schemas import HandleResult
from routepay.services.webhooks.service import WebhookReconciliationHandler

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings.service_name, ["service_name", "postgres_dsn", "kafka_bootstrap_servers"])
SessionLocal = build_session_factory(settings.postgres_dsn)
http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
handler = WebhookReconciliationHandler(SqlAlchemyRepository(SessionLocal), build_default_registry(http_client))
bus = KafkaBus()

ERROR_STATUS = {InvalidSignature.code: 401, TransactionNotFound.code: 404, ConcurrentUpdate.code: 409}


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Publish merchant notifications written by the handler."""

    publisher_task = asyncio.create_task(
        publish_outbox_forever(SessionLocal, OutboxEvent, bus, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await bus.close()
    await http_client.aclose()


app = FastAPI(title="RoutePay Webhooks", lifespan=lifespan)
instrument_app(app)
install_http_plumbing(app)


@app.post("/webhooks/{gateway_code}", response_model=HandleResult)
async def receive_webhook(gateway_code: str, request: Request):
    """Store and reconcile one raw gateway callback."""

    result = await handler.handle(gateway_code, await request.body(), dict(request.headers))
    if result.success:
        return result
    status_code = ERROR_STATUS.get(result.error, 503)
    return JSONResponse(status_code=status_code, content=result.model_dump())


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
