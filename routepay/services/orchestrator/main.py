"""HTTP surface for transaction intake, orchestration and refunds."""

import asyncio
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Header, HTTPException

from routepay.common.config import settings
from routepay.common.db import build_session_factory
from routepay.common.events import KafkaBus
from routepay.common.http import install_http_plumbing
from routepay.common.logging import configure_logging
from routepay.common.metrics import metrics_response
from routepay.common.outbox import publish_outbox_forever
from routepay.common.startup import log_startup_config
from routepay.common.tracing import instrument_app, setup_tracing
from routepay.services.gateways.registry import build_default_registry
from routepay.services.orchestrator.models import OutboxEvent, Transaction
from routepay.services.orchestrator.repository import SqlAlchemyRepository
from routepay.services.orchestrator.schemas import (
    AttemptResponse,
    ProcessRequest,
    ProcessResult,
    RefundCreateRequest,
    RefundResult,
    TransactionCreateRequest,
    TransactionResponse,
)
from routepay.services.orchestrator.service import TransactionOrchestrator

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["service_name", "postgres_dsn", "kafka_bootstrap_servers", "gateway_timeout_seconds", "health_window_minutes"],
)
SessionLocal = build_session_factory(settings.postgres_dsn)
http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
repository = SqlAlchemyRepository(SessionLocal)
orchestrator = TransactionOrchestrator(repository, build_default_registry(http_client))
bus = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and release shared clients with app lifecycle."""

    publisher_task = asyncio.create_task(
        publish_outbox_forever(SessionLocal, OutboxEvent, bus, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await bus.close()
    await http_client.aclose()


app = FastAPI(title="RoutePay Orchestrator", lifespan=lifespan)
instrument_app(app)
install_http_plumbing(app)


def _transaction_response(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse(
        transaction_id=transaction.id,
        transaction_ref=transaction.transaction_ref,
        merchant_id=transaction.merchant_id,
        status=transaction.status,
        amount=transaction.amount,
        currency=transaction.currency,
        payment_method=transaction.payment_method,
        gateway_id=transaction.gateway_id,
        gateway_transaction_id=transaction.gateway_transaction_id,
        redirect_url=transaction.redirect_url,
        fees=transaction.fees,
        net_amount=transaction.net_amount,
        error_message=transaction.error_message,
    )


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(req: TransactionCreateRequest):
    """Create a `pending` transaction; a repeated `transaction_ref` returns the original."""

    return _transaction_response(orchestrator.create_transaction(req))


@app.post("/transactions/{transaction_id}/process", response_model=ProcessResult)
async def process_transaction(transaction_id: str, req: ProcessRequest | None = None):
    """Route and charge one transaction."""

    return await orchestrator.process(transaction_id, (req or ProcessRequest()).strategy)


@app.post("/transactions/{transaction_id}/refund", response_model=RefundResult)
async def refund_transaction(transaction_id: str, req: RefundCreateRequest):
    return await orchestrator.refund(transaction_id, amount=req.amount, reason=req.reason)


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(transaction_id: str, x_merchant_id: str | None = Header(default=None)):
    """Fetch current state for one transaction."""

    transaction = repository.get_transaction(transaction_id)
    if not transaction or (x_merchant_id and transaction.merchant_id != x_merchant_id):
        raise HTTPException(status_code=404, detail="transaction not found")
    return _transaction_response(transaction)


@app.get("/transactions/{transaction_id}/attempts", response_model=list[AttemptResponse])
def list_attempts(transaction_id: str):
    """Routing attempts in `attempt_number` order."""

    if repository.get_transaction(transaction_id) is None:
        raise HTTPException(status_code=404, detail="transaction not found")
    return [
        AttemptResponse(
            attempt_number=attempt.attempt_number,
            gateway_id=attempt.gateway_id,
            status=attempt.status,
            processing_time_ms=attempt.processing_time_ms,
            error_message=attempt.error_message,
            created_at=attempt.created_at,
        )
        for attempt in repository.list_routing_attempts(transaction_id)
    ]


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
