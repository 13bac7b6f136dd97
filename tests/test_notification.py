"""Merchant notification delivery, signing and inbox dedupe."""

import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select, update

from routepay.common.events import merchant_notification
from routepay.services.notification.models import NotificationLog
from routepay.services.notification.service import NotificationService, sign_body
from routepay.services.orchestrator.models import Merchant


@pytest.fixture()
def envelope(repository, merchant):
    transaction, _ = repository.create_transaction(
        merchant_id=merchant.id,
        transaction_ref="order-n",
        amount=Decimal("75.00"),
        currency="USD",
        payment_method="card",
    )
    _, event = merchant_notification(transaction, "success", "payment.success", gateway_transaction_id="pi_1")
    return event


def _logs(session_factory):
    with session_factory() as db:
        return db.execute(select(NotificationLog)).scalars().all()


@pytest.mark.asyncio
async def test_delivery_is_signed_with_merchant_secret(session_factory, envelope):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await NotificationService(session_factory, client).handle_notification(envelope)

    (request,) = received
    assert str(request.url) == "https://merchant.example/hooks"
    assert request.headers["x-routepay-signature"] == sign_body("merchant-secret", request.content)
    body = json.loads(request.content)
    assert body["status"] == "success"
    assert body["previous_status"] == "pending"
    assert body["gateway_transaction_id"] == "pi_1"
    assert [(log.outcome, log.status_code) for log in _logs(session_factory)] == [("delivered", 204)]


@pytest.mark.asyncio
async def test_redelivered_event_is_sent_once(session_factory, envelope):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = NotificationService(session_factory, client)
        await service.handle_notification(envelope)
        await service.handle_notification(envelope)

    assert len(calls) == 1
    assert len(_logs(session_factory)) == 1


@pytest.mark.asyncio
async def test_merchant_error_is_logged_as_failed(session_factory, envelope):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom"))) as client:
        await NotificationService(session_factory, client).handle_notification(envelope)

    (log,) = _logs(session_factory)
    assert log.outcome == "failed"
    assert log.status_code == 500
    assert log.error_message == "boom"


@pytest.mark.asyncio
async def test_merchant_without_url_is_skipped(session_factory, merchant, envelope):
    with session_factory() as db:
        db.execute(update(Merchant).where(Merchant.id == merchant.id).values(webhook_url=None))
        db.commit()

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no delivery expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await NotificationService(session_factory, client).handle_notification(envelope)

    (log,) = _logs(session_factory)
    assert log.outcome == "skipped"
    assert log.url is None


@pytest.mark.asyncio
async def test_delivery_history_is_scoped_to_transaction(session_factory, envelope):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom"))) as client:
        service = NotificationService(session_factory, client)
        await service.handle_notification(envelope)

    (log,) = service.list_deliveries(envelope.aggregate_id)
    assert log.event_id == envelope.event_id
    assert log.outcome == "failed"
    assert service.list_deliveries("someone-else") == []
