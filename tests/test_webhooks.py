"""Webhook verification, idempotency and reconciliation against stored state."""

import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from routepay.services.gateways.sandbox import sign_payload
from routepay.services.orchestrator.models import AuditLog, OutboxEvent
from routepay.services.webhooks.service import WebhookReconciliationHandler

SECRET = "whsec_test"


@pytest.fixture()
def handler(repository, registry):
    return WebhookReconciliationHandler(repository, registry)


@pytest.fixture()
def in_flight(repository, add_gateway, merchant):
    """A `processing` transaction charged through the sandbox gateway as `sbx_<ref>`."""

    gateway_id = add_gateway("sandbox_main", provider="sandbox")

    def _make(ref="order-1", amount="500.00", status="processing"):
        transaction, _ = repository.create_transaction(
            merchant_id=merchant.id,
            transaction_ref=ref,
            amount=Decimal(amount),
            currency="INR",
            payment_method="upi",
        )
        repository.compare_and_set_status(
            transaction.id,
            "pending",
            "processing",
            {"gateway_id": gateway_id, "gateway_transaction_id": f"sbx_{ref}"},
            reason="test_setup",
        )
        if status == "success":
            repository.compare_and_set_status(transaction.id, "processing", "success", reason="test_setup")
        return transaction.id

    return _make


def _delivery(event: str, reference: str, secret: str = SECRET, **fields):
    body = json.dumps({"event": event, "transaction_id": reference, **fields}).encode("utf-8")
    return body, sign_payload(secret, body)


def _outbox(session_factory, transaction_id):
    with session_factory() as db:
        return (
            db.execute(select(OutboxEvent).where(OutboxEvent.aggregate_id == transaction_id)).scalars().all()
        )


@pytest.mark.asyncio
async def test_success_event_completes_processing_transaction(handler, repository, session_factory, in_flight):
    transaction_id = in_flight()
    body, headers = _delivery("payment.success", "sbx_order-1")

    result = await handler.handle("sandbox_main", body, headers)

    assert result.success and result.processed
    assert result.transaction_id == transaction_id
    assert repository.get_transaction(transaction_id).status == "success"
    timeline = repository.list_timeline(transaction_id)
    assert (timeline[-1].to_status, timeline[-1].source) == ("success", "webhook")
    record = repository.get_webhook(result.webhook_id)
    assert record.processed
    assert record.event_type == "payment.success"
    assert [row.payload["payload"]["cause"] for row in _outbox(session_factory, transaction_id)] == [
        "payment.success"
    ]


@pytest.mark.asyncio
async def test_bad_signature_is_stored_but_not_applied(handler, repository, in_flight):
    transaction_id = in_flight()
    body, headers = _delivery("payment.success", "sbx_order-1", secret="forged")

    result = await handler.handle("sandbox_main", body, headers)

    assert not result.success
    assert not result.processed
    assert result.error == "INVALID_SIGNATURE"
    record = repository.get_webhook(result.webhook_id)
    assert record is not None and not record.processed
    assert record.error_message.startswith("invalid_signature")
    assert repository.get_transaction(transaction_id).status == "processing"


@pytest.mark.asyncio
async def test_unknown_gateway_code_is_rejected(handler, repository, in_flight):
    in_flight()
    body, headers = _delivery("payment.success", "sbx_order-1")

    result = await handler.handle("nope", body, headers)

    assert result.error == "INVALID_SIGNATURE"
    assert repository.get_webhook(result.webhook_id).source == "unknown"


@pytest.mark.asyncio
async def test_duplicate_delivery_mutates_once(handler, repository, session_factory, in_flight):
    transaction_id = in_flight()
    body, headers = _delivery("payment.success", "sbx_order-1")

    first = await handler.handle("sandbox_main", body, headers)
    second = await handler.handle("sandbox_main", body, headers)

    assert first.processed and second.processed
    assert second.status == "success"
    assert len(_outbox(session_factory, transaction_id)) == 1
    assert [row.to_status for row in repository.list_timeline(transaction_id)] == ["pending", "processing", "success"]


@pytest.mark.asyncio
async def test_failure_after_success_is_stale(handler, repository, in_flight):
    transaction_id = in_flight(status="success")
    body, headers = _delivery("payment.failed", "sbx_order-1")

    result = await handler.handle("sandbox_main", body, headers)

    assert result.success
    assert not result.processed
    assert result.error == "STALE_EVENT"
    assert repository.get_transaction(transaction_id).status == "success"


@pytest.mark.asyncio
async def test_failure_event_records_reason(handler, repository, in_flight):
    transaction_id = in_flight()
    body, headers = _delivery("payment.failed", "sbx_order-1")

    result = await handler.handle("sandbox_main", body, headers)

    stored = repository.get_transaction(transaction_id)
    assert result.status == "failed"
    assert stored.status == "failed"
    assert "payment.failed" in stored.error_message


@pytest.mark.asyncio
async def test_orphan_event_is_left_for_redelivery(handler, repository, in_flight):
    in_flight()
    body, headers = _delivery("payment.success", "sbx_unknown")

    result = await handler.handle("sandbox_main", body, headers)

    assert not result.success
    assert result.error == "TRANSACTION_NOT_FOUND"
    assert not repository.get_webhook(result.webhook_id).processed


@pytest.mark.asyncio
async def test_malformed_payload_is_acknowledged(handler, repository, in_flight):
    in_flight()
    body = b"not json"

    result = await handler.handle("sandbox_main", body, sign_payload(SECRET, body))

    assert result.success
    assert not result.processed
    assert result.error == "MALFORMED_PAYLOAD"
    assert repository.get_webhook(result.webhook_id).payload == {"unparsed": "not json"}


@pytest.mark.asyncio
async def test_partial_refunds_accumulate_then_full_refund_transitions(handler, repository, session_factory, in_flight):
    transaction_id = in_flight(status="success")

    body, headers = _delivery("refund.processed", "sbx_order-1", refund_amount="100.00")
    partial = await handler.handle("sandbox_main", body, headers)
    again = await handler.handle("sandbox_main", body, headers)

    assert partial.processed and partial.status == "success"
    assert again.processed
    stored = repository.get_transaction(transaction_id)
    assert stored.status == "success"
    assert stored.extra["refunded_amount"] == "100.00"
    assert len(_outbox(session_factory, transaction_id)) == 1

    body, headers = _delivery("refund.processed", "sbx_order-1", refund_amount="500.00")
    full = await handler.handle("sandbox_main", body, headers)

    stored = repository.get_transaction(transaction_id)
    assert full.status == "refunded"
    assert stored.status == "refunded"
    assert stored.extra["refunded_amount"] == "500.00"


@pytest.mark.asyncio
async def test_refund_before_success_is_stale(handler, repository, in_flight):
    transaction_id = in_flight()
    body, headers = _delivery("refund.processed", "sbx_order-1")

    result = await handler.handle("sandbox_main", body, headers)

    assert result.error == "STALE_EVENT"
    assert repository.get_transaction(transaction_id).status == "processing"


@pytest.mark.asyncio
async def test_dispute_is_audited_without_status_change(handler, repository, session_factory, in_flight):
    transaction_id = in_flight(status="success")
    body, headers = _delivery("dispute.created", "sbx_order-1")

    result = await handler.handle("sandbox_main", body, headers)

    assert result.processed
    assert repository.get_transaction(transaction_id).status == "success"
    with session_factory() as db:
        audit = db.execute(select(AuditLog).where(AuditLog.entity_id == transaction_id)).scalar_one()
    assert audit.action == "dispute_created"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(handler, repository, in_flight):
    in_flight()
    body, headers = _delivery("payout.created", "sbx_order-1")

    result = await handler.handle("sandbox_main", body, headers)

    assert result.success
    assert not result.processed
    assert result.error == "UNHANDLED_EVENT_TYPE"


@pytest.mark.asyncio
async def test_replay_applies_stored_orphan_once_transaction_exists(handler, repository, in_flight):
    body, headers = _delivery("payment.success", "sbx_late")
    in_flight(ref="early")
    orphan = await handler.handle("sandbox_main", body, headers)
    assert orphan.error == "TRANSACTION_NOT_FOUND"

    transaction_id = in_flight(ref="late")
    replayed = await handler.replay(orphan.webhook_id)

    assert replayed.processed
    assert repository.get_transaction(transaction_id).status == "success"
    again = await handler.replay(orphan.webhook_id)
    assert again.processed


@pytest.mark.asyncio
async def test_replay_of_missing_record_raises(handler):
    with pytest.raises(LookupError):
        await handler.replay("missing")


@pytest.mark.asyncio
async def test_non_ascii_signature_header_is_rejected(handler, repository, in_flight):
    transaction_id = in_flight()
    body, _ = _delivery("payment.success", "sbx_order-1")

    result = await handler.handle("sandbox_main", body, {"X-Sandbox-Signature": "é" * 64})

    assert result.error == "INVALID_SIGNATURE"
    assert repository.get_webhook(result.webhook_id).error_message.startswith("invalid_signature")
    assert repository.get_transaction(transaction_id).status == "processing"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"[1, 2]", b'{"event": "payment.success", "created_at": "yesterday"}'])
async def test_signed_payload_of_wrong_shape_is_acknowledged(handler, repository, in_flight, body):
    in_flight()

    result = await handler.handle("sandbox_main", body, sign_payload(SECRET, body))

    assert result.success
    assert result.error == "MALFORMED_PAYLOAD"
    record = repository.get_webhook(result.webhook_id)
    assert not record.processed
    assert record.error_message.startswith("malformed_payload")
