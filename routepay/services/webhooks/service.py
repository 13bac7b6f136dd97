"""Webhook reconciliation.

Every callback is stored before anything else happens. Authentic events are
normalized by the provider adapter, matched to a transaction by the
gateway-assigned id, and applied through the same conditional status update
the orchestrator uses, so duplicate and out-of-order deliveries never move a
transaction twice.
"""

import json
from decimal import Decimal
from typing import Mapping

from pydantic import ValidationError

from routepay.common.errors import (
    ConcurrentUpdate,
    ConfigurationError,
    GatewayCallError,
    InvalidSignature,
    TransactionNotFound,
)
from routepay.common.events import merchant_notification
from routepay.common.logging import log_context, logger
from routepay.common.metrics import transaction_terminal_total, webhooks_received_total
from routepay.common.state_machine import ALLOWED_TRANSITIONS, FAILED, REFUNDED, SUCCESS
from routepay.common.tracing import traced
from routepay.services.gateways.base import (
    DISPUTE_CREATED,
    PAYMENT_FAILED,
    PAYMENT_PROCESSING,
    PAYMENT_SUCCESS,
    REFUND_PROCESSED,
    NormalizedEvent,
)
from routepay.services.gateways.registry import GatewayRegistry
from routepay.services.orchestrator.models import Transaction
from routepay.services.orchestrator.repository import Repository
from routepay.services.webhooks.schemas import HandleResult

EVENT_TARGETS = {
    PAYMENT_SUCCESS: SUCCESS,
    PAYMENT_FAILED: FAILED,
    REFUND_PROCESSED: REFUNDED,
}
# Acknowledged without a status change.
INFORMATIONAL_EVENTS = frozenset({PAYMENT_PROCESSING, DISPUTE_CREATED})


def _decode(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except ValueError:
        return {"unparsed": raw_body.decode("utf-8", errors="replace")}
    return payload if isinstance(payload, dict) else {"body": payload}


class WebhookReconciliationHandler:
    """Verifies, records and applies gateway callbacks."""

    def __init__(self, repository: Repository, registry: GatewayRegistry, service_name: str = "webhooks") -> None:
        self.repository = repository
        self.registry = registry
        self.service_name = service_name

    async def handle(self, gateway_code: str, raw_body: bytes, headers: Mapping[str, str]) -> HandleResult:
        """Store one delivery, then reconcile it against transaction state."""

        headers = {key.lower(): value for key, value in headers.items()}
        gateway_row = self.repository.get_gateway_by_code(gateway_code)
        record = self.repository.add_webhook(
            source=gateway_row.provider if gateway_row else "unknown",
            gateway_code=gateway_code,
            gateway_id=gateway_row.id if gateway_row else None,
            payload=_decode(raw_body),
            raw_body=raw_body.decode("utf-8", errors="replace"),
            headers=headers,
        )
        return await self._reconcile(record.id, gateway_code, raw_body, headers)

    async def replay(self, webhook_id: str) -> HandleResult:
        """Re-run reconciliation for a stored, not yet processed delivery."""

        record = self.repository.get_webhook(webhook_id)
        if record is None:
            raise LookupError(f"webhook {webhook_id} not found")
        if record.processed:
            return HandleResult(
                success=True, processed=True, webhook_id=record.id, transaction_id=record.transaction_id
            )
        return await self._reconcile(record.id, record.gateway_code, record.raw_body.encode("utf-8"), record.headers)

    def _outcome(self, gateway_code: str, outcome: str) -> None:
        webhooks_received_total.labels(service=self.service_name, gateway=gateway_code, outcome=outcome).inc()

    async def _reconcile(
        self, webhook_id: str, gateway_code: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> HandleResult:
        with log_context(webhook_id=webhook_id, gateway_code=gateway_code), traced(
            "webhook.reconcile", webhook_id=webhook_id, gateway=gateway_code
        ) as span:
            result = await self._verify_and_apply(webhook_id, gateway_code, raw_body, headers)
            span.set_attribute("routepay.processed", result.processed)
            return result

    async def _verify_and_apply(
        self, webhook_id: str, gateway_code: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> HandleResult:
        try:
            gateway_row = self.repository.get_gateway_by_code(gateway_code)
            if gateway_row is None:
                raise ConfigurationError(f"unknown gateway code {gateway_code!r}")
            config = self.repository.get_gateway_config(gateway_row.id)
            gateway = self.registry.get(config.provider)
            verified = await gateway.verify_webhook_signature(raw_body, headers, config)
            detail = "signature mismatch"
        except ConfigurationError as exc:
            verified, detail = False, str(exc)
        except GatewayCallError as exc:
            # Verification service unreachable: let the gateway redeliver.
            self.repository.mark_webhook(webhook_id, processed=False, error=f"verification_unavailable: {exc}")
            self._outcome(gateway_code, "verification_unavailable")
            logger.warning("webhook_verification_unavailable gateway=%s error=%s", gateway_code, exc)
            return HandleResult(success=False, processed=False, webhook_id=webhook_id, error=exc.code)

        if not verified:
            self.repository.mark_webhook(webhook_id, processed=False, error=f"invalid_signature: {detail}")
            self._outcome(gateway_code, "invalid_signature")
            logger.warning("webhook_rejected gateway=%s reason=%s", gateway_code, detail)
            return HandleResult(success=False, processed=False, webhook_id=webhook_id, error=InvalidSignature.code)

        try:
            event = gateway.parse_webhook_event(raw_body, headers)
        except (ValueError, ValidationError, AttributeError, TypeError, KeyError) as exc:
            self.repository.mark_webhook(webhook_id, processed=False, error=f"malformed_payload: {exc}")
            self._outcome(gateway_code, "malformed")
            logger.warning("webhook_malformed gateway=%s error=%s", gateway_code, exc)
            return HandleResult(success=True, processed=False, webhook_id=webhook_id, error="MALFORMED_PAYLOAD")

        transaction = None
        if event.gateway_transaction_id:
            transaction = self.repository.find_transaction_by_gateway_reference(
                event.gateway_transaction_id, gateway_id=gateway_row.id
            )
        if transaction is None:
            self.repository.mark_webhook(
                webhook_id,
                processed=False,
                error=f"transaction_not_found: {event.gateway_transaction_id}",
                event_type=event.event_type,
            )
            self._outcome(gateway_code, "orphan")
            logger.warning(
                "webhook_orphan gateway=%s event_type=%s gateway_transaction_id=%s",
                gateway_code,
                event.event_type,
                event.gateway_transaction_id,
            )
            return HandleResult(
                success=False, processed=False, webhook_id=webhook_id, error=TransactionNotFound.code
            )

        with log_context(transaction_id=transaction.id):
            result = self._apply(webhook_id, transaction, event)
        self._outcome(gateway_code, "processed" if result.processed else (result.error or "rejected").lower())
        return result

    def _done(self, webhook_id: str, transaction: Transaction, event: NormalizedEvent, status: str) -> HandleResult:
        self.repository.mark_webhook(
            webhook_id, processed=True, transaction_id=transaction.id, event_type=event.event_type
        )
        return HandleResult(
            success=True, processed=True, webhook_id=webhook_id, transaction_id=transaction.id, status=status
        )

    def _skip(
        self, webhook_id: str, transaction: Transaction, event: NormalizedEvent, error: str, *, success: bool = True
    ) -> HandleResult:
        self.repository.mark_webhook(
            webhook_id,
            processed=False,
            error=error,
            transaction_id=transaction.id,
            event_type=event.event_type,
        )
        return HandleResult(
            success=success,
            processed=False,
            webhook_id=webhook_id,
            transaction_id=transaction.id,
            status=transaction.status,
            error=error.split(":", 1)[0].upper(),
        )

    def _apply(self, webhook_id: str, transaction: Transaction, event: NormalizedEvent) -> HandleResult:
        current = transaction.status
        logger.info(
            "webhook_event transaction_id=%s event_type=%s current_status=%s",
            transaction.id,
            event.event_type,
            current,
        )
        if event.event_type in INFORMATIONAL_EVENTS:
            if event.event_type == DISPUTE_CREATED:
                self.repository.add_audit_log(
                    "transaction",
                    transaction.id,
                    "dispute_created",
                    {"gateway_transaction_id": event.gateway_transaction_id, "event": event.raw_data},
                )
                logger.warning("dispute_created transaction_id=%s", transaction.id)
            return self._done(webhook_id, transaction, event, current)

        target = EVENT_TARGETS.get(event.event_type)
        if target is None:
            logger.info("webhook_unhandled event_type=%s", event.event_type)
            return self._skip(webhook_id, transaction, event, f"unhandled_event_type: {event.event_type}")

        patch = {"gateway_response": event.raw_data}
        cause = event.event_type
        amount = Decimal(transaction.amount)
        if target == REFUNDED and event.refund_amount is not None and event.refund_amount < amount:
            if current != SUCCESS:
                return self._skip(webhook_id, transaction, event, f"stale_event: partial refund while {current}")
            refunded = Decimal((transaction.extra or {}).get("refunded_amount", "0"))
            if event.refund_amount <= refunded:
                logger.info("duplicate_refund_event transaction_id=%s amount=%s", transaction.id, event.refund_amount)
                return self._done(webhook_id, transaction, event, current)
            target, cause = SUCCESS, "refund.partial"
            patch["extra"] = {**(transaction.extra or {}), "refunded_amount": str(event.refund_amount)}
        elif current == target:
            logger.info("duplicate_event transaction_id=%s status=%s", transaction.id, current)
            return self._done(webhook_id, transaction, event, current)

        if target != current and target not in ALLOWED_TRANSITIONS.get(current, set()):
            logger.info("stale_event transaction_id=%s current=%s target=%s", transaction.id, current, target)
            return self._skip(webhook_id, transaction, event, f"stale_event: {current} -> {target}")
        if target == FAILED:
            patch["error_message"] = f"gateway reported {event.raw_data.get('type') or event.event_type}"
        if target == REFUNDED:
            patch["extra"] = {**(transaction.extra or {}), "refunded_amount": str(amount)}

        try:
            stored = self.repository.compare_and_set_status(
                transaction.id,
                current,
                target,
                patch,
                reason=f"webhook:{event.event_type}",
                source="webhook",
                outbox=(merchant_notification(transaction, target, cause),),
            )
        except ConcurrentUpdate as exc:
            logger.warning("webhook_conflict transaction_id=%s error=%s", transaction.id, exc)
            return self._skip(webhook_id, transaction, event, f"concurrent_update: {exc}", success=False)
        if target != current:
            transaction_terminal_total.labels(service=self.service_name, status=target, source="webhook").inc()
        logger.info("webhook_applied transaction_id=%s status=%s cause=%s", transaction.id, stored.status, cause)
        return self._done(webhook_id, transaction, event, stored.status)
