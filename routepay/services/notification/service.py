"""Merchant notification worker.

Consumes `merchant.notification.requested` envelopes and POSTs them to the
merchant's webhook URL, signed with the merchant's secret. Delivery is
at-least-once: the inbox table only suppresses redelivered Kafka messages.
"""

import hashlib
import hmac
import json

import httpx
from sqlalchemy import select

from routepay.common.config import settings
from routepay.common.events import MERCHANT_NOTIFICATION_REQUESTED, EventEnvelope, consume_forever
from routepay.common.logging import logger
from routepay.common.metrics import duplicate_events_skipped_total, merchant_notifications_total
from routepay.services.notification.models import InboxEvent, NotificationLog
from routepay.services.orchestrator.models import Merchant

SIGNATURE_HEADER = "X-RoutePay-Signature"


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def notification_body(event: EventEnvelope) -> bytes:
    body = {"event_id": event.event_id, "occurred_at": event.occurred_at, **event.payload}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


class NotificationService:
    """Delivers transaction status changes to merchant endpoints."""

    def __init__(self, session_factory, client: httpx.AsyncClient, service_name: str = "notification") -> None:
        self.session_factory = session_factory
        self.client = client
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

    async def _deliver(self, merchant: Merchant | None, event: EventEnvelope) -> tuple[str, int | None, str | None]:
        if merchant is None or not merchant.webhook_url:
            return "skipped", None, "merchant has no webhook url"
        body = notification_body(event)
        headers = {"Content-Type": "application/json", "X-RoutePay-Event-Id": event.event_id}
        if merchant.webhook_secret:
            headers[SIGNATURE_HEADER] = sign_body(merchant.webhook_secret, body)
        try:
            response = await self.client.post(
                merchant.webhook_url,
                content=body,
                headers=headers,
                timeout=settings.notification_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            return "failed", None, str(exc)
        if response.status_code >= 300:
            return "failed", response.status_code, response.text[:500]
        return "delivered", response.status_code, None

    async def handle_notification(self, event: EventEnvelope) -> None:
        """Deliver one notification, skipping duplicate events safely."""

        if event.event_type != MERCHANT_NOTIFICATION_REQUESTED:
            return
        merchant_id = event.payload.get("merchant_id", "")
        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=event.event_type).inc()
                return
            merchant = db.get(Merchant, merchant_id)

        outcome, status_code, error = await self._deliver(merchant, event)

        with self.session_factory() as db:
            db.add(
                NotificationLog(
                    event_id=event.event_id,
                    transaction_id=event.aggregate_id,
                    merchant_id=merchant_id,
                    url=merchant.webhook_url if merchant else None,
                    outcome=outcome,
                    status_code=status_code,
                    error_message=error,
                )
            )
            self._mark_inbox(db, event.event_id)
            db.commit()
        merchant_notifications_total.labels(service=self.service_name, outcome=outcome).inc()
        logger.info(
            "merchant_notification transaction_id=%s status=%s outcome=%s status_code=%s error=%s",
            event.aggregate_id,
            event.payload.get("status"),
            outcome,
            status_code,
            error,
        )

    async def start_consumers(self) -> None:
        await consume_forever(settings.merchant_notification_topic, "notification-merchant", self.handle_notification)

    def list_deliveries(self, transaction_id: str) -> list[NotificationLog]:
        """Delivery log for one transaction, oldest first."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(NotificationLog)
                    .where(NotificationLog.transaction_id == transaction_id)
                    .order_by(NotificationLog.created_at, NotificationLog.id)
                ).scalars()
            )
