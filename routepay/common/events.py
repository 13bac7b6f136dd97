"""Kafka envelope + producer/consumer helpers.

Merchant notifications leave the routing core as envelopes written to the
outbox; this module standardizes their shape and the resilient consumer loop
used by the notification worker.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from routepay.common.config import settings
from routepay.common.logging import log_context, logger, trace_id_ctx
from routepay.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = ""
    payload: dict[str, Any]


class KafkaBus:
    """Lazy Kafka producer wrapper used by outbox publishers."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self._bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self._bootstrap_servers)
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


def _observe_queue_delay(topic: str, event: EventEnvelope) -> None:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def consume_forever(
    topic: str,
    group_id: str,
    handler: Callable[[EventEnvelope], Awaitable[None]],
) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Errors in individual messages are logged and processing continues; offsets
    are committed per polled batch. Handlers must be idempotent since a crash
    before commit redelivers the batch.
    """

    while True:
        consumer = None
        try:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=settings.kafka_bootstrap_servers,
                group_id=group_id,
                auto_offset_reset="earliest",
                enable_auto_commit=False,
            )
            await consumer.start()
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for _, messages in results.items():
                    for msg in messages:
                        try:
                            event = EventEnvelope(**json.loads(msg.value.decode("utf-8")))
                            _observe_queue_delay(topic, event)
                            with log_context(trace_id=event.trace_id, transaction_id=event.aggregate_id):
                                logger.info(
                                    "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
                                    topic,
                                    group_id,
                                    event.event_type,
                                    event.aggregate_id,
                                )
                                await handler(event)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()


MERCHANT_NOTIFICATION_REQUESTED = "merchant.notification.requested"


def merchant_notification(
    transaction, status: str, cause: str, gateway_transaction_id: str | None = None
) -> tuple[str, EventEnvelope]:
    """Outbox `(topic, envelope)` announcing a merchant-visible status change."""

    return (
        settings.merchant_notification_topic,
        EventEnvelope(
            event_type=MERCHANT_NOTIFICATION_REQUESTED,
            aggregate_id=transaction.id,
            trace_id=trace_id_ctx.get(),
            payload={
                "merchant_id": transaction.merchant_id,
                "transaction_id": transaction.id,
                "transaction_ref": transaction.transaction_ref,
                "previous_status": transaction.status,
                "status": status,
                "amount": str(transaction.amount),
                "currency": transaction.currency,
                "gateway_transaction_id": gateway_transaction_id or transaction.gateway_transaction_id,
                "cause": cause,
            },
        ),
    )
