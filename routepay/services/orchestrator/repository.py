"""Repository contract and its SQLAlchemy implementation.

The orchestrator and webhook handler depend only on `Repository`. The single
concurrency primitive is `compare_and_set_status`: a conditional UPDATE keyed
on `(id, status, state_version)` that gives every transaction a single writer
without explicit locks.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from pydantic import ValidationError
from sqlalchemy import case, func, select, update

from routepay.common.errors import ConcurrentUpdate, ConfigurationError, TransactionNotFound
from routepay.common.events import EventEnvelope
from routepay.common.logging import logger
from routepay.common.state_machine import PENDING, validate_transition
from routepay.services.gateways.base import GatewayConfig
from routepay.services.orchestrator.models import (
    AuditLog,
    Gateway,
    GatewayHealthMetric,
    Merchant,
    MerchantGateway,
    OutboxEvent,
    RoutingAttempt,
    RoutingRuleRecord,
    Transaction,
    TransactionTimeline,
    WebhookRecord,
)
from routepay.services.routing.rules import RoutingRule, rule_from_document
from routepay.services.routing.schemas import CandidateGateway, HealthSnapshot


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Repository(ABC):
    """Persistence operations consumed by the routing core."""

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Transaction | None: ...

    @abstractmethod
    def find_transaction_by_gateway_reference(
        self, gateway_transaction_id: str, gateway_id: str | None = None
    ) -> Transaction | None: ...

    @abstractmethod
    def create_transaction(self, **fields: Any) -> tuple[Transaction, bool]: ...

    @abstractmethod
    def compare_and_set_status(
        self,
        transaction_id: str,
        expected: str,
        next_status: str,
        patch: dict[str, Any] | None = None,
        *,
        reason: str,
        source: str = "orchestrator",
        outbox: Iterable[tuple[str, EventEnvelope]] = (),
    ) -> Transaction: ...

    @abstractmethod
    def list_candidate_gateways(self, merchant_id: str) -> list[CandidateGateway]: ...

    @abstractmethod
    def get_gateway_config(self, gateway_id: str, merchant_id: str | None = None) -> GatewayConfig: ...

    @abstractmethod
    def get_gateway_by_code(self, gateway_code: str) -> Gateway | None: ...

    @abstractmethod
    def list_routing_rules(self, merchant_id: str) -> list[RoutingRule]: ...

    @abstractmethod
    def latest_health_snapshots(self, gateway_ids: Iterable[str], since: datetime) -> dict[str, HealthSnapshot]: ...

    @abstractmethod
    def add_routing_attempt(self, **fields: Any) -> RoutingAttempt: ...

    @abstractmethod
    def list_routing_attempts(self, transaction_id: str) -> list[RoutingAttempt]: ...

    @abstractmethod
    def list_timeline(self, transaction_id: str) -> list[TransactionTimeline]: ...

    @abstractmethod
    def add_webhook(self, **fields: Any) -> WebhookRecord: ...

    @abstractmethod
    def get_webhook(self, webhook_id: str) -> WebhookRecord | None: ...

    @abstractmethod
    def mark_webhook(
        self,
        webhook_id: str,
        *,
        processed: bool,
        error: str | None = None,
        **fields: Any,
    ) -> None: ...

    @abstractmethod
    def list_unprocessed_webhooks(self, limit: int = 100) -> list[WebhookRecord]: ...

    @abstractmethod
    def add_audit_log(self, entity_type: str, entity_id: str, action: str, changes: dict | None = None) -> None: ...

    @abstractmethod
    def get_merchant(self, merchant_id: str) -> Merchant | None: ...


class SqlAlchemyRepository(Repository):
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        with self.session_factory() as db:
            return db.get(Transaction, transaction_id)

    def find_transaction_by_gateway_reference(
        self, gateway_transaction_id: str, gateway_id: str | None = None
    ) -> Transaction | None:
        stmt = select(Transaction).where(Transaction.gateway_transaction_id == gateway_transaction_id)
        if gateway_id is not None:
            stmt = stmt.where(Transaction.gateway_id == gateway_id)
        with self.session_factory() as db:
            return db.execute(stmt.order_by(Transaction.created_at.desc()).limit(1)).scalar_one_or_none()

    def create_transaction(self, **fields: Any) -> tuple[Transaction, bool]:
        """Insert a `pending` transaction once per `(merchant_id, transaction_ref)`."""

        with self.session_factory() as db:
            existing = db.execute(
                select(Transaction).where(
                    Transaction.merchant_id == fields["merchant_id"],
                    Transaction.transaction_ref == fields["transaction_ref"],
                )
            ).scalar_one_or_none()
            if existing:
                return existing, False
            transaction = Transaction(status=PENDING, state_version=0, **fields)
            db.add(transaction)
            db.flush()
            db.add(
                TransactionTimeline(
                    transaction_id=transaction.id,
                    from_status=None,
                    to_status=PENDING,
                    reason="transaction_created",
                    source="intake",
                    state_version=0,
                )
            )
            db.commit()
            db.refresh(transaction)
            return transaction, True

    def compare_and_set_status(
        self,
        transaction_id: str,
        expected: str,
        next_status: str,
        patch: dict[str, Any] | None = None,
        *,
        reason: str,
        source: str = "orchestrator",
        outbox: Iterable[tuple[str, EventEnvelope]] = (),
    ) -> Transaction:
        """Atomically move `expected -> next_status` and apply `patch`.

        `next_status == expected` applies the patch without a transition (no
        timeline row). Raises `ConcurrentUpdate` when the stored status or
        version no longer matches what this writer observed.
        """

        with self.session_factory() as db:
            transaction = db.get(Transaction, transaction_id)
            if transaction is None:
                raise TransactionNotFound(f"transaction {transaction_id} not found")
            if transaction.status != expected:
                raise ConcurrentUpdate(
                    f"transaction {transaction_id} is {transaction.status}, expected {expected}"
                )
            changes_status = next_status != expected
            if changes_status:
                validate_transition(expected, next_status)
            version = transaction.state_version
            values = {getattr(Transaction, key): value for key, value in (patch or {}).items()}
            values[Transaction.status] = next_status
            values[Transaction.state_version] = version + 1
            values[Transaction.updated_at] = datetime.now(timezone.utc)
            result = db.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.status == expected,
                    Transaction.state_version == version,
                )
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConcurrentUpdate(
                    f"optimistic concurrency conflict for transaction {transaction_id} "
                    f"(expected version {version})"
                )
            if changes_status:
                db.add(
                    TransactionTimeline(
                        transaction_id=transaction_id,
                        from_status=expected,
                        to_status=next_status,
                        reason=reason,
                        source=source,
                        state_version=version + 1,
                    )
                )
            for topic, event in outbox:
                db.add(
                    OutboxEvent(
                        aggregate_type="transaction",
                        aggregate_id=transaction_id,
                        event_type=event.event_type,
                        topic=topic,
                        payload=event.model_dump(),
                    )
                )
            db.commit()
            db.refresh(transaction)
            return transaction

    def list_candidate_gateways(self, merchant_id: str) -> list[CandidateGateway]:
        with self.session_factory() as db:
            rows = db.execute(
                select(MerchantGateway, Gateway)
                .join(Gateway, Gateway.id == MerchantGateway.gateway_id)
                .where(MerchantGateway.merchant_id == merchant_id)
                .order_by(MerchantGateway.priority.asc())
            ).all()
        return [
            CandidateGateway(
                gateway_id=gateway.id,
                gateway_code=gateway.gateway_code,
                provider=gateway.provider,
                priority=binding.priority,
                fee_percentage=Decimal(binding.fee_percentage or 0),
                fee_fixed=Decimal(binding.fee_fixed or 0),
                is_active=binding.is_active,
                gateway_active=gateway.status == "active",
                supported_currencies=frozenset(gateway.supported_currencies or []),
                supported_methods=frozenset(gateway.supported_methods or []),
                merchant_gateway_id=binding.merchant_gateway_id,
            )
            for binding, gateway in rows
        ]

    def get_gateway_config(self, gateway_id: str, merchant_id: str | None = None) -> GatewayConfig:
        with self.session_factory() as db:
            gateway = db.get(Gateway, gateway_id)
            if gateway is None:
                raise ConfigurationError(f"gateway {gateway_id} is not configured")
            binding = None
            if merchant_id is not None:
                binding = db.execute(
                    select(MerchantGateway).where(
                        MerchantGateway.merchant_id == merchant_id,
                        MerchantGateway.gateway_id == gateway_id,
                    )
                ).scalar_one_or_none()
        credentials = dict(gateway.credentials or {})
        if binding is not None and binding.credentials:
            credentials.update(binding.credentials)
        return GatewayConfig(
            gateway_code=gateway.gateway_code,
            provider=gateway.provider,
            credentials=credentials,
            webhook_secret=gateway.webhook_secret,
            features=gateway.features or {},
            api_endpoint=gateway.api_endpoint,
            merchant_gateway_id=binding.merchant_gateway_id if binding is not None else None,
        )

    def get_gateway_by_code(self, gateway_code: str) -> Gateway | None:
        with self.session_factory() as db:
            return db.execute(select(Gateway).where(Gateway.gateway_code == gateway_code)).scalar_one_or_none()

    def list_routing_rules(self, merchant_id: str) -> list[RoutingRule]:
        with self.session_factory() as db:
            records = (
                db.execute(
                    select(RoutingRuleRecord)
                    .where(RoutingRuleRecord.merchant_id == merchant_id)
                    .order_by(RoutingRuleRecord.priority.asc(), RoutingRuleRecord.id.asc())
                )
                .scalars()
                .all()
            )
        rules = []
        for record in records:
            try:
                rules.append(
                    rule_from_document(
                        rule_id=record.id,
                        name=record.name,
                        kind=record.rule_type,
                        priority=record.priority,
                        conditions=record.conditions,
                        actions=record.actions,
                        is_active=record.is_active,
                        valid_from=_aware(record.valid_from),
                        valid_until=_aware(record.valid_until),
                    )
                )
            except (ValidationError, ValueError) as exc:
                logger.warning("routing_rule_skipped rule_id=%s error=%s", record.id, exc)
        return rules

    def latest_health_snapshots(self, gateway_ids: Iterable[str], since: datetime) -> dict[str, HealthSnapshot]:
        ids = list(gateway_ids)
        if not ids:
            return {}
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(GatewayHealthMetric)
                    .where(
                        GatewayHealthMetric.gateway_id.in_(ids),
                        GatewayHealthMetric.measurement_period_end > since,
                    )
                    .order_by(GatewayHealthMetric.measurement_period_end.desc())
                )
                .scalars()
                .all()
            )
        snapshots: dict[str, HealthSnapshot] = {}
        for row in rows:
            if row.gateway_id in snapshots:
                continue
            snapshots[row.gateway_id] = HealthSnapshot(
                gateway_id=row.gateway_id,
                success_rate=Decimal(row.success_rate),
                average_latency_ms=Decimal(row.average_response_time_ms),
            )
        return snapshots

    def add_routing_attempt(self, **fields: Any) -> RoutingAttempt:
        with self.session_factory() as db:
            attempt = RoutingAttempt(**fields)
            db.add(attempt)
            db.commit()
            db.refresh(attempt)
            return attempt

    def list_routing_attempts(self, transaction_id: str) -> list[RoutingAttempt]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(RoutingAttempt)
                    .where(RoutingAttempt.transaction_id == transaction_id)
                    .order_by(RoutingAttempt.attempt_number.asc())
                )
                .scalars()
                .all()
            )

    def list_timeline(self, transaction_id: str) -> list[TransactionTimeline]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(TransactionTimeline)
                    .where(TransactionTimeline.transaction_id == transaction_id)
                    .order_by(TransactionTimeline.state_version.asc())
                )
                .scalars()
                .all()
            )

    def add_webhook(self, **fields: Any) -> WebhookRecord:
        with self.session_factory() as db:
            record = WebhookRecord(**fields)
            db.add(record)
            db.commit()
            db.refresh(record)
            return record

    def get_webhook(self, webhook_id: str) -> WebhookRecord | None:
        with self.session_factory() as db:
            return db.get(WebhookRecord, webhook_id)

    def mark_webhook(
        self,
        webhook_id: str,
        *,
        processed: bool,
        error: str | None = None,
        **fields: Any,
    ) -> None:
        """Record the outcome; `processed` only ever flips false -> true."""

        values = {getattr(WebhookRecord, key): value for key, value in fields.items()}
        values[WebhookRecord.error_message] = error
        if processed:
            values[WebhookRecord.processed] = True
            values[WebhookRecord.processed_at] = datetime.now(timezone.utc)
        with self.session_factory() as db:
            db.execute(
                update(WebhookRecord)
                .where(WebhookRecord.id == webhook_id, WebhookRecord.processed.is_(False))
                .values(values)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def list_unprocessed_webhooks(self, limit: int = 100) -> list[WebhookRecord]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(WebhookRecord)
                    .where(WebhookRecord.processed.is_(False))
                    .order_by(WebhookRecord.created_at.asc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def add_audit_log(self, entity_type: str, entity_id: str, action: str, changes: dict | None = None) -> None:
        with self.session_factory() as db:
            db.add(AuditLog(entity_type=entity_type, entity_id=entity_id, action=action, changes=changes))
            db.commit()

    def get_merchant(self, merchant_id: str) -> Merchant | None:
        with self.session_factory() as db:
            return db.get(Merchant, merchant_id)

    def list_stuck_transactions(self, older_than: datetime, limit: int = 100) -> list[Transaction]:
        """`processing` transactions not updated since `older_than`."""

        with self.session_factory() as db:
            return (
                db.execute(
                    select(Transaction)
                    .where(Transaction.status == "processing", Transaction.updated_at < older_than)
                    .order_by(Transaction.updated_at.asc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def attempt_stats_since(self, since: datetime) -> list[tuple[str, int, int, float]]:
        """Per gateway: `(gateway_id, total, failed, avg_latency_ms)` since `since`."""

        failed = func.sum(case((RoutingAttempt.status == "failed", 1), else_=0))
        with self.session_factory() as db:
            rows = db.execute(
                select(
                    RoutingAttempt.gateway_id,
                    func.count(RoutingAttempt.id),
                    failed,
                    func.avg(RoutingAttempt.processing_time_ms),
                )
                .where(RoutingAttempt.created_at >= since, RoutingAttempt.gateway_id.is_not(None))
                .group_by(RoutingAttempt.gateway_id)
            ).all()
        return [(row[0], int(row[1]), int(row[2] or 0), float(row[3] or 0)) for row in rows]

    def add_health_metric(self, **fields: Any) -> GatewayHealthMetric:
        with self.session_factory() as db:
            metric = GatewayHealthMetric(**fields)
            db.add(metric)
            db.commit()
            db.refresh(metric)
            return metric
