"""Orchestrator database models.

This DB is the source of truth for merchant gateway configuration, transaction
state, routing attempts, received webhooks and the service-local outbox.
Attempt, timeline, webhook and audit rows are append-only.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from routepay.common.db import Base, JsonDocument


def _uuid() -> str:
    return str(uuid4())


class Merchant(Base):
    __tablename__ = "merchants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    merchant_code: Mapped[str] = mapped_column(String(50), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String, default="active")
    webhook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Gateway(Base):
    """One configured gateway instance (e.g. `razorpay_main`) of a provider."""

    __tablename__ = "payment_gateways"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    gateway_code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    provider: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    supported_methods: Mapped[list] = mapped_column(JsonDocument, default=list)
    supported_currencies: Mapped[list] = mapped_column(JsonDocument, default=list)
    api_endpoint: Mapped[str | None] = mapped_column(String(500), nullable=True)
    credentials: Mapped[dict] = mapped_column(JsonDocument, default=dict)
    webhook_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    features: Mapped[dict] = mapped_column(JsonDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class MerchantGateway(Base):
    """Merchant binding to a gateway with priority and fee formula."""

    __tablename__ = "merchant_gateways"
    __table_args__ = (UniqueConstraint("merchant_id", "gateway_id", name="uq_merchant_gateway"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.id"), index=True)
    gateway_id: Mapped[str] = mapped_column(ForeignKey("payment_gateways.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    merchant_gateway_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credentials: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0"))
    fee_fixed: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RoutingRuleRecord(Base):
    __tablename__ = "routing_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rule_type: Mapped[str] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    conditions: Mapped[dict] = mapped_column(JsonDocument, default=dict)
    actions: Mapped[dict] = mapped_column(JsonDocument, default=dict)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Transaction(Base):
    """Current state of a payment transaction."""

    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("merchant_id", "transaction_ref", name="uq_transaction_ref"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    transaction_ref: Mapped[str] = mapped_column(String(100))
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.id"), index=True)
    gateway_id: Mapped[str | None] = mapped_column(ForeignKey("payment_gateways.id"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    payment_method: Mapped[str] = mapped_column(String(30))
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_address: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    # `metadata` is reserved on declarative classes.
    extra: Mapped[dict] = mapped_column("metadata", JsonDocument, default=dict)
    gateway_response: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    fees: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    net_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TransactionTimeline(Base):
    """Immutable audit trail of every status transition."""

    __tablename__ = "transaction_timeline"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    transaction_id: Mapped[str] = mapped_column(ForeignKey("transactions.id"), index=True)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String, default="orchestrator")
    state_version: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RoutingAttempt(Base):
    """One orchestrator call to a gateway; never updated after insert."""

    __tablename__ = "routing_attempts"
    __table_args__ = (UniqueConstraint("transaction_id", "attempt_number", name="uq_attempt_number"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    transaction_id: Mapped[str] = mapped_column(ForeignKey("transactions.id"), index=True)
    gateway_id: Mapped[str | None] = mapped_column(ForeignKey("payment_gateways.id"), nullable=True, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String)
    request_payload: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    response_payload: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class WebhookRecord(Base):
    """One received gateway callback, stored before any processing."""

    __tablename__ = "webhooks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    source: Mapped[str] = mapped_column(String(50))
    gateway_code: Mapped[str] = mapped_column(String(50), index=True)
    gateway_id: Mapped[str | None] = mapped_column(ForeignKey("payment_gateways.id"), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(ForeignKey("transactions.id"), nullable=True, index=True)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payload: Mapped[dict] = mapped_column(JsonDocument)
    raw_body: Mapped[str] = mapped_column(Text)
    headers: Mapped[dict] = mapped_column(JsonDocument, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class GatewayHealthMetric(Base):
    """Rolling health aggregate for one gateway over a measurement window."""

    __tablename__ = "gateway_health_metrics"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    gateway_id: Mapped[str] = mapped_column(ForeignKey("payment_gateways.id"), index=True)
    success_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2))
    average_response_time_ms: Mapped[int] = mapped_column(Integer)
    total_transactions: Mapped[int] = mapped_column(Integer, default=0)
    failed_transactions: Mapped[int] = mapped_column(Integer, default=0)
    measurement_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    measurement_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    entity_type: Mapped[str] = mapped_column(String(50))
    entity_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String(50))
    performed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    changes: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonDocument)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
