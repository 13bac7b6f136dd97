"""Shared fixtures: in-memory SQLite schema, seed helpers and a scripted gateway."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool

from routepay.common.db import Base, build_session_factory
from routepay.services.gateways.base import (
    GatewayConfig,
    NormalizedEvent,
    PaymentGateway,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
)
from routepay.services.gateways.registry import GatewayRegistry
from routepay.services.gateways.sandbox import SandboxGateway
from routepay.services.notification import models as notification_models  # noqa: F401
from routepay.services.orchestrator.models import Gateway, Merchant, MerchantGateway, RoutingRuleRecord
from routepay.services.orchestrator.repository import SqlAlchemyRepository
from routepay.services.orchestrator.schemas import TransactionCreateRequest


class ScriptedGateway(PaymentGateway):
    """Answers per `gateway_code` from `script`; unscripted codes succeed."""

    provider = "scripted"

    def __init__(self) -> None:
        self.script: dict[str, str] = {}
        self.calls: list[tuple[str, PaymentRequest]] = []
        self.refunds: list[RefundRequest] = []
        self.status_answers: dict[str, PaymentResponse] = {}
        self.release = asyncio.Event()

    async def process_payment(self, request: PaymentRequest, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        self.calls.append((config.gateway_code, request))
        outcome = self.script.get(config.gateway_code, "success")
        gateway_transaction_id = f"{config.gateway_code}_{len(self.calls)}"
        if outcome == "hang":
            await asyncio.sleep(3600)
        if outcome == "wait":
            await self.release.wait()
            outcome = "success"
        if outcome == "decline":
            return PaymentResponse(
                success=False,
                status="failed",
                gateway_transaction_id=gateway_transaction_id,
                error_code="CARD_DECLINED",
                error_message="card declined",
            )
        if outcome == "pending":
            return PaymentResponse(
                success=True,
                status="pending",
                gateway_transaction_id=gateway_transaction_id,
                redirect_url=f"https://pay.example/{gateway_transaction_id}",
            )
        if outcome == "explode":
            raise RuntimeError("adapter bug")
        return PaymentResponse(
            success=True,
            status="success",
            gateway_transaction_id=gateway_transaction_id,
            raw={"id": gateway_transaction_id},
        )

    async def process_refund(self, request: RefundRequest, config: GatewayConfig) -> RefundResponse:
        self.refunds.append(request)
        return RefundResponse(
            success=True, status="pending", gateway_refund_id="rf_1", refunded_amount=request.amount or Decimal("0")
        )

    async def check_status(self, gateway_transaction_id: str, config: GatewayConfig) -> PaymentResponse:
        return self.status_answers.get(
            gateway_transaction_id,
            PaymentResponse(success=True, status="processing", gateway_transaction_id=gateway_transaction_id),
        )

    async def verify_webhook_signature(self, payload, headers, config) -> bool:
        return headers.get("x-scripted-signature") == self.require_webhook_secret(config)

    def parse_webhook_event(self, payload, headers) -> NormalizedEvent:
        raise NotImplementedError


@pytest.fixture()
def session_factory():
    factory = build_session_factory(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def repository(session_factory):
    return SqlAlchemyRepository(session_factory)


@pytest.fixture()
def scripted():
    return ScriptedGateway()


@pytest.fixture()
def registry(scripted):
    return GatewayRegistry({"scripted": lambda: scripted, "sandbox": SandboxGateway})


@pytest.fixture()
def merchant(session_factory):
    with session_factory() as db:
        row = Merchant(
            merchant_code="acme",
            name="Acme Retail",
            webhook_url="https://merchant.example/hooks",
            webhook_secret="merchant-secret",
        )
        db.add(row)
        db.commit()
        return row


@pytest.fixture()
def add_gateway(session_factory, merchant):
    """Create a gateway plus the merchant binding; returns the gateway id."""

    def _add(
        code: str,
        *,
        priority: int = 1,
        fee_percentage: str = "0.02",
        fee_fixed: str = "0",
        provider: str = "scripted",
        currencies=("INR", "USD"),
        methods=("card", "upi"),
        active: bool = True,
        webhook_secret: str | None = "whsec_test",
        features: dict | None = None,
    ) -> str:
        with session_factory() as db:
            gateway = Gateway(
                gateway_code=code,
                name=code,
                provider=provider,
                status="active",
                supported_methods=list(methods),
                supported_currencies=list(currencies),
                credentials={},
                webhook_secret=webhook_secret,
                features=features or {},
            )
            db.add(gateway)
            db.flush()
            db.add(
                MerchantGateway(
                    merchant_id=merchant.id,
                    gateway_id=gateway.id,
                    is_active=active,
                    priority=priority,
                    fee_percentage=Decimal(fee_percentage),
                    fee_fixed=Decimal(fee_fixed),
                )
            )
            db.commit()
            return gateway.id

    return _add


@pytest.fixture()
def add_rule(session_factory, merchant):
    def _add(name: str, rule_type: str, conditions: dict, actions: dict, priority: int = 1, **fields) -> str:
        with session_factory() as db:
            rule = RoutingRuleRecord(
                merchant_id=merchant.id,
                name=name,
                rule_type=rule_type,
                priority=priority,
                conditions=conditions,
                actions=actions,
                **fields,
            )
            db.add(rule)
            db.commit()
            return rule.id

    return _add


@pytest.fixture()
def intake(merchant):
    def _request(ref: str = "order-1", amount: str = "500.00", currency: str = "INR", method: str = "upi", **extra):
        return TransactionCreateRequest(
            merchant_id=merchant.id,
            transaction_ref=ref,
            amount=Decimal(amount),
            currency=currency,
            payment_method=method,
            **extra,
        )

    return _request
