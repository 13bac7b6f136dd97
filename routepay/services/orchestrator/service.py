"""Transaction orchestration.

Drives one transaction from `pending` through routing and the gateway call to
a persisted outcome. The `pending -> processing` claim is a conditional update,
so concurrent triggers for the same transaction resolve to a single writer.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from routepay.common.config import settings
from routepay.common.errors import (
    AlreadyProcessed,
    ConcurrentUpdate,
    ConfigurationError,
    GatewayCallError,
    InvalidRefund,
    RoutingError,
    TransactionNotFound,
    UnknownMerchant,
)
from routepay.common.events import merchant_notification
from routepay.common.logging import log_context, logger
from routepay.common.metrics import (
    already_processed_total,
    failover_total,
    gateway_call_seconds,
    health_filter_bypassed_total,
    process_requests_total,
    routing_decisions_total,
    routing_failures_total,
    transaction_terminal_total,
)
from routepay.common.state_machine import FAILED, PENDING, PROCESSING, SUCCESS
from routepay.common.tracing import traced
from routepay.services.gateways.base import PaymentRequest, PaymentResponse, RefundRequest
from routepay.services.gateways.registry import GatewayRegistry
from routepay.services.orchestrator.models import Transaction
from routepay.services.orchestrator.repository import Repository
from routepay.services.orchestrator.schemas import ProcessResult, RefundResult, TransactionCreateRequest
from routepay.services.routing.engine import HealthPolicy, pick_weighted, select_gateway
from routepay.services.routing.schemas import CandidateGateway, GatewaySelection, RoutingTransaction

STRATEGIES = ("default", "failover", "loadbalance")
CENT = Decimal("0.01")


@dataclass
class AttemptOutcome:
    candidate: CandidateGateway
    response: PaymentResponse | None = None
    error: str | None = None
    fatal: bool = False

    @property
    def accepted(self) -> bool:
        return self.response is not None and self.response.success


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionOrchestrator:
    """Owns routing, gateway dispatch and the orchestrator side of the state machine."""

    def __init__(
        self,
        repository: Repository,
        registry: GatewayRegistry,
        *,
        timeout_seconds: float | None = None,
        policy: HealthPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        service_name: str = "orchestrator",
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.gateway_timeout_seconds
        self.policy = policy or HealthPolicy.from_settings()
        self.clock = clock
        self.service_name = service_name

    def create_transaction(self, req: TransactionCreateRequest) -> Transaction:
        """Create a `pending` transaction once per `(merchant_id, transaction_ref)`."""

        if self.repository.get_merchant(req.merchant_id) is None:
            raise UnknownMerchant(f"merchant {req.merchant_id} not found")
        transaction, created = self.repository.create_transaction(
            merchant_id=req.merchant_id,
            transaction_ref=req.transaction_ref,
            amount=req.amount,
            currency=req.currency.upper(),
            payment_method=req.payment_method,
            customer_email=req.customer_email,
            customer_phone=req.customer_phone,
            billing_address=req.billing_address.model_dump() if req.billing_address else None,
            extra=req.metadata,
        )
        if created:
            logger.info(
                "transaction_created transaction_id=%s merchant_id=%s ref=%s",
                transaction.id,
                transaction.merchant_id,
                transaction.transaction_ref,
            )
        else:
            logger.info("transaction_intake_replayed transaction_id=%s ref=%s", transaction.id, req.transaction_ref)
        return transaction

    async def process(self, transaction_id: str, strategy: str = "default") -> ProcessResult:
        """Route and charge a `pending` transaction.

        Raises `AlreadyProcessed` when the transaction is not `pending` or
        another caller claimed it first. Repository errors propagate; every
        other failure ends in a persisted `failed` status.
        """

        if strategy not in STRATEGIES:
            raise ValueError(f"unknown strategy {strategy!r}")
        process_requests_total.labels(service=self.service_name, strategy=strategy).inc()
        with log_context(transaction_id=transaction_id):
            transaction = self._claim(transaction_id)
            with traced("orchestrator.process", transaction_id=transaction_id, strategy=strategy) as span:
                try:
                    result = await self._route(transaction, strategy)
                except SQLAlchemyError:
                    raise
                except Exception as exc:
                    logger.exception("orchestration_crashed transaction_id=%s error=%s", transaction_id, exc)
                    result = self._fail(transaction, f"internal error: {exc}", attempts=0)
                span.set_attribute("routepay.status", result.status)
                return result

    def _claim(self, transaction_id: str) -> Transaction:
        transaction = self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"transaction {transaction_id} not found")
        if transaction.status != PENDING:
            already_processed_total.labels(service=self.service_name).inc()
            raise AlreadyProcessed(transaction_id, transaction.status)
        try:
            claimed = self.repository.compare_and_set_status(
                transaction_id, PENDING, PROCESSING, reason="orchestration_started"
            )
        except ConcurrentUpdate:
            already_processed_total.labels(service=self.service_name).inc()
            current = self.repository.get_transaction(transaction_id)
            raise AlreadyProcessed(transaction_id, current.status if current else "unknown") from None
        logger.info("transaction_claimed transaction_id=%s", transaction_id)
        return claimed

    async def _route(self, transaction: Transaction, strategy: str) -> ProcessResult:
        now = self.clock()
        candidates = self.repository.list_candidate_gateways(transaction.merchant_id)
        rules = self.repository.list_routing_rules(transaction.merchant_id)
        health = self.repository.latest_health_snapshots(
            [c.gateway_id for c in candidates],
            since=now - timedelta(minutes=settings.health_window_minutes),
        )
        routing_tx = RoutingTransaction(
            transaction_id=transaction.id,
            amount=Decimal(transaction.amount),
            currency=transaction.currency,
            payment_method=transaction.payment_method,
        )
        attempted: list[str] = []
        attempt_number = len(self.repository.list_routing_attempts(transaction.id))
        last: AttemptOutcome | None = None

        while True:
            try:
                selection = select_gateway(
                    routing_tx, candidates, health, rules, now=now, exclude=attempted, policy=self.policy
                )
            except RoutingError as exc:
                if last is not None:
                    logger.info("failover_exhausted transaction_id=%s attempts=%s", transaction.id, len(attempted))
                    break
                routing_failures_total.labels(service=self.service_name, reason=exc.code).inc()
                logger.warning("routing_failed transaction_id=%s code=%s error=%s", transaction.id, exc.code, exc)
                # No gateway was chosen, so the attempt row carries no gateway_id.
                self.repository.add_routing_attempt(
                    transaction_id=transaction.id,
                    gateway_id=None,
                    attempt_number=attempt_number + 1,
                    status="failed",
                    request_payload={"routing": {"error_code": exc.code, "candidates": len(candidates)}},
                    error_message=f"{exc.code}: {exc}",
                    processing_time_ms=0,
                )
                return self._fail(transaction, str(exc), attempts=0)

            if selection.health_filter_bypassed:
                health_filter_bypassed_total.labels(service=self.service_name).inc()
                logger.warning("health_filter_bypassed transaction_id=%s", transaction.id)
            candidate = selection.ranked[0].candidate
            if strategy == "loadbalance":
                candidate = pick_weighted(selection, transaction.id).candidate
            routing_decisions_total.labels(service=self.service_name, gateway=candidate.gateway_code).inc()
            logger.info(
                "gateway_selected transaction_id=%s gateway=%s score=%s reason=%s",
                transaction.id,
                candidate.gateway_code,
                selection.score,
                selection.reason,
            )

            attempt_number += 1
            attempted.append(candidate.gateway_id)
            last = await self._attempt(transaction, candidate, selection, attempt_number)
            if last.accepted:
                return self._complete(transaction, last, attempts=len(attempted))
            if last.fatal or strategy != "failover":
                break
            failover_total.labels(service=self.service_name).inc()
            logger.info(
                "failover transaction_id=%s from_gateway=%s error=%s",
                transaction.id,
                candidate.gateway_code,
                last.error,
            )

        return self._fail(transaction, last.error or "gateway declined", attempts=len(attempted), gateway=last.candidate)

    async def _attempt(
        self,
        transaction: Transaction,
        candidate: CandidateGateway,
        selection: GatewaySelection,
        attempt_number: int,
    ) -> AttemptOutcome:
        """Call one gateway once and record the attempt whatever happens."""

        request = PaymentRequest(
            amount=Decimal(transaction.amount),
            currency=transaction.currency,
            payment_method=transaction.payment_method,
            merchant_reference=transaction.transaction_ref,
            customer_email=transaction.customer_email,
            customer_phone=transaction.customer_phone,
            billing_address=transaction.billing_address,
            metadata=transaction.extra or {},
        )
        outcome = AttemptOutcome(candidate=candidate)
        started = time.perf_counter()
        with log_context(gateway_code=candidate.gateway_code), traced(
            "gateway.process_payment", gateway=candidate.gateway_code, attempt=attempt_number
        ) as span:
            try:
                gateway = self.registry.get(candidate.provider)
                config = self.repository.get_gateway_config(candidate.gateway_id, transaction.merchant_id)
                outcome.response = await asyncio.wait_for(
                    gateway.process_payment(request, config), timeout=self.timeout_seconds
                )
                if not outcome.response.success:
                    outcome.error = outcome.response.error_message or outcome.response.error_code or "gateway declined"
            except asyncio.TimeoutError:
                outcome.error = f"gateway call timed out after {self.timeout_seconds}s"
            except GatewayCallError as exc:
                outcome.error = f"{exc.code}: {exc}"
                outcome.fatal = not exc.retryable
            except ConfigurationError as exc:
                outcome.error = str(exc)
                outcome.fatal = True
            except SQLAlchemyError:
                raise
            except Exception as exc:
                logger.exception("gateway_adapter_error gateway=%s error=%s", candidate.gateway_code, exc)
                outcome.error = f"unexpected gateway error: {exc}"
            if outcome.error:
                span.set_attribute("routepay.error", outcome.error)
        elapsed = time.perf_counter() - started

        if outcome.accepted:
            status = "success" if outcome.response.status == SUCCESS else "pending"
        else:
            status = "failed"
        gateway_call_seconds.labels(
            service=self.service_name, gateway=candidate.gateway_code, outcome=status
        ).observe(elapsed)
        self.repository.add_routing_attempt(
            transaction_id=transaction.id,
            gateway_id=candidate.gateway_id,
            attempt_number=attempt_number,
            status=status,
            request_payload={
                "request": request.model_dump(mode="json"),
                "gateway_code": candidate.gateway_code,
                "routing": selection.audit_payload(),
            },
            response_payload=outcome.response.model_dump(mode="json") if outcome.response else None,
            error_message=outcome.error,
            processing_time_ms=int(elapsed * 1000),
        )
        logger.info(
            "gateway_attempt transaction_id=%s attempt=%s gateway=%s status=%s latency_ms=%s error=%s",
            transaction.id,
            attempt_number,
            candidate.gateway_code,
            status,
            int(elapsed * 1000),
            outcome.error,
        )
        return outcome

    def _complete(self, transaction: Transaction, outcome: AttemptOutcome, attempts: int) -> ProcessResult:
        response = outcome.response
        amount = Decimal(transaction.amount)
        fees = outcome.candidate.fee_for(amount).quantize(CENT)
        patch = {
            "gateway_id": outcome.candidate.gateway_id,
            "gateway_transaction_id": response.gateway_transaction_id,
            "gateway_response": response.raw,
            "redirect_url": response.redirect_url,
            "fees": fees,
            "net_amount": amount - fees,
            "error_message": None,
        }
        # Redirect/async flows stay `processing` until the gateway's webhook lands.
        next_status = SUCCESS if response.status == SUCCESS else PROCESSING
        outbox = ()
        if next_status == SUCCESS:
            outbox = (
                merchant_notification(
                    transaction, SUCCESS, "orchestration", gateway_transaction_id=response.gateway_transaction_id
                ),
            )
        try:
            stored = self.repository.compare_and_set_status(
                transaction.id,
                PROCESSING,
                next_status,
                patch,
                reason="gateway_success" if next_status == SUCCESS else "awaiting_confirmation",
                outbox=outbox,
            )
        except ConcurrentUpdate:
            logger.warning("completion_conflict transaction_id=%s", transaction.id)
            return self._result_from_store(transaction.id, attempts)
        if next_status == SUCCESS:
            transaction_terminal_total.labels(service=self.service_name, status=SUCCESS, source="orchestrator").inc()
        return ProcessResult(
            success=True,
            transaction_id=stored.id,
            status=stored.status,
            gateway_used=outcome.candidate.gateway_code,
            gateway_transaction_id=stored.gateway_transaction_id,
            redirect_url=stored.redirect_url,
            attempts=attempts,
        )

    def _fail(
        self,
        transaction: Transaction,
        error: str,
        attempts: int,
        gateway: CandidateGateway | None = None,
    ) -> ProcessResult:
        patch = {"error_message": error}
        if gateway is not None:
            patch["gateway_id"] = gateway.gateway_id
        try:
            stored = self.repository.compare_and_set_status(
                transaction.id,
                PROCESSING,
                FAILED,
                patch,
                reason="orchestration_failed",
                outbox=(merchant_notification(transaction, FAILED, "orchestration"),),
            )
        except ConcurrentUpdate:
            logger.warning("failure_conflict transaction_id=%s", transaction.id)
            return self._result_from_store(transaction.id, attempts)
        transaction_terminal_total.labels(service=self.service_name, status=FAILED, source="orchestrator").inc()
        logger.info("transaction_failed transaction_id=%s error=%s", transaction.id, error)
        return ProcessResult(
            success=False,
            transaction_id=stored.id,
            status=stored.status,
            gateway_used=gateway.gateway_code if gateway else None,
            attempts=attempts,
            error=error,
        )

    def _result_from_store(self, transaction_id: str, attempts: int) -> ProcessResult:
        stored = self.repository.get_transaction(transaction_id)
        return ProcessResult(
            success=stored.status in (SUCCESS, PROCESSING),
            transaction_id=stored.id,
            status=stored.status,
            gateway_transaction_id=stored.gateway_transaction_id,
            redirect_url=stored.redirect_url,
            attempts=attempts,
            error=stored.error_message,
        )

    async def refund(
        self, transaction_id: str, amount: Decimal | None = None, reason: str | None = None
    ) -> RefundResult:
        """Ask the original gateway for a (partial) refund.

        The status moves to `refunded` only when the gateway's refund webhook
        arrives.
        """

        transaction = self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"transaction {transaction_id} not found")
        if transaction.status != SUCCESS:
            raise InvalidRefund(f"cannot refund a {transaction.status} transaction")
        if not transaction.gateway_id or not transaction.gateway_transaction_id:
            raise InvalidRefund(f"transaction {transaction_id} has no gateway reference")
        # `refunded_amount` is the cumulative total confirmed by refund webhooks.
        refunded = Decimal((transaction.extra or {}).get("refunded_amount", "0"))
        refundable = Decimal(transaction.amount) - refunded
        if amount is not None and amount > refundable:
            raise InvalidRefund(f"refund {amount} exceeds refundable amount {refundable}")

        config = self.repository.get_gateway_config(transaction.gateway_id, transaction.merchant_id)
        gateway = self.registry.get(config.provider)
        request = RefundRequest(
            gateway_transaction_id=transaction.gateway_transaction_id,
            currency=transaction.currency,
            amount=amount,
            reason=reason,
        )
        try:
            response = await asyncio.wait_for(gateway.process_refund(request, config), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise GatewayCallError(
                f"refund call timed out after {self.timeout_seconds}s", code="TIMEOUT"
            ) from exc
        self.repository.add_audit_log(
            "transaction",
            transaction.id,
            "refund_requested",
            {
                "amount": str(amount) if amount is not None else None,
                "currency": transaction.currency,
                "reason": reason,
                "success": response.success,
                "refund_status": response.status,
                "gateway_refund_id": response.gateway_refund_id,
            },
        )
        logger.info(
            "refund_requested transaction_id=%s success=%s refund_status=%s",
            transaction.id,
            response.success,
            response.status,
        )
        return RefundResult(
            success=response.success,
            transaction_id=transaction.id,
            status=transaction.status,
            gateway_refund_id=response.gateway_refund_id,
            refunded_amount=response.refunded_amount,
            error=response.error_message,
        )

    async def refresh_status(self, transaction_id: str) -> ProcessResult:
        """Poll the gateway for a `processing` transaction and settle a terminal answer."""

        transaction = self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"transaction {transaction_id} not found")
        if transaction.status != PROCESSING or not transaction.gateway_transaction_id:
            return self._result_from_store(transaction_id, attempts=0)

        config = self.repository.get_gateway_config(transaction.gateway_id, transaction.merchant_id)
        gateway = self.registry.get(config.provider)
        response = await asyncio.wait_for(
            gateway.check_status(transaction.gateway_transaction_id, config), timeout=self.timeout_seconds
        )
        if response.status not in (SUCCESS, FAILED):
            logger.info("status_unchanged transaction_id=%s gateway_status=%s", transaction_id, response.status)
            return self._result_from_store(transaction_id, attempts=0)

        patch = {"gateway_response": response.raw}
        if response.status == FAILED:
            patch["error_message"] = response.error_message or "gateway reported failure"
        try:
            self.repository.compare_and_set_status(
                transaction_id,
                PROCESSING,
                response.status,
                patch,
                reason="status_check",
                source="reconciliation",
                outbox=(merchant_notification(transaction, response.status, "status_check"),),
            )
            transaction_terminal_total.labels(
                service=self.service_name, status=response.status, source="reconciliation"
            ).inc()
        except ConcurrentUpdate:
            logger.info("status_check_conflict transaction_id=%s", transaction_id)
        return self._result_from_store(transaction_id, attempts=0)
