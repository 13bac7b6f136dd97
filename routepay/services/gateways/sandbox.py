"""In-process gateway simulator for local stacks.

Outcomes can be forced through `metadata["sandbox_outcome"]` or a merchant
reference prefix (`force-decline`, `force-timeout`, `force-pending`);
otherwise one is drawn from the configured weights.
"""

import asyncio
import random
from datetime import datetime, timezone
from typing import Mapping
from uuid import uuid4

from routepay.services.gateways.base import (
    GatewayConfig,
    NormalizedEvent,
    PaymentGateway,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    hmac_sha256_hex,
    load_event,
    signature_matches,
)

SIGNATURE_HEADER = "x-sandbox-signature"
OUTCOMES = ("success", "decline", "timeout", "pending")
DEFAULT_WEIGHTS = {"success": 0.85, "decline": 0.10, "timeout": 0.05, "pending": 0.0}


class SandboxGateway(PaymentGateway):
    provider = "sandbox"

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self._payments: dict[str, str] = {}

    def _outcome(self, request: PaymentRequest, config: GatewayConfig) -> str:
        forced = request.metadata.get("sandbox_outcome")
        if forced in OUTCOMES:
            return forced
        reference = request.merchant_reference.lower()
        for outcome in ("decline", "timeout", "pending"):
            if reference.startswith(f"force-{outcome}"):
                return outcome
        weights = {**DEFAULT_WEIGHTS, **config.features.get("outcome_weights", {})}
        return self._rng.choices(population=list(OUTCOMES), weights=[weights[o] for o in OUTCOMES], k=1)[0]

    async def process_payment(self, request: PaymentRequest, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        outcome = self._outcome(request, config)
        gateway_transaction_id = f"sbx_{uuid4().hex[:16]}"
        if outcome == "timeout":
            # Never answers within any sane orchestrator timeout.
            await asyncio.sleep(float(config.features.get("timeout_seconds", 3600)))
        if outcome == "decline":
            return PaymentResponse(
                success=False,
                status="failed",
                gateway_transaction_id=gateway_transaction_id,
                error_code="CARD_DECLINED",
                error_message="sandbox decline",
                raw={"id": gateway_transaction_id, "outcome": outcome},
            )
        if outcome == "pending":
            self._payments[gateway_transaction_id] = "pending"
            return PaymentResponse(
                success=True,
                status="pending",
                gateway_transaction_id=gateway_transaction_id,
                redirect_url=f"https://sandbox.routepay.local/authorize/{gateway_transaction_id}",
                raw={"id": gateway_transaction_id, "outcome": outcome},
            )
        self._payments[gateway_transaction_id] = "success"
        return PaymentResponse(
            success=True,
            status="success",
            gateway_transaction_id=gateway_transaction_id,
            raw={"id": gateway_transaction_id, "outcome": outcome},
        )

    async def process_refund(self, request: RefundRequest, config: GatewayConfig) -> RefundResponse:
        refund_id = f"sbx_rf_{uuid4().hex[:12]}"
        return RefundResponse(
            success=True,
            status="pending",
            gateway_refund_id=refund_id,
            refunded_amount=request.amount or 0,
            raw={"id": refund_id, "payment": request.gateway_transaction_id, "currency": request.currency},
        )

    async def check_status(self, gateway_transaction_id: str, config: GatewayConfig) -> PaymentResponse:
        status = self._payments.get(gateway_transaction_id, "pending")
        return PaymentResponse(
            success=status != "failed",
            status=status,
            gateway_transaction_id=gateway_transaction_id,
            raw={"id": gateway_transaction_id, "status": status},
        )

    async def verify_webhook_signature(
        self, payload: bytes, headers: Mapping[str, str], config: GatewayConfig
    ) -> bool:
        secret = self.require_webhook_secret(config)
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            return False
        return signature_matches(hmac_sha256_hex(secret, payload), signature)

    def parse_webhook_event(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        data = load_event(payload)
        created_at = data.get("created_at")
        timestamp = (
            datetime.fromtimestamp(created_at, tz=timezone.utc) if created_at else datetime.now(timezone.utc)
        )
        refund_amount = data.get("refund_amount")
        return NormalizedEvent(
            event_type=data.get("event", ""),
            gateway_transaction_id=data.get("transaction_id"),
            timestamp=timestamp,
            raw_data=data,
            refund_amount=refund_amount,
        )


def sign_payload(secret: str, payload: bytes) -> dict[str, str]:
    """Headers a sandbox webhook sender attaches; used by scripts and tests."""

    return {SIGNATURE_HEADER: hmac_sha256_hex(secret, payload)}
