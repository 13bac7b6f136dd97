"""Gateway capability interface shared by every provider adapter.

The orchestrator and webhook handler only ever talk to `PaymentGateway`; each
provider module supplies one subclass.
"""

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, ClassVar, Literal, Mapping

import httpx
from pydantic import BaseModel, Field

from routepay.common.errors import ConfigurationError, GatewayCallError

# ISO 4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP"})

PAYMENT_METHODS = ("card", "bank_transfer", "upi", "wallet", "crypto")

# Normalized webhook event types.
PAYMENT_SUCCESS = "payment.success"
PAYMENT_FAILED = "payment.failed"
PAYMENT_PROCESSING = "payment.processing"
REFUND_PROCESSED = "refund.processed"
DISPUTE_CREATED = "dispute.created"


class BillingAddress(BaseModel):
    name: str | None = None
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None


class GatewayConfig(BaseModel):
    """Credentials and options for one configured gateway instance."""

    gateway_code: str
    provider: str
    credentials: dict[str, Any] = Field(default_factory=dict)
    webhook_secret: str | None = None
    features: dict[str, Any] = Field(default_factory=dict)
    api_endpoint: str | None = None
    merchant_gateway_id: str | None = None


class PaymentRequest(BaseModel):
    amount: Decimal
    currency: str
    payment_method: str
    merchant_reference: str
    customer_email: str | None = None
    customer_phone: str | None = None
    billing_address: BillingAddress | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentResponse(BaseModel):
    success: bool
    status: Literal["pending", "processing", "success", "failed"]
    gateway_transaction_id: str | None = None
    redirect_url: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    gateway_transaction_id: str
    currency: str
    amount: Decimal | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundResponse(BaseModel):
    success: bool
    status: Literal["pending", "success", "failed"]
    gateway_refund_id: str | None = None
    refunded_amount: Decimal = Decimal("0")
    error_message: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class NormalizedEvent(BaseModel):
    """Provider-neutral event; `refund_amount` is the cumulative amount refunded."""

    event_type: str
    gateway_transaction_id: str | None
    timestamp: datetime
    raw_data: dict[str, Any]
    refund_amount: Decimal | None = None


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int | str | None, currency: str) -> Decimal:
    if value is None:
        return Decimal("0")
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(value)
    return Decimal(value) / 100


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(expected: str, received: str) -> bool:
    """Constant-time comparison that tolerates arbitrary header text."""

    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8", errors="replace"))


def json_body(response: httpx.Response, provider: str) -> dict:
    """Decoded JSON object body; anything else is a retryable gateway error."""

    try:
        body = response.json()
    except ValueError as exc:
        raise GatewayCallError(
            f"{provider} returned a non-JSON body (HTTP {response.status_code})", code="INVALID_RESPONSE"
        ) from exc
    if not isinstance(body, dict):
        raise GatewayCallError(
            f"{provider} returned a non-object body (HTTP {response.status_code})", code="INVALID_RESPONSE"
        )
    return body


def load_event(payload: bytes) -> dict:
    event = json.loads(payload)
    if not isinstance(event, dict):
        raise ValueError("webhook payload is not a JSON object")
    return event


class PaymentGateway(ABC):
    """Uniform operations every provider adapter implements."""

    provider: ClassVar[str]
    required_credentials: ClassVar[tuple[str, ...]] = ()

    def validate_config(self, config: GatewayConfig) -> None:
        missing = [name for name in self.required_credentials if not config.credentials.get(name)]
        if missing:
            raise ConfigurationError(
                f"gateway {config.gateway_code} missing credentials: {', '.join(missing)}"
            )

    def require_webhook_secret(self, config: GatewayConfig) -> str:
        if not config.webhook_secret:
            raise ConfigurationError(f"gateway {config.gateway_code} has no webhook secret")
        return config.webhook_secret

    @abstractmethod
    async def process_payment(self, request: PaymentRequest, config: GatewayConfig) -> PaymentResponse:
        ...

    @abstractmethod
    async def process_refund(self, request: RefundRequest, config: GatewayConfig) -> RefundResponse:
        ...

    @abstractmethod
    async def check_status(self, gateway_transaction_id: str, config: GatewayConfig) -> PaymentResponse:
        ...

    @abstractmethod
    async def verify_webhook_signature(
        self, payload: bytes, headers: Mapping[str, str], config: GatewayConfig
    ) -> bool:
        """`headers` keys are lower-cased by the caller."""

    @abstractmethod
    def parse_webhook_event(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        ...
