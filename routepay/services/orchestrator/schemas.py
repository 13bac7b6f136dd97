"""API request/response schemas for orchestrator endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from routepay.services.gateways.base import BillingAddress

Strategy = Literal["default", "failover", "loadbalance"]
PaymentMethod = Literal["card", "bank_transfer", "upi", "wallet", "crypto"]


class TransactionCreateRequest(BaseModel):
    """Intake payload; `transaction_ref` is the merchant's idempotency key."""

    merchant_id: str = Field(min_length=1)
    transaction_ref: str = Field(min_length=1, max_length=100)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    payment_method: PaymentMethod
    customer_email: str | None = None
    customer_phone: str | None = None
    billing_address: BillingAddress | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProcessRequest(BaseModel):
    strategy: Strategy = "default"


class RefundCreateRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None


class ProcessResult(BaseModel):
    """Outcome of one orchestration run; always mirrors persisted state."""

    success: bool
    transaction_id: str
    status: str
    gateway_used: str | None = None
    gateway_transaction_id: str | None = None
    redirect_url: str | None = None
    attempts: int = 0
    error: str | None = None


class TransactionResponse(BaseModel):
    transaction_id: str
    transaction_ref: str
    merchant_id: str
    status: str
    amount: Decimal
    currency: str
    payment_method: str
    gateway_id: str | None = None
    gateway_transaction_id: str | None = None
    redirect_url: str | None = None
    fees: Decimal | None = None
    net_amount: Decimal | None = None
    error_message: str | None = None


class RefundResult(BaseModel):
    success: bool
    transaction_id: str
    status: str
    gateway_refund_id: str | None = None
    refunded_amount: Decimal = Decimal("0")
    error: str | None = None


class AttemptResponse(BaseModel):
    attempt_number: int
    gateway_id: str | None = None
    status: str
    processing_time_ms: int
    error_message: str | None = None
    created_at: datetime | None = None
