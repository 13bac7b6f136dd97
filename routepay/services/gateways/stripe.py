"""Stripe adapter over the PaymentIntents REST API."""

import time
from datetime import datetime, timezone
from typing import Mapping

import httpx

from routepay.common.errors import GatewayCallError
from routepay.services.gateways.base import (
    DISPUTE_CREATED,
    PAYMENT_FAILED,
    PAYMENT_PROCESSING,
    PAYMENT_SUCCESS,
    REFUND_PROCESSED,
    GatewayConfig,
    NormalizedEvent,
    PaymentGateway,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    from_minor_units,
    hmac_sha256_hex,
    json_body,
    load_event,
    signature_matches,
    to_minor_units,
)

API_BASE = "https://api.stripe.com"
SIGNATURE_TOLERANCE_SECONDS = 300

STATUS_MAP = {
    "succeeded": "success",
    "processing": "processing",
    "requires_action": "pending",
    "requires_confirmation": "pending",
    "requires_payment_method": "pending",
    "requires_capture": "processing",
    "canceled": "failed",
}
EVENT_MAP = {
    "payment_intent.succeeded": PAYMENT_SUCCESS,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "payment_intent.processing": PAYMENT_PROCESSING,
    "charge.refunded": REFUND_PROCESSED,
    "charge.dispute.created": DISPUTE_CREATED,
}
ERROR_MAP = {
    "insufficient_funds": "INSUFFICIENT_FUNDS",
    "card_declined": "CARD_DECLINED",
    "expired_card": "EXPIRED_CARD",
    "incorrect_cvc": "INVALID_CVC",
    "invalid_number": "INVALID_CARD",
    "processing_error": "PROCESSING_ERROR",
    "rate_limit": "RATE_LIMITED",
}
METHOD_TYPES = {
    "card": ["card"],
    "bank_transfer": ["customer_balance"],
    "wallet": ["card"],
}


class StripeGateway(PaymentGateway):
    provider = "stripe"
    required_credentials = ("secret_key",)

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    def _headers(self, config: GatewayConfig, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {config.credentials['secret_key']}"}
        if config.merchant_gateway_id:
            headers["Stripe-Account"] = config.merchant_gateway_id
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, config: GatewayConfig, **kwargs) -> httpx.Response:
        base = config.api_endpoint or API_BASE
        try:
            return await self.client.request(method, f"{base}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayCallError(f"stripe request failed: {exc}", code="NETWORK_ERROR") from exc

    def _map_intent(self, intent: dict) -> PaymentResponse:
        status = STATUS_MAP.get(intent.get("status", ""), "failed")
        redirect = (intent.get("next_action") or {}).get("redirect_to_url", {}).get("url")
        if status == "failed":
            error = intent.get("last_payment_error") or {}
            return PaymentResponse(
                success=False,
                status="failed",
                gateway_transaction_id=intent.get("id"),
                error_code=ERROR_MAP.get(error.get("code", ""), "UNKNOWN_ERROR"),
                error_message=error.get("message") or "payment intent canceled",
                raw=intent,
            )
        return PaymentResponse(
            success=True,
            status=status,
            gateway_transaction_id=intent.get("id"),
            redirect_url=redirect,
            raw=intent,
        )

    def _error_response(self, response: httpx.Response) -> PaymentResponse:
        body = json_body(response, self.provider)
        error = body.get("error", {})
        code = error.get("decline_code") or error.get("code") or ""
        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayCallError(
                f"stripe error {response.status_code}: {error.get('message', '')}",
                code=ERROR_MAP.get(code, "GATEWAY_ERROR"),
            )
        return PaymentResponse(
            success=False,
            status="failed",
            gateway_transaction_id=(error.get("payment_intent") or {}).get("id"),
            error_code=ERROR_MAP.get(code, "UNKNOWN_ERROR"),
            error_message=error.get("message"),
            raw=body,
        )

    async def process_payment(self, request: PaymentRequest, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        form = {
            "amount": to_minor_units(request.amount, request.currency),
            "currency": request.currency.lower(),
            "confirm": "true",
            "metadata[merchant_reference]": request.merchant_reference,
        }
        for index, method_type in enumerate(METHOD_TYPES.get(request.payment_method, ["card"])):
            form[f"payment_method_types[{index}]"] = method_type
        if request.customer_email:
            form["receipt_email"] = request.customer_email
        for key, value in request.metadata.items():
            form[f"metadata[{key}]"] = str(value)
        response = await self._request(
            "POST",
            "/v1/payment_intents",
            config,
            data=form,
            headers=self._headers(config, idempotency_key=request.merchant_reference),
        )
        if response.status_code >= 400:
            return self._error_response(response)
        return self._map_intent(json_body(response, self.provider))

    async def process_refund(self, request: RefundRequest, config: GatewayConfig) -> RefundResponse:
        self.validate_config(config)
        form: dict[str, str | int] = {"payment_intent": request.gateway_transaction_id}
        if request.amount is not None:
            form["amount"] = to_minor_units(request.amount, request.currency)
        if request.reason:
            form["metadata[reason]"] = request.reason
        response = await self._request("POST", "/v1/refunds", config, data=form, headers=self._headers(config))
        body = json_body(response, self.provider)
        if response.status_code >= 400:
            return RefundResponse(
                success=False,
                status="failed",
                error_message=body.get("error", {}).get("message"),
                raw=body,
            )
        return RefundResponse(
            success=True,
            status="success" if body.get("status") == "succeeded" else "pending",
            gateway_refund_id=body.get("id"),
            refunded_amount=from_minor_units(body.get("amount"), request.currency),
            raw=body,
        )

    async def check_status(self, gateway_transaction_id: str, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        response = await self._request(
            "GET", f"/v1/payment_intents/{gateway_transaction_id}", config, headers=self._headers(config)
        )
        if response.status_code >= 400:
            return self._error_response(response)
        return self._map_intent(json_body(response, self.provider))

    async def verify_webhook_signature(
        self, payload: bytes, headers: Mapping[str, str], config: GatewayConfig
    ) -> bool:
        secret = self.require_webhook_secret(config)
        header = headers.get("stripe-signature")
        if not header:
            return False
        parts = [item.split("=", 1) for item in header.split(",") if "=" in item]
        timestamps = [value for key, value in parts if key == "t"]
        signatures = [value for key, value in parts if key == "v1"]
        if not timestamps or not signatures or not timestamps[0].isdigit():
            return False
        if abs(time.time() - int(timestamps[0])) > SIGNATURE_TOLERANCE_SECONDS:
            return False
        expected = hmac_sha256_hex(secret, timestamps[0].encode("utf-8") + b"." + payload)
        return any(signature_matches(expected, candidate) for candidate in signatures)

    def parse_webhook_event(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        event = load_event(payload)
        obj = event.get("data", {}).get("object", {})
        event_type = event.get("type", "")
        if event_type.startswith("charge."):
            gateway_transaction_id = obj.get("payment_intent") or obj.get("id")
        else:
            gateway_transaction_id = obj.get("id")
        refund_amount = None
        if event_type == "charge.refunded":
            refund_amount = from_minor_units(obj.get("amount_refunded"), obj.get("currency", "usd"))
        created = event.get("created")
        return NormalizedEvent(
            event_type=EVENT_MAP.get(event_type, event_type),
            gateway_transaction_id=gateway_transaction_id,
            timestamp=datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.now(timezone.utc),
            raw_data=event,
            refund_amount=refund_amount,
        )
