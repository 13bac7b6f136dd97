"""Razorpay adapter over the Orders/Payments REST API.

Payments are created as orders; the order id is what the transaction stores,
and webhook events are resolved back to it through `payment.entity.order_id`.
"""

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

API_BASE = "https://api.razorpay.com"

ORDER_STATUS_MAP = {"created": "pending", "attempted": "processing", "paid": "success"}
PAYMENT_STATUS_MAP = {
    "created": "pending",
    "authorized": "processing",
    "captured": "success",
    "refunded": "success",
    "failed": "failed",
}
EVENT_MAP = {
    "payment.captured": PAYMENT_SUCCESS,
    "order.paid": PAYMENT_SUCCESS,
    "payment.failed": PAYMENT_FAILED,
    "payment.authorized": PAYMENT_PROCESSING,
    "refund.processed": REFUND_PROCESSED,
    "payment.dispute.created": DISPUTE_CREATED,
    "dispute.created": DISPUTE_CREATED,
}
ERROR_MAP = {
    "BAD_REQUEST_ERROR": "INVALID_REQUEST",
    "GATEWAY_ERROR": "GATEWAY_ERROR",
    "SERVER_ERROR": "PROCESSING_ERROR",
}


class RazorpayGateway(PaymentGateway):
    provider = "razorpay"
    required_credentials = ("key_id", "key_secret")

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def _request(self, method: str, path: str, config: GatewayConfig, **kwargs) -> httpx.Response:
        base = config.api_endpoint or API_BASE
        auth = (config.credentials["key_id"], config.credentials["key_secret"])
        try:
            response = await self.client.request(method, f"{base}{path}", auth=auth, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayCallError(f"razorpay request failed: {exc}", code="NETWORK_ERROR") from exc
        if response.status_code >= 500:
            raise GatewayCallError(f"razorpay error {response.status_code}", code="GATEWAY_ERROR")
        return response

    def _failed(self, body: dict, gateway_transaction_id: str | None = None) -> PaymentResponse:
        error = body.get("error", {})
        return PaymentResponse(
            success=False,
            status="failed",
            gateway_transaction_id=gateway_transaction_id,
            error_code=ERROR_MAP.get(error.get("code", ""), "UNKNOWN_ERROR"),
            error_message=error.get("description") or "razorpay request rejected",
            raw=body,
        )

    async def process_payment(self, request: PaymentRequest, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        notes = {key: str(value) for key, value in request.metadata.items()}
        if request.customer_email:
            notes["customer_email"] = request.customer_email
        if request.customer_phone:
            notes["customer_phone"] = request.customer_phone
        order = {
            "amount": to_minor_units(request.amount, request.currency),
            "currency": request.currency,
            "receipt": request.merchant_reference[:40],
            "notes": notes,
        }
        response = await self._request("POST", "/v1/orders", config, json=order)
        body = json_body(response, self.provider)
        if response.status_code >= 400:
            return self._failed(body)
        # Orders are confirmed asynchronously through `payment.captured`/`order.paid`.
        return PaymentResponse(
            success=True,
            status=ORDER_STATUS_MAP.get(body.get("status", ""), "pending"),
            gateway_transaction_id=body.get("id"),
            raw=body,
        )

    async def _captured_payment_id(self, order_id: str, config: GatewayConfig) -> str | None:
        response = await self._request("GET", f"/v1/orders/{order_id}/payments", config)
        for payment in json_body(response, self.provider).get("items", []):
            if payment.get("status") == "captured":
                return payment.get("id")
        return None

    async def process_refund(self, request: RefundRequest, config: GatewayConfig) -> RefundResponse:
        self.validate_config(config)
        payment_id = request.gateway_transaction_id
        if payment_id.startswith("order_"):
            payment_id = await self._captured_payment_id(payment_id, config)
            if payment_id is None:
                return RefundResponse(success=False, status="failed", error_message="no captured payment for order")
        body: dict = {"notes": {"reason": request.reason or "merchant request"}}
        if request.amount is not None:
            body["amount"] = to_minor_units(request.amount, request.currency)
        response = await self._request("POST", f"/v1/payments/{payment_id}/refund", config, json=body)
        refund = json_body(response, self.provider)
        if response.status_code >= 400:
            return RefundResponse(
                success=False,
                status="failed",
                error_message=refund.get("error", {}).get("description"),
                raw=refund,
            )
        return RefundResponse(
            success=True,
            status="success" if refund.get("status") == "processed" else "pending",
            gateway_refund_id=refund.get("id"),
            refunded_amount=from_minor_units(refund.get("amount"), request.currency),
            raw=refund,
        )

    async def check_status(self, gateway_transaction_id: str, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        if gateway_transaction_id.startswith("order_"):
            path, status_map = f"/v1/orders/{gateway_transaction_id}", ORDER_STATUS_MAP
        else:
            path, status_map = f"/v1/payments/{gateway_transaction_id}", PAYMENT_STATUS_MAP
        response = await self._request("GET", path, config)
        body = json_body(response, self.provider)
        if response.status_code >= 400:
            return self._failed(body, gateway_transaction_id)
        status = status_map.get(body.get("status", ""), "failed")
        if status == "failed":
            return self._failed(
                {"error": {"description": body.get("error_description") or "payment failed"}},
                gateway_transaction_id,
            )
        return PaymentResponse(success=True, status=status, gateway_transaction_id=gateway_transaction_id, raw=body)

    async def verify_webhook_signature(
        self, payload: bytes, headers: Mapping[str, str], config: GatewayConfig
    ) -> bool:
        secret = self.require_webhook_secret(config)
        signature = headers.get("x-razorpay-signature")
        if not signature:
            return False
        return signature_matches(hmac_sha256_hex(secret, payload), signature)

    def parse_webhook_event(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        event = load_event(payload)
        entities = event.get("payload", {})
        payment = entities.get("payment", {}).get("entity", {})
        order = entities.get("order", {}).get("entity", {})
        refund = entities.get("refund", {}).get("entity", {})
        gateway_transaction_id = payment.get("order_id") or order.get("id") or payment.get("id") or refund.get(
            "payment_id"
        )
        refund_amount = None
        if refund:
            # Cumulative for the payment when the payment entity rides along.
            refunded = payment.get("amount_refunded") or refund.get("amount")
            refund_amount = from_minor_units(refunded, refund.get("currency", "INR"))
        created_at = event.get("created_at")
        return NormalizedEvent(
            event_type=EVENT_MAP.get(event.get("event", ""), event.get("event", "")),
            gateway_transaction_id=gateway_transaction_id,
            timestamp=datetime.fromtimestamp(created_at, tz=timezone.utc) if created_at else datetime.now(timezone.utc),
            raw_data=event,
            refund_amount=refund_amount,
        )
