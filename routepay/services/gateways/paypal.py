"""PayPal adapter over the Orders v2 REST API."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping

import httpx

from routepay.common.errors import GatewayCallError
from routepay.services.gateways.base import (
    DISPUTE_CREATED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESS,
    REFUND_PROCESSED,
    GatewayConfig,
    NormalizedEvent,
    PaymentGateway,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    json_body,
    load_event,
)

API_BASE = "https://api-m.paypal.com"

ORDER_STATUS_MAP = {
    "CREATED": "pending",
    "PAYER_ACTION_REQUIRED": "pending",
    "SAVED": "pending",
    "APPROVED": "processing",
    "COMPLETED": "success",
    "VOIDED": "failed",
}
EVENT_MAP = {
    "PAYMENT.CAPTURE.COMPLETED": PAYMENT_SUCCESS,
    "PAYMENT.CAPTURE.DENIED": PAYMENT_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": REFUND_PROCESSED,
    "CUSTOMER.DISPUTE.CREATED": DISPUTE_CREATED,
}
TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


class PayPalGateway(PaymentGateway):
    provider = "paypal"
    required_credentials = ("client_id", "client_secret")

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def _access_token(self, config: GatewayConfig) -> str:
        base = config.api_endpoint or API_BASE
        try:
            response = await self.client.post(
                f"{base}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(config.credentials["client_id"], config.credentials["client_secret"]),
            )
        except httpx.HTTPError as exc:
            raise GatewayCallError(f"paypal auth failed: {exc}", code="NETWORK_ERROR") from exc
        if response.status_code >= 400:
            raise GatewayCallError(
                f"paypal auth rejected ({response.status_code})", code="AUTHENTICATION_ERROR", retryable=False
            )
        token = json_body(response, self.provider).get("access_token")
        if not token:
            raise GatewayCallError("paypal auth response carried no access token", code="INVALID_RESPONSE")
        return token

    async def _request(self, method: str, path: str, config: GatewayConfig, **kwargs) -> httpx.Response:
        base = config.api_endpoint or API_BASE
        token = await self._access_token(config)
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        try:
            response = await self.client.request(method, f"{base}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayCallError(f"paypal request failed: {exc}", code="NETWORK_ERROR") from exc
        if response.status_code >= 500:
            raise GatewayCallError(f"paypal error {response.status_code}", code="GATEWAY_ERROR")
        return response

    def _map_order(self, order: dict) -> PaymentResponse:
        status = ORDER_STATUS_MAP.get(order.get("status", ""), "failed")
        if status == "failed":
            return PaymentResponse(
                success=False,
                status="failed",
                gateway_transaction_id=order.get("id"),
                error_code="PROCESSING_ERROR",
                error_message=f"order {order.get('status', 'unknown').lower()}",
                raw=order,
            )
        approve = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return PaymentResponse(
            success=True,
            status=status,
            gateway_transaction_id=order.get("id"),
            redirect_url=approve,
            raw=order,
        )

    async def process_payment(self, request: PaymentRequest, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.merchant_reference,
                    "custom_id": request.merchant_reference,
                    "amount": {"currency_code": request.currency, "value": _money(request.amount)},
                }
            ],
        }
        response = await self._request(
            "POST",
            "/v2/checkout/orders",
            config,
            json=body,
            headers={"PayPal-Request-Id": request.merchant_reference},
        )
        payload = json_body(response, self.provider)
        if response.status_code >= 400:
            return PaymentResponse(
                success=False,
                status="failed",
                error_code="INVALID_REQUEST",
                error_message=payload.get("message"),
                raw=payload,
            )
        return self._map_order(payload)

    async def process_refund(self, request: RefundRequest, config: GatewayConfig) -> RefundResponse:
        self.validate_config(config)
        order = json_body(
            await self._request("GET", f"/v2/checkout/orders/{request.gateway_transaction_id}", config), self.provider
        )
        captures = [
            capture
            for unit in order.get("purchase_units", [])
            for capture in unit.get("payments", {}).get("captures", [])
        ]
        if not captures:
            return RefundResponse(success=False, status="failed", error_message="order has no capture", raw=order)
        body: dict = {"note_to_payer": request.reason or "Refund"}
        if request.amount is not None:
            body["amount"] = {"currency_code": request.currency, "value": _money(request.amount)}
        response = await self._request("POST", f"/v2/payments/captures/{captures[0]['id']}/refund", config, json=body)
        refund = json_body(response, self.provider)
        if response.status_code >= 400:
            return RefundResponse(success=False, status="failed", error_message=refund.get("message"), raw=refund)
        amount = refund.get("amount", {}).get("value") or (request.amount and _money(request.amount)) or "0"
        return RefundResponse(
            success=True,
            status="success" if refund.get("status") == "COMPLETED" else "pending",
            gateway_refund_id=refund.get("id"),
            refunded_amount=Decimal(amount),
            raw=refund,
        )

    async def check_status(self, gateway_transaction_id: str, config: GatewayConfig) -> PaymentResponse:
        self.validate_config(config)
        response = await self._request("GET", f"/v2/checkout/orders/{gateway_transaction_id}", config)
        if response.status_code >= 400:
            return PaymentResponse(
                success=False,
                status="failed",
                gateway_transaction_id=gateway_transaction_id,
                error_message=json_body(response, self.provider).get("message"),
            )
        return self._map_order(json_body(response, self.provider))

    async def verify_webhook_signature(
        self, payload: bytes, headers: Mapping[str, str], config: GatewayConfig
    ) -> bool:
        # PayPal signs with certificates; verification is delegated to its API.
        webhook_id = self.require_webhook_secret(config)
        self.validate_config(config)
        fields = {name: headers.get(header) for name, header in TRANSMISSION_HEADERS.items()}
        if not all(fields.values()):
            return False
        try:
            webhook_event = load_event(payload)
        except ValueError:
            return False
        response = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            config,
            json={**fields, "webhook_id": webhook_id, "webhook_event": webhook_event},
        )
        if response.status_code >= 400:
            return False
        return json_body(response, self.provider).get("verification_status") == "SUCCESS"

    def parse_webhook_event(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        event = load_event(payload)
        resource = event.get("resource", {})
        related = resource.get("supplementary_data", {}).get("related_ids", {})
        event_type = event.get("event_type", "")
        refund_amount = None
        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            total = resource.get("seller_payable_breakdown", {}).get("total_refunded_amount") or resource.get(
                "amount", {}
            )
            refund_amount = Decimal(total.get("value", "0"))
        created = event.get("create_time")
        timestamp = (
            datetime.fromisoformat(created.replace("Z", "+00:00")) if created else datetime.now(timezone.utc)
        )
        return NormalizedEvent(
            event_type=EVENT_MAP.get(event_type, event_type),
            gateway_transaction_id=related.get("order_id") or resource.get("id"),
            timestamp=timestamp,
            raw_data=event,
            refund_amount=refund_amount,
        )
