"""Error taxonomy shared by routing, orchestration and webhook reconciliation."""


class RoutePayError(Exception):
    """Base class for business errors raised by routepay services."""

    code = "ROUTEPAY_ERROR"


class ConfigurationError(RoutePayError):
    """Gateway credentials or secrets are missing; never retried."""

    code = "CONFIGURATION_ERROR"


class RoutingError(RoutePayError):
    code = "ROUTING_ERROR"


class NoEligibleGateway(RoutingError):
    """No active binding supports the transaction's currency and method."""

    code = "NO_ELIGIBLE_GATEWAY"


class NoHealthyGateway(RoutingError):
    """Eligible gateways existed but every one was excluded."""

    code = "NO_HEALTHY_GATEWAY"


class GatewayCallError(RoutePayError):
    """Network failure, timeout or decline reported by a gateway call."""

    code = "GATEWAY_ERROR"

    def __init__(self, message: str, code: str | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.retryable = retryable


class InvalidSignature(RoutePayError):
    code = "INVALID_SIGNATURE"


class AlreadyProcessed(RoutePayError):
    """Orchestration was triggered for a transaction that is no longer pending."""

    code = "ALREADY_PROCESSED"

    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(f"transaction {transaction_id} is already {status}")
        self.transaction_id = transaction_id
        self.status = status


class TransactionNotFound(RoutePayError):
    code = "TRANSACTION_NOT_FOUND"


class InvalidTransition(RoutePayError, ValueError):
    code = "INVALID_TRANSITION"


class ConcurrentUpdate(RoutePayError):
    """A conditional status update lost the race against another writer."""

    code = "CONCURRENT_UPDATE"


class UnknownMerchant(RoutePayError):
    code = "UNKNOWN_MERCHANT"


class InvalidRefund(RoutePayError):
    """Refund requested for a transaction that cannot be refunded as asked."""

    code = "INVALID_REFUND"
