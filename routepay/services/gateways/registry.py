"""Static provider registry built once at process start."""

from typing import Callable, Mapping

import httpx

from routepay.common.errors import ConfigurationError
from routepay.common.logging import logger
from routepay.services.gateways.base import PaymentGateway


class GatewayRegistry:
    """Maps a provider name to a lazily constructed adapter instance."""

    def __init__(self, constructors: Mapping[str, Callable[[], PaymentGateway]]) -> None:
        self._constructors = dict(constructors)
        self._instances: dict[str, PaymentGateway] = {}

    def providers(self) -> list[str]:
        return sorted(self._constructors)

    def supports(self, provider: str) -> bool:
        return provider in self._constructors

    def get(self, provider: str) -> PaymentGateway:
        if provider not in self._constructors:
            raise ConfigurationError(f"no adapter registered for provider {provider!r}")
        if provider not in self._instances:
            self._instances[provider] = self._constructors[provider]()
        return self._instances[provider]


def build_default_registry(client: httpx.AsyncClient) -> GatewayRegistry:
    """Registry with every bundled adapter sharing one HTTP client."""

    from routepay.services.gateways.paypal import PayPalGateway
    from routepay.services.gateways.razorpay import RazorpayGateway
    from routepay.services.gateways.sandbox import SandboxGateway
    from routepay.services.gateways.stripe import StripeGateway

    registry = GatewayRegistry(
        {
            StripeGateway.provider: lambda: StripeGateway(client),
            RazorpayGateway.provider: lambda: RazorpayGateway(client),
            PayPalGateway.provider: lambda: PayPalGateway(client),
            SandboxGateway.provider: SandboxGateway,
        }
    )
    logger.info("gateway_registry_built providers=%s", registry.providers())
    return registry
