"""Value objects consumed and produced by the routing decision engine."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class RoutingTransaction(BaseModel):
    """The subset of a transaction the engine scores against."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    amount: Decimal
    currency: str
    payment_method: str


class CandidateGateway(BaseModel):
    """One merchant binding joined with its gateway's capabilities."""

    model_config = ConfigDict(frozen=True)

    gateway_id: str
    gateway_code: str
    provider: str
    priority: int
    fee_percentage: Decimal = Decimal("0")
    fee_fixed: Decimal = Decimal("0")
    is_active: bool = True
    gateway_active: bool = True
    supported_currencies: frozenset[str] = frozenset()
    supported_methods: frozenset[str] = frozenset()
    merchant_gateway_id: str | None = None

    def supports(self, transaction: RoutingTransaction) -> bool:
        return (
            transaction.currency in self.supported_currencies
            and transaction.payment_method in self.supported_methods
        )

    def fee_for(self, amount: Decimal) -> Decimal:
        return amount * self.fee_percentage + self.fee_fixed


class HealthSnapshot(BaseModel):
    """Most recent rolling health aggregate for one gateway."""

    model_config = ConfigDict(frozen=True)

    gateway_id: str
    success_rate: Decimal
    average_latency_ms: Decimal


class ScoreContribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    component: str
    delta: Decimal
    detail: str = ""


class ScoredCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: CandidateGateway
    score: Decimal
    healthy: bool
    contributions: tuple[ScoreContribution, ...]


class GatewaySelection(BaseModel):
    """Winning gateway plus the full ranking used to choose it."""

    model_config = ConfigDict(frozen=True)

    gateway_id: str
    gateway_code: str
    score: Decimal
    contributions: tuple[ScoreContribution, ...]
    ranked: tuple[ScoredCandidate, ...] = Field(default_factory=tuple)
    health_filter_bypassed: bool = False

    @property
    def reason(self) -> str:
        return "; ".join(f"{c.component}:{c.delta}" + (f" ({c.detail})" if c.detail else "") for c in self.contributions)

    def audit_payload(self) -> dict:
        """JSON-safe breakdown stored on routing attempts."""

        return {
            "gateway_code": self.gateway_code,
            "score": str(self.score),
            "health_filter_bypassed": self.health_filter_bypassed,
            "contributions": [
                {"component": c.component, "delta": str(c.delta), "detail": c.detail} for c in self.contributions
            ],
            "ranking": [
                {"gateway_code": r.candidate.gateway_code, "score": str(r.score), "healthy": r.healthy}
                for r in self.ranked
            ],
        }
