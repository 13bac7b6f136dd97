"""Typed merchant routing rules.

Rules are stored as JSON `conditions`/`actions` documents. They are parsed into
a closed set of condition and action models here so the scoring engine never
inspects raw dictionaries.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from routepay.services.routing.schemas import RoutingTransaction

PREFER_BONUS = Decimal("50")
AVOID_PENALTY = Decimal("-50")


class RuleKind(str, Enum):
    AMOUNT_RANGE = "amount_range"
    METHOD_BASED = "method_based"
    PERCENTAGE_DISTRIBUTION = "percentage_distribution"
    PRIORITY_DEFAULT = "priority_default"


# Names used by older rule rows.
LEGACY_KIND_ALIASES = {
    "amount": RuleKind.AMOUNT_RANGE,
    "percentage": RuleKind.PERCENTAGE_DISTRIBUTION,
    "gateway_priority": RuleKind.PRIORITY_DEFAULT,
}


class AmountRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Decimal | None = None
    max: Decimal | None = None

    def contains(self, amount: Decimal) -> bool:
        if self.min is not None and amount < self.min:
            return False
        if self.max is not None and amount > self.max:
            return False
        return True


class TimeOfDay(BaseModel):
    """Inclusive hour window; `start > end` wraps past midnight."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(ge=0, le=23)
    end: int = Field(ge=0, le=23)

    def contains(self, hour: int) -> bool:
        if self.start <= self.end:
            return self.start <= hour <= self.end
        return hour >= self.start or hour <= self.end


class RuleConditions(BaseModel):
    """Every present condition must hold for the rule to match."""

    model_config = ConfigDict(frozen=True)

    amount: AmountRange | None = None
    currency: str | None = None
    payment_method: str | None = None
    time_of_day: TimeOfDay | None = None

    def matches(self, transaction: RoutingTransaction, now: datetime) -> bool:
        if self.amount is not None and not self.amount.contains(transaction.amount):
            return False
        if self.currency is not None and transaction.currency != self.currency:
            return False
        if self.payment_method is not None and transaction.payment_method != self.payment_method:
            return False
        if self.time_of_day is not None and not self.time_of_day.contains(now.hour):
            return False
        return True


class PreferGateway(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["prefer"] = "prefer"
    gateway_code: str

    def delta_for(self, gateway_code: str) -> Decimal | None:
        return PREFER_BONUS if gateway_code == self.gateway_code else None


class AvoidGateway(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["avoid"] = "avoid"
    gateway_code: str

    def delta_for(self, gateway_code: str) -> Decimal | None:
        return AVOID_PENALTY if gateway_code == self.gateway_code else None


class DistributeWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["distribute"] = "distribute"
    weights: dict[str, Decimal]

    def delta_for(self, gateway_code: str) -> Decimal | None:
        weight = self.weights.get(gateway_code)
        if not weight:
            return None
        return weight


class KeepPriority(BaseModel):
    """Marker action for default rules: ordering comes from binding priority."""

    model_config = ConfigDict(frozen=True)

    type: Literal["priority"] = "priority"

    def delta_for(self, gateway_code: str) -> Decimal | None:
        return None


RuleAction = Annotated[
    Union[PreferGateway, AvoidGateway, DistributeWeights, KeepPriority],
    Field(discriminator="type"),
]


class RoutingRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    name: str
    kind: RuleKind
    priority: int = 100
    is_active: bool = True
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: tuple[RuleAction, ...] = ()

    @model_validator(mode="after")
    def _check_kind_shape(self) -> "RoutingRule":
        if self.kind is RuleKind.AMOUNT_RANGE and self.conditions.amount is None:
            raise ValueError("amount_range rule requires an amount condition")
        if self.kind is RuleKind.METHOD_BASED and self.conditions.payment_method is None:
            raise ValueError("method_based rule requires a payment_method condition")
        if self.kind is RuleKind.PERCENTAGE_DISTRIBUTION and not any(
            isinstance(action, DistributeWeights) for action in self.actions
        ):
            raise ValueError("percentage_distribution rule requires a distribution action")
        return self

    def in_window(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_until is not None and now >= self.valid_until:
            return False
        return True

    def matches(self, transaction: RoutingTransaction, now: datetime) -> bool:
        return self.in_window(now) and self.conditions.matches(transaction, now)

    def score_delta(self, gateway_code: str) -> Decimal:
        """First action that targets `gateway_code` decides the delta."""

        for action in self.actions:
            delta = action.delta_for(gateway_code)
            if delta is not None:
                return delta
        return Decimal("0")


def parse_actions(actions: dict[str, Any]) -> tuple[RuleAction, ...]:
    """Translate a stored `actions` document into typed actions, in precedence order."""

    parsed: list[RuleAction] = []
    if actions.get("preferred_gateway"):
        parsed.append(PreferGateway(gateway_code=actions["preferred_gateway"]))
    if actions.get("avoided_gateway"):
        parsed.append(AvoidGateway(gateway_code=actions["avoided_gateway"]))
    if actions.get("distribution"):
        parsed.append(DistributeWeights(weights=actions["distribution"]))
    if actions.get("use_priority"):
        parsed.append(KeepPriority())
    return tuple(parsed)


def parse_kind(value: str) -> RuleKind:
    if value in LEGACY_KIND_ALIASES:
        return LEGACY_KIND_ALIASES[value]
    return RuleKind(value)


def rule_from_document(
    *,
    rule_id: str,
    name: str,
    kind: str,
    priority: int,
    conditions: dict[str, Any] | None,
    actions: dict[str, Any] | None,
    is_active: bool = True,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
) -> RoutingRule:
    return RoutingRule(
        rule_id=rule_id,
        name=name,
        kind=parse_kind(kind),
        priority=priority,
        is_active=is_active,
        valid_from=valid_from,
        valid_until=valid_until,
        conditions=RuleConditions.model_validate(conditions or {}),
        actions=parse_actions(actions or {}),
    )
