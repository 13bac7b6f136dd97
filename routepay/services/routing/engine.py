"""Routing decision engine.

Pure scoring over a merchant's gateway bindings: given the same transaction,
bindings, health snapshots, rules and clock it always returns the same
selection and score breakdown. All I/O happens in the caller.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping

from routepay.common.config import settings
from routepay.common.errors import NoEligibleGateway, NoHealthyGateway
from routepay.services.routing.rules import RoutingRule
from routepay.services.routing.schemas import (
    CandidateGateway,
    GatewaySelection,
    HealthSnapshot,
    RoutingTransaction,
    ScoreContribution,
    ScoredCandidate,
)

BASE_SCORE = Decimal("100")
PRIORITY_CEILING = 10
PRIORITY_WEIGHT = Decimal("5")
LATENCY_DIVISOR = Decimal("100")


@dataclass(frozen=True)
class HealthPolicy:
    """Thresholds deciding whether a gateway is healthy enough to route to."""

    min_success_rate: Decimal = Decimal("80")
    max_latency_ms: Decimal = Decimal("5000")
    default_success_rate: Decimal = Decimal("95")
    default_latency_ms: Decimal = Decimal("1000")

    @classmethod
    def from_settings(cls) -> "HealthPolicy":
        return cls(
            min_success_rate=Decimal(str(settings.health_min_success_rate)),
            max_latency_ms=Decimal(str(settings.health_max_latency_ms)),
            default_success_rate=Decimal(str(settings.default_success_rate)),
            default_latency_ms=Decimal(str(settings.default_latency_ms)),
        )

    def is_healthy(self, snapshot: HealthSnapshot | None) -> bool:
        success_rate = snapshot.success_rate if snapshot else self.default_success_rate
        latency_ms = snapshot.average_latency_ms if snapshot else self.default_latency_ms
        return success_rate >= self.min_success_rate and latency_ms <= self.max_latency_ms


def _health_term(snapshot: HealthSnapshot | None, policy: HealthPolicy) -> ScoreContribution:
    if snapshot is None:
        # Unmeasured gateways get the neutral success rate with no latency penalty.
        return ScoreContribution(
            component="health",
            delta=policy.default_success_rate,
            detail=f"no metric, provisional {policy.default_success_rate}% success",
        )
    delta = snapshot.success_rate - snapshot.average_latency_ms / LATENCY_DIVISOR
    return ScoreContribution(
        component="health",
        delta=delta,
        detail=f"{snapshot.success_rate}% success, {snapshot.average_latency_ms}ms avg",
    )


def score_candidate(
    transaction: RoutingTransaction,
    candidate: CandidateGateway,
    snapshot: HealthSnapshot | None,
    matching_rules: Iterable[RoutingRule],
    policy: HealthPolicy,
) -> ScoredCandidate:
    contributions = [
        ScoreContribution(component="base", delta=BASE_SCORE),
        ScoreContribution(
            component="priority",
            delta=(PRIORITY_CEILING - candidate.priority) * PRIORITY_WEIGHT,
            detail=f"priority {candidate.priority}",
        ),
        _health_term(snapshot, policy),
    ]
    fee = candidate.fee_for(transaction.amount)
    contributions.append(ScoreContribution(component="fee", delta=-fee, detail=f"fee {fee}"))
    for rule in matching_rules:
        delta = rule.score_delta(candidate.gateway_code)
        if delta:
            contributions.append(ScoreContribution(component="rule", delta=delta, detail=rule.name))
    return ScoredCandidate(
        candidate=candidate,
        score=sum((c.delta for c in contributions), Decimal("0")),
        healthy=policy.is_healthy(snapshot),
        contributions=tuple(contributions),
    )


def _rank_key(scored: ScoredCandidate) -> tuple:
    return (-scored.score, scored.candidate.priority, scored.candidate.gateway_id)


def select_gateway(
    transaction: RoutingTransaction,
    candidates: Iterable[CandidateGateway],
    health: Mapping[str, HealthSnapshot],
    rules: Iterable[RoutingRule],
    *,
    now: datetime,
    exclude: Iterable[str] = (),
    policy: HealthPolicy | None = None,
) -> GatewaySelection:
    """Score eligible gateways and return the best one with its breakdown.

    `exclude` holds gateway ids already attempted for this transaction. When
    every remaining candidate is unhealthy the health filter is skipped rather
    than failing the transaction.
    """

    policy = policy or HealthPolicy()
    eligible = [c for c in candidates if c.is_active and c.gateway_active and c.supports(transaction)]
    if not eligible:
        raise NoEligibleGateway(
            f"no active gateway supports {transaction.currency}/{transaction.payment_method}"
        )
    excluded = set(exclude)
    pool = [c for c in eligible if c.gateway_id not in excluded]
    if not pool:
        raise NoHealthyGateway("every eligible gateway was already attempted")

    matching_rules = sorted(
        (rule for rule in rules if rule.matches(transaction, now)),
        key=lambda rule: (rule.priority, rule.rule_id),
    )
    scored = [
        score_candidate(transaction, candidate, health.get(candidate.gateway_id), matching_rules, policy)
        for candidate in pool
    ]
    considered = [s for s in scored if s.healthy]
    bypassed = not considered
    if bypassed:
        considered = scored

    ranked = tuple(sorted(considered, key=_rank_key))
    best = ranked[0]
    return GatewaySelection(
        gateway_id=best.candidate.gateway_id,
        gateway_code=best.candidate.gateway_code,
        score=best.score,
        contributions=best.contributions,
        ranked=ranked,
        health_filter_bypassed=bypassed,
    )


def pick_weighted(selection: GatewaySelection, seed: str) -> ScoredCandidate:
    """Sample one ranked candidate with score-proportional weight.

    The RNG is seeded per transaction, so repeated calls agree.
    """

    weights = [float(max(scored.score, Decimal("1"))) for scored in selection.ranked]
    return random.Random(seed).choices(list(selection.ranked), weights=weights, k=1)[0]
