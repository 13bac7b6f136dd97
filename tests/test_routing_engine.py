"""Scoring, filtering and tie-breaking of the routing decision engine."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from routepay.common.errors import NoEligibleGateway, NoHealthyGateway
from routepay.services.routing.engine import HealthPolicy, pick_weighted, select_gateway
from routepay.services.routing.rules import rule_from_document
from routepay.services.routing.schemas import CandidateGateway, HealthSnapshot, RoutingTransaction

NOW = datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc)


def _tx(amount="500.00", currency="INR", method="upi") -> RoutingTransaction:
    return RoutingTransaction(transaction_id="tx-1", amount=Decimal(amount), currency=currency, payment_method=method)


def _gateway(gateway_id, code, priority=1, fee="0.02", **overrides) -> CandidateGateway:
    fields = dict(
        gateway_id=gateway_id,
        gateway_code=code,
        provider="scripted",
        priority=priority,
        fee_percentage=Decimal(fee),
        supported_currencies=frozenset({"INR", "USD"}),
        supported_methods=frozenset({"card", "upi"}),
    )
    fields.update(overrides)
    return CandidateGateway(**fields)


def _prefer(code, method="upi", priority=1, **fields):
    return rule_from_document(
        rule_id=f"r-{code}",
        name=f"prefer {code}",
        kind="method_based",
        priority=priority,
        conditions={"payment_method": method},
        actions={"preferred_gateway": code},
        **fields,
    )


def test_upi_scenario_scores_280_for_preferred_razorpay():
    """500 INR over UPI, no health data, one UPI preference rule."""

    razorpay = _gateway("g-rzp", "razorpay_main", priority=1, fee="0.02")
    stripe = _gateway("g-str", "stripe_main", priority=2, fee="0.029")

    selection = select_gateway(_tx(), [razorpay, stripe], {}, [_prefer("razorpay_main")], now=NOW)

    assert selection.gateway_code == "razorpay_main"
    assert selection.score == Decimal("280")
    assert [c.component for c in selection.contributions] == ["base", "priority", "health", "fee", "rule"]
    assert [c.delta for c in selection.contributions] == [
        Decimal("100"),
        Decimal("45"),
        Decimal("95"),
        Decimal("-10"),
        Decimal("50"),
    ]


def test_selection_is_deterministic():
    candidates = [_gateway("g-a", "a", priority=3), _gateway("g-b", "b", priority=2, fee="0.01")]
    health = {"g-a": HealthSnapshot(gateway_id="g-a", success_rate=Decimal("97"), average_latency_ms=Decimal("400"))}
    rules = [_prefer("a")]

    first = select_gateway(_tx(), candidates, health, rules, now=NOW)
    second = select_gateway(_tx(), list(reversed(candidates)), health, rules, now=NOW)

    assert first == second


def test_preferred_gateway_gains_exactly_fifty():
    a = _gateway("g-a", "razorpay_main")
    b = _gateway("g-b", "other_main")

    selection = select_gateway(_tx(), [a, b], {}, [_prefer("razorpay_main")], now=NOW)

    scores = {s.candidate.gateway_code: s.score for s in selection.ranked}
    assert scores["razorpay_main"] - scores["other_main"] == Decimal("50")


def test_avoid_and_distribution_actions_accumulate():
    a = _gateway("g-a", "a")
    b = _gateway("g-b", "b")
    avoid = rule_from_document(
        rule_id="r1", name="avoid a", kind="priority_default", priority=1, conditions={}, actions={"avoided_gateway": "a"}
    )
    split = rule_from_document(
        rule_id="r2",
        name="split",
        kind="percentage_distribution",
        priority=2,
        conditions={},
        actions={"distribution": {"a": 30, "b": 70}},
    )

    selection = select_gateway(_tx(), [a, b], {}, [split, avoid], now=NOW)

    scores = {s.candidate.gateway_code: s.score for s in selection.ranked}
    assert scores["b"] - scores["a"] == Decimal("90")
    assert selection.gateway_code == "b"


def test_higher_success_rate_wins_when_fee_and_priority_equal():
    a = _gateway("g-a", "a")
    b = _gateway("g-b", "b")
    health = {
        "g-a": HealthSnapshot(gateway_id="g-a", success_rate=Decimal("99"), average_latency_ms=Decimal("300")),
        "g-b": HealthSnapshot(gateway_id="g-b", success_rate=Decimal("85"), average_latency_ms=Decimal("300")),
    }

    assert select_gateway(_tx(), [a, b], health, [], now=NOW).gateway_code == "a"


def test_unhealthy_gateway_is_filtered_out_even_with_higher_score():
    a = _gateway("g-a", "a")
    b = _gateway("g-b", "b", priority=5)
    health = {"g-a": HealthSnapshot(gateway_id="g-a", success_rate=Decimal("60"), average_latency_ms=Decimal("100"))}

    selection = select_gateway(_tx(), [a, b], health, [_prefer("a")], now=NOW)

    assert selection.gateway_code == "b"
    assert not selection.health_filter_bypassed
    assert [s.candidate.gateway_code for s in selection.ranked] == ["b"]


def test_slow_gateway_counts_as_unhealthy():
    policy = HealthPolicy()
    slow = HealthSnapshot(gateway_id="g", success_rate=Decimal("99"), average_latency_ms=Decimal("5001"))
    assert not policy.is_healthy(slow)
    assert policy.is_healthy(None)


def test_health_filter_is_bypassed_when_everything_is_unhealthy():
    a = _gateway("g-a", "a")
    b = _gateway("g-b", "b")
    health = {
        "g-a": HealthSnapshot(gateway_id="g-a", success_rate=Decimal("50"), average_latency_ms=Decimal("100")),
        "g-b": HealthSnapshot(gateway_id="g-b", success_rate=Decimal("40"), average_latency_ms=Decimal("100")),
    }

    selection = select_gateway(_tx(), [a, b], health, [], now=NOW)

    assert selection.health_filter_bypassed
    assert selection.gateway_code == "a"
    assert len(selection.ranked) == 2


def test_no_eligible_gateway_for_unsupported_currency():
    with pytest.raises(NoEligibleGateway):
        select_gateway(_tx(currency="EUR"), [_gateway("g-a", "a")], {}, [], now=NOW)


def test_inactive_bindings_are_not_eligible():
    candidates = [_gateway("g-a", "a", is_active=False), _gateway("g-b", "b", gateway_active=False)]
    with pytest.raises(NoEligibleGateway):
        select_gateway(_tx(), candidates, {}, [], now=NOW)


def test_excluding_every_candidate_raises_no_healthy_gateway():
    with pytest.raises(NoHealthyGateway):
        select_gateway(_tx(), [_gateway("g-a", "a")], {}, [], now=NOW, exclude=["g-a"])


def test_ties_break_on_priority_then_gateway_id():
    # Equal scores: priority 2 with no fee against priority 1 with a 5.00 fee.
    a = _gateway("g-b", "a", priority=1, fee="0.01")
    b = _gateway("g-a", "b", priority=2, fee="0")
    assert select_gateway(_tx(), [a, b], {}, [], now=NOW).gateway_code == "a"

    c = _gateway("g-z", "c")
    d = _gateway("g-y", "d")
    assert select_gateway(_tx(), [c, d], {}, [], now=NOW).gateway_id == "g-y"


def test_rule_outside_validity_window_is_skipped():
    expired = _prefer("a", valid_until=datetime(2026, 1, 1, tzinfo=timezone.utc))
    a = _gateway("g-a", "a", priority=2)
    b = _gateway("g-b", "b", priority=1)

    assert select_gateway(_tx(), [a, b], {}, [expired], now=NOW).gateway_code == "b"


def test_rule_conditions_must_all_hold():
    rule = rule_from_document(
        rule_id="r",
        name="big INR upi",
        kind="amount_range",
        priority=1,
        conditions={"amount": {"min": 1000}, "currency": "INR", "payment_method": "upi"},
        actions={"preferred_gateway": "a"},
    )
    a = _gateway("g-a", "a", priority=2)
    b = _gateway("g-b", "b", priority=1)

    assert select_gateway(_tx(amount="500.00"), [a, b], {}, [rule], now=NOW).gateway_code == "b"
    assert select_gateway(_tx(amount="1500.00"), [a, b], {}, [rule], now=NOW).gateway_code == "a"


def test_weighted_pick_is_stable_per_transaction():
    candidates = [_gateway("g-a", "a"), _gateway("g-b", "b"), _gateway("g-c", "c")]
    selection = select_gateway(_tx(), candidates, {}, [], now=NOW)

    picks = {pick_weighted(selection, "tx-42").candidate.gateway_id for _ in range(5)}

    assert len(picks) == 1
