"""Parsing and matching of stored routing rule documents."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from routepay.services.routing.rules import (
    AvoidGateway,
    DistributeWeights,
    KeepPriority,
    PreferGateway,
    RuleKind,
    TimeOfDay,
    parse_actions,
    rule_from_document,
)
from routepay.services.routing.schemas import RoutingTransaction

TX = RoutingTransaction(transaction_id="t", amount=Decimal("250"), currency="USD", payment_method="card")


def _at(hour: int) -> datetime:
    return datetime(2026, 5, 1, hour, 15, tzinfo=timezone.utc)


def test_time_of_day_window_wraps_past_midnight():
    night = TimeOfDay(start=22, end=4)
    assert night.contains(23)
    assert night.contains(2)
    assert not night.contains(12)


def test_actions_parse_in_precedence_order():
    actions = parse_actions(
        {"use_priority": True, "distribution": {"a": 10}, "avoided_gateway": "b", "preferred_gateway": "a"}
    )
    assert [type(a) for a in actions] == [PreferGateway, AvoidGateway, DistributeWeights, KeepPriority]


def test_first_action_targeting_gateway_decides_delta():
    rule = rule_from_document(
        rule_id="r",
        name="mixed",
        kind="percentage_distribution",
        priority=1,
        conditions={},
        actions={"preferred_gateway": "a", "distribution": {"a": 5, "b": 7}},
    )
    assert rule.score_delta("a") == Decimal("50")
    assert rule.score_delta("b") == Decimal("7")
    assert rule.score_delta("c") == Decimal("0")


def test_legacy_kind_names_are_accepted():
    rule = rule_from_document(
        rule_id="r", name="old", kind="amount", priority=1, conditions={"amount": {"max": 100}}, actions={}
    )
    assert rule.kind is RuleKind.AMOUNT_RANGE


def test_kind_shape_is_enforced():
    with pytest.raises(ValidationError):
        rule_from_document(rule_id="r", name="bad", kind="method_based", priority=1, conditions={}, actions={})
    with pytest.raises(ValueError):
        rule_from_document(rule_id="r", name="bad", kind="geo", priority=1, conditions={}, actions={})


def test_inactive_rule_never_matches():
    rule = rule_from_document(
        rule_id="r", name="off", kind="priority_default", priority=1, conditions={}, actions={}, is_active=False
    )
    assert not rule.matches(TX, _at(10))


def test_validity_window_is_half_open():
    rule = rule_from_document(
        rule_id="r",
        name="window",
        kind="priority_default",
        priority=1,
        conditions={},
        actions={},
        valid_from=_at(9),
        valid_until=_at(11),
    )
    assert not rule.in_window(_at(8))
    assert rule.in_window(_at(9))
    assert not rule.in_window(datetime(2026, 5, 1, 11, 15, tzinfo=timezone.utc))


def test_time_of_day_condition_uses_clock():
    rule = rule_from_document(
        rule_id="r",
        name="office hours",
        kind="priority_default",
        priority=1,
        conditions={"time_of_day": {"start": 9, "end": 17}},
        actions={"preferred_gateway": "a"},
    )
    assert rule.matches(TX, _at(10))
    assert not rule.matches(TX, _at(20))
