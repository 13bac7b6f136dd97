"""Unit tests for transaction state-machine guardrails."""

import pytest

from routepay.common.errors import InvalidTransition
from routepay.common.state_machine import ALLOWED_TRANSITIONS, is_terminal, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending", "processing")
    validate_transition("processing", "success")
    validate_transition("success", "refunded")


def test_invalid_transition():
    """Illegal transition must raise to protect orchestration correctness."""

    with pytest.raises(ValueError):
        validate_transition("pending", "success")


def test_processing_never_returns_to_pending():
    with pytest.raises(InvalidTransition):
        validate_transition("processing", "pending")


def test_failed_cannot_be_resurrected():
    with pytest.raises(InvalidTransition):
        validate_transition("failed", "success")


def test_every_state_except_cancelled_can_be_cancelled():
    for status, targets in ALLOWED_TRANSITIONS.items():
        if status != "cancelled":
            assert "cancelled" in targets
    assert ALLOWED_TRANSITIONS["cancelled"] == set()


def test_terminal_statuses():
    assert not is_terminal("pending")
    assert not is_terminal("processing")
    assert is_terminal("success")
    assert is_terminal("refunded")
