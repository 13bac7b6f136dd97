"""Conditional status updates and read paths of the SQLAlchemy repository."""

from decimal import Decimal

import pytest
from sqlalchemy import update

from routepay.common.errors import ConcurrentUpdate, InvalidTransition, TransactionNotFound
from routepay.services.orchestrator.models import Gateway, MerchantGateway


@pytest.fixture()
def pending(repository, merchant):
    transaction, created = repository.create_transaction(
        merchant_id=merchant.id,
        transaction_ref="order-7",
        amount=Decimal("42.00"),
        currency="USD",
        payment_method="card",
    )
    assert created
    return transaction


def test_compare_and_set_moves_status_and_writes_timeline(repository, pending):
    stored = repository.compare_and_set_status(pending.id, "pending", "processing", reason="claimed")

    assert stored.status == "processing"
    assert stored.state_version == 1
    timeline = repository.list_timeline(pending.id)
    assert [(row.from_status, row.to_status, row.reason) for row in timeline] == [
        (None, "pending", "transaction_created"),
        ("pending", "processing", "claimed"),
    ]


def test_second_writer_with_stale_expectation_loses(repository, pending):
    repository.compare_and_set_status(pending.id, "pending", "processing", reason="first")

    with pytest.raises(ConcurrentUpdate):
        repository.compare_and_set_status(pending.id, "pending", "processing", reason="second")

    assert len(repository.list_timeline(pending.id)) == 2


def test_patch_without_transition_bumps_version_only(repository, pending):
    repository.compare_and_set_status(pending.id, "pending", "processing", reason="claimed")

    stored = repository.compare_and_set_status(
        pending.id, "processing", "processing", {"redirect_url": "https://pay.example/x"}, reason="patched"
    )

    assert stored.redirect_url == "https://pay.example/x"
    assert stored.state_version == 2
    assert len(repository.list_timeline(pending.id)) == 2


def test_disallowed_transition_is_rejected(repository, pending):
    with pytest.raises(InvalidTransition):
        repository.compare_and_set_status(pending.id, "pending", "refunded", reason="bogus")
    assert repository.get_transaction(pending.id).status == "pending"


def test_missing_transaction(repository):
    with pytest.raises(TransactionNotFound):
        repository.compare_and_set_status("missing", "pending", "processing", reason="claimed")


def test_lookup_by_gateway_reference_is_scoped_to_gateway(repository, pending, add_gateway):
    gateway_id = add_gateway("stripe_main")
    other_id = add_gateway("paypal_main")
    repository.compare_and_set_status(
        pending.id,
        "pending",
        "processing",
        {"gateway_id": gateway_id, "gateway_transaction_id": "pi_123"},
        reason="claimed",
    )

    assert repository.find_transaction_by_gateway_reference("pi_123", gateway_id=gateway_id).id == pending.id
    assert repository.find_transaction_by_gateway_reference("pi_123", gateway_id=other_id) is None
    assert repository.find_transaction_by_gateway_reference("pi_123").id == pending.id


def test_binding_credentials_override_gateway_credentials(repository, session_factory, merchant, add_gateway):
    gateway_id = add_gateway("stripe_main")
    with session_factory() as db:
        db.execute(update(Gateway).where(Gateway.id == gateway_id).values(credentials={"secret_key": "sk_shared"}))
        db.execute(
            update(MerchantGateway)
            .where(MerchantGateway.gateway_id == gateway_id)
            .values(credentials={"secret_key": "sk_merchant"}, merchant_gateway_id="acct_1")
        )
        db.commit()

    shared = repository.get_gateway_config(gateway_id)
    scoped = repository.get_gateway_config(gateway_id, merchant.id)

    assert shared.credentials == {"secret_key": "sk_shared"}
    assert scoped.credentials == {"secret_key": "sk_merchant"}
    assert scoped.merchant_gateway_id == "acct_1"
    assert scoped.webhook_secret == "whsec_test"


def test_candidates_carry_binding_fees_and_capabilities(repository, merchant, add_gateway):
    add_gateway("razorpay_main", priority=2, fee_percentage="0.0200", fee_fixed="3.00", currencies=("INR",))

    (candidate,) = repository.list_candidate_gateways(merchant.id)

    assert candidate.gateway_code == "razorpay_main"
    assert candidate.priority == 2
    assert candidate.fee_for(Decimal("100")) == Decimal("5.00")
    assert candidate.supported_currencies == frozenset({"INR"})


def test_invalid_stored_rules_are_skipped(repository, merchant, add_rule):
    add_rule("broken", "geo", {}, {})
    add_rule("upi", "method_based", {"payment_method": "upi"}, {"preferred_gateway": "razorpay_main"}, priority=2)

    rules = repository.list_routing_rules(merchant.id)

    assert [rule.name for rule in rules] == ["upi"]
