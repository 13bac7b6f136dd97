from datetime import datetime, timedelta, timezone
from decimal import Decimal

from routepay.services.health.service import HealthMetricsService


def test_refresh_folds_recent_attempts_into_one_metric(repository, merchant, add_gateway):
    gateway_id = add_gateway("razorpay_main")
    transaction, _ = repository.create_transaction(
        merchant_id=merchant.id,
        transaction_ref="order-h",
        amount=Decimal("10.00"),
        currency="INR",
        payment_method="upi",
    )
    for number, (status, latency) in enumerate([("success", 100), ("failed", 300), ("pending", 200)], start=1):
        repository.add_routing_attempt(
            transaction_id=transaction.id,
            gateway_id=gateway_id,
            attempt_number=number,
            status=status,
            processing_time_ms=latency,
        )
    now = datetime.now(timezone.utc) + timedelta(seconds=1)

    (metric,) = HealthMetricsService(repository, window_minutes=15).refresh(now=now)

    assert metric.gateway_id == gateway_id
    assert metric.total_transactions == 3
    assert metric.failed_transactions == 1
    assert metric.success_rate == Decimal("66.67")
    assert metric.average_response_time_ms == 200

    snapshots = repository.latest_health_snapshots([gateway_id], since=now - timedelta(minutes=15))
    assert snapshots[gateway_id].success_rate == Decimal("66.67")


def test_refresh_ignores_gateways_without_recent_traffic(repository, add_gateway):
    add_gateway("razorpay_main")

    assert HealthMetricsService(repository, window_minutes=15).refresh() == []
