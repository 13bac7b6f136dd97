"""Gateway health read model.

Periodically folds recent routing attempts into one `gateway_health_metrics`
row per gateway. The routing engine reads only the latest row.
"""

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from routepay.common.config import settings
from routepay.common.logging import logger
from routepay.services.orchestrator.models import GatewayHealthMetric
from routepay.services.orchestrator.repository import SqlAlchemyRepository


class HealthMetricsService:
    def __init__(self, repository: SqlAlchemyRepository, window_minutes: int | None = None) -> None:
        self.repository = repository
        self.window = timedelta(minutes=window_minutes or settings.health_window_minutes)

    def refresh(self, now: datetime | None = None) -> list[GatewayHealthMetric]:
        """Write one aggregate per gateway with attempts inside the trailing window."""

        now = now or datetime.now(timezone.utc)
        start = now - self.window
        written = []
        for gateway_id, total, failed, avg_latency in self.repository.attempt_stats_since(start):
            if total == 0:
                continue
            success_rate = (Decimal(total - failed) * 100 / total).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            written.append(
                self.repository.add_health_metric(
                    gateway_id=gateway_id,
                    success_rate=success_rate,
                    average_response_time_ms=int(round(avg_latency)),
                    total_transactions=total,
                    failed_transactions=failed,
                    measurement_period_start=start,
                    measurement_period_end=now,
                )
            )
            logger.info(
                "gateway_health gateway_id=%s success_rate=%s avg_latency_ms=%s total=%s",
                gateway_id,
                success_rate,
                int(round(avg_latency)),
                total,
            )
        return written
