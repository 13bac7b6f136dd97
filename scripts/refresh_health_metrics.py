"""Fold recent routing attempts into gateway health aggregates.

Meant to run from cron every few minutes; the routing engine reads only the
latest aggregate per gateway.
"""

import argparse

from routepay.common.config import settings
from routepay.common.db import build_session_factory
from routepay.common.logging import configure_logging
from routepay.services.health.service import HealthMetricsService
from routepay.services.orchestrator.repository import SqlAlchemyRepository


def main() -> None:
    """CLI entrypoint for one health refresh pass."""

    parser = argparse.ArgumentParser(description="Recompute gateway health metrics over a trailing window.")
    parser.add_argument("--dsn", default=settings.postgres_dsn)
    parser.add_argument("--window-minutes", type=int, default=settings.health_window_minutes)
    args = parser.parse_args()

    configure_logging()
    service = HealthMetricsService(
        SqlAlchemyRepository(build_session_factory(args.dsn)), window_minutes=args.window_minutes
    )
    rows = service.refresh()
    for row in rows:
        print(
            f"gateway_id={row.gateway_id} success_rate={row.success_rate} "
            f"avg_latency_ms={row.average_response_time_ms} total={row.total_transactions}"
        )
    print(f"Wrote {len(rows)} health metric rows.")


if __name__ == "__main__":
    main()
