"""Re-run reconciliation for stored webhook deliveries that were not processed.

Replays use the stored raw body and headers, so signatures are verified again
(Stripe's timestamp tolerance means old Stripe deliveries will be rejected).
"""

import argparse
import asyncio

import httpx

from routepay.common.config import settings
from routepay.common.db import build_session_factory
from routepay.common.logging import configure_logging
from routepay.services.gateways.registry import build_default_registry
from routepay.services.orchestrator.repository import SqlAlchemyRepository
from routepay.services.webhooks.service import WebhookReconciliationHandler


async def replay(dsn: str, webhook_id: str | None, limit: int, dry_run: bool) -> int:
    """Replay one webhook or the oldest unprocessed batch; returns processed count."""

    repository = SqlAlchemyRepository(build_session_factory(dsn))
    if webhook_id:
        record = repository.get_webhook(webhook_id)
        records = [record] if record else []
    else:
        records = repository.list_unprocessed_webhooks(limit=limit)
    print(f"Replaying {len(records)} webhook records.")
    if dry_run:
        for record in records:
            print(f"  {record.id} gateway={record.gateway_code} error={record.error_message}")
        return 0

    processed = 0
    async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as client:
        handler = WebhookReconciliationHandler(repository, build_default_registry(client))
        for record in records:
            result = await handler.replay(record.id)
            print(f"  {record.id} success={result.success} processed={result.processed} error={result.error}")
            if result.processed:
                processed += 1
    return processed


def main() -> None:
    """CLI entrypoint for webhook replay."""

    parser = argparse.ArgumentParser(description="Replay unprocessed gateway webhooks.")
    parser.add_argument("--dsn", default=settings.postgres_dsn)
    parser.add_argument("--webhook-id", default=None, help="replay one stored webhook")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    configure_logging()
    processed = asyncio.run(replay(args.dsn, args.webhook_id, args.limit, args.dry_run))
    print(f"Processed {processed} webhooks.")


if __name__ == "__main__":
    main()
