"""Sweep transactions stuck in `processing` by polling their gateway.

Covers orchestrator crashes between claiming a transaction and persisting its
outcome, and webhooks that never arrived.
"""

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

import httpx

from routepay.common.config import settings
from routepay.common.db import build_session_factory
from routepay.common.errors import RoutePayError
from routepay.common.logging import configure_logging
from routepay.services.gateways.registry import build_default_registry
from routepay.services.orchestrator.repository import SqlAlchemyRepository
from routepay.services.orchestrator.service import TransactionOrchestrator


async def sweep(dsn: str, older_than_minutes: int, limit: int, dry_run: bool) -> int:
    """Refresh every stale `processing` transaction; returns the number settled."""

    repository = SqlAlchemyRepository(build_session_factory(dsn))
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
    stuck = repository.list_stuck_transactions(cutoff, limit=limit)
    print(f"Found {len(stuck)} processing transactions older than {older_than_minutes}m.")
    if dry_run:
        for transaction in stuck:
            print(f"  {transaction.id} gateway_transaction_id={transaction.gateway_transaction_id}")
        return 0

    settled = 0
    async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as client:
        orchestrator = TransactionOrchestrator(repository, build_default_registry(client))
        for transaction in stuck:
            try:
                result = await orchestrator.refresh_status(transaction.id)
            except (RoutePayError, asyncio.TimeoutError) as exc:
                print(f"  {transaction.id} refresh failed: {exc}")
                continue
            print(f"  {transaction.id} -> {result.status}")
            if result.status != "processing":
                settled += 1
    return settled


def main() -> None:
    """CLI entrypoint for the stuck-transaction sweep."""

    parser = argparse.ArgumentParser(description="Reconcile transactions stuck in processing.")
    parser.add_argument("--dsn", default=settings.postgres_dsn)
    parser.add_argument("--older-than-minutes", type=int, default=15)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    configure_logging()
    settled = asyncio.run(sweep(args.dsn, args.older_than_minutes, args.limit, args.dry_run))
    print(f"Settled {settled} transactions.")


if __name__ == "__main__":
    main()
