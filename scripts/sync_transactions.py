"""Sync platform transactions for a date window.

Dry run by default: fetches and attributes, reports what would be written.
Pass --live to write. Pass --temporal to start TransactionSyncWorkflow on the
configured task queue instead of running in-process.

Usage:
    python scripts/sync_transactions.py --start 2024-01-01 --end 2024-01-08
    python scripts/sync_transactions.py --start 2024-01-01 --end 2024-01-08 --live
"""

import argparse
import asyncio
import json
import sys
import uuid
from datetime import datetime
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from connectors.fulfillment.fp_client import FPApiConfig, FPClient
from core.config import get_settings
from core.observability.logging import configure_from_settings, get_logger
from jobs.models import JobMode
from jobs.schema import init_billing_db
from jobs.sync_job import run_attribution_pass, run_invoice_sync, run_transaction_sync

logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync platform billing transactions")
    parser.add_argument("--start", required=True, type=datetime.fromisoformat, help="Window start (inclusive)")
    parser.add_argument("--end", required=True, type=datetime.fromisoformat, help="Window end (exclusive)")
    parser.add_argument("--live", action="store_true", help="Write to the store (default: dry run)")
    parser.add_argument("--shard-days", type=int, default=1, help="Shard length in days")
    parser.add_argument("--skip-invoices", action="store_true", help="Do not sync platform invoice records")
    parser.add_argument("--attribution-pass", action="store_true", help="Re-resolve stored unattributed rows afterwards")
    parser.add_argument("--temporal", action="store_true", help="Run as a Temporal workflow")
    parser.add_argument("--db", type=Path, default=None, help="Override BILLING_DB_PATH")
    return parser.parse_args(argv)


async def run_in_process(args: argparse.Namespace, mode: JobMode) -> bool:
    settings = get_settings()
    db_path = args.db or settings.db_path
    if mode.is_live:
        init_billing_db(db_path)

    summaries = []
    async with FPClient(FPApiConfig.from_settings(settings)) as client:
        summaries.append(await run_transaction_sync(
            args.start, args.end, mode, client, db_path, shard_days=args.shard_days,
        ))
        if not args.skip_invoices:
            summaries.append(await run_invoice_sync(args.start, args.end, mode, client, db_path))
    if args.attribution_pass:
        summaries.append(run_attribution_pass(mode, db_path))

    for summary in summaries:
        summary.print()
    return all(s.ok for s in summaries)


async def run_on_temporal(args: argparse.Namespace, mode: JobMode) -> bool:
    from temporal_client import get_temporal_client
    from workflows.billing_workflow import TransactionSyncInput, TransactionSyncWorkflow

    settings = get_settings()
    client = await get_temporal_client(settings)
    workflow_id = f"transaction-sync-{args.start.date()}-{uuid.uuid4().hex[:8]}"
    logger.info(f"Starting TransactionSyncWorkflow {workflow_id} on '{settings.temporal_task_queue}'")
    result = await client.execute_workflow(
        TransactionSyncWorkflow.run,
        TransactionSyncInput(
            start=args.start.isoformat(),
            end=args.end.isoformat(),
            mode=mode.value,
            shard_days=args.shard_days,
            db_path=str(args.db) if args.db else None,
        ),
        id=workflow_id,
        task_queue=settings.temporal_task_queue,
    )
    print(json.dumps(result, indent=2))
    return not result["failed"]


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_from_settings(get_settings())
    mode = JobMode.LIVE if args.live else JobMode.DRY_RUN
    runner = run_on_temporal if args.temporal else run_in_process
    ok = asyncio.run(runner(args, mode))
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
