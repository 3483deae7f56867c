"""Worker for the billing pipeline.

Connects to Temporal, listens on the billing task queue and executes the
sync and invoicing workflows and their activities.

Run with --queue <name> to override the configured task queue.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from core.observability.logging import configure_from_settings, get_logger
from temporal_client import get_temporal_client
from workflows.billing_workflow import InvoiceGenerationWorkflow, TransactionSyncWorkflow
from activities.sync import sync_transaction_shard, sync_platform_invoices, attribution_pass
from activities.invoicing import list_billable_clients, generate_client_invoice

logger = get_logger(__name__)

WORKFLOWS = [TransactionSyncWorkflow, InvoiceGenerationWorkflow]

ACTIVITIES = [
    sync_transaction_shard,
    sync_platform_invoices,
    attribution_pass,
    list_billable_clients,
    generate_client_invoice,
]


async def run_worker(queue: str = None):
    """Start a worker on the task queue.

    Args:
        queue: Task queue to poll (defaults to TEMPORAL_TASK_QUEUE)

    Raises:
        Exception: If connection to Temporal fails
    """
    settings = get_settings()
    task_queue = queue or settings.temporal_task_queue

    client = await get_temporal_client(settings)
    logger.info(f"Connected to Temporal: {client.namespace}")

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=WORKFLOWS,
        activities=ACTIVITIES,
    )
    logger.info(f"Worker created for queue '{task_queue}':")
    logger.info(f"  - Workflows: {len(WORKFLOWS)}")
    logger.info(f"  - Activities: {len(ACTIVITIES)}")
    logger.info("Worker running... (Ctrl+C to stop)")
    await worker.run()


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Billing Pipeline Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=None,
        help="Task queue to poll (default: TEMPORAL_TASK_QUEUE)",
    )
    args = parser.parse_args()

    configure_from_settings(get_settings())
    try:
        asyncio.run(run_worker(queue=args.queue))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
