"""Billing workflows.

TransactionSyncWorkflow fans a time window out into per-shard sync
activities, then runs the platform invoice sync and an attribution pass.
InvoiceGenerationWorkflow invoices every active client (or the ones given)
for a period, one activity per client.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from activities.sync import (
        sync_transaction_shard,
        sync_platform_invoices,
        attribution_pass,
        SyncShardInput,
        SyncInvoicesInput,
        AttributionPassInput,
    )
    from activities.invoicing import (
        list_billable_clients,
        generate_client_invoice,
        ListClientsInput,
        GenerateInvoiceInput,
    )
    from jobs.sync_job import split_window


# Platform calls: backoff inside the client first, then a few activity retries
PLATFORM_RETRY = RetryPolicy(
    maximum_attempts=3,
    initial_interval=timedelta(seconds=5),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(minutes=2),
    non_retryable_error_types=["FPAuthError", "FPValidationError", "ValueError"],
)

# Business errors are deterministic; retrying cannot fix them
INVOICE_RETRY = RetryPolicy(
    maximum_attempts=3,
    initial_interval=timedelta(seconds=2),
    backoff_coefficient=2.0,
    non_retryable_error_types=[
        "ClientNotFoundError",
        "RoundingToleranceExceeded",
        "InvoiceNumberCollisionError",
        "FileExistsError",
        "ValueError",
    ],
)


@dataclass
class TransactionSyncInput:
    """Input for TransactionSyncWorkflow.

    Attributes:
        start: Window start (ISO datetime, inclusive)
        end: Window end (ISO datetime, exclusive)
        mode: "dry_run" or "live"
        shard_days: Shard length in days
        max_parallel_shards: Shards synced concurrently
        db_path: Optional store override
    """
    start: str
    end: str
    mode: str = "dry_run"
    shard_days: int = 1
    max_parallel_shards: int = 4
    db_path: Optional[str] = None


@dataclass
class InvoiceGenerationInput:
    """Input for InvoiceGenerationWorkflow.

    Attributes:
        period_start / period_end: Inclusive billing period (ISO dates)
        mode: "dry_run" or "live"
        client_ids: Clients to invoice; all active clients when empty
        invoice_date: Invoice date (ISO date); defaults to the activity's today
    """
    period_start: str
    period_end: str
    mode: str = "dry_run"
    client_ids: List[str] = field(default_factory=list)
    invoice_date: Optional[str] = None
    db_path: Optional[str] = None
    artifacts_dir: Optional[str] = None


@workflow.defn
class TransactionSyncWorkflow:
    """Sync a window of platform billing data.

    1. Split the window into shards
    2. Sync shards, a bounded number at a time
    3. Sync platform invoice records
    4. Re-run attribution over rows still unattributed
    """

    @workflow.run
    async def run(self, input: TransactionSyncInput) -> dict:
        workflow.logger.info(f"Transaction sync {input.start}..{input.end} ({input.mode})")
        shards = split_window(
            datetime.fromisoformat(input.start), datetime.fromisoformat(input.end), input.shard_days
        )

        results = []
        failed = []
        batch = max(1, input.max_parallel_shards)
        for i in range(0, len(shards), batch):
            group = shards[i:i + batch]
            outcomes = await asyncio.gather(
                *[
                    workflow.execute_activity(
                        sync_transaction_shard,
                        SyncShardInput(start=s.isoformat(), end=e.isoformat(), mode=input.mode, db_path=input.db_path),
                        start_to_close_timeout=timedelta(minutes=15),
                        retry_policy=PLATFORM_RETRY,
                    )
                    for s, e in group
                ],
                return_exceptions=True,
            )
            for (s, e), outcome in zip(group, outcomes):
                if isinstance(outcome, ActivityError):
                    workflow.logger.error(f"Shard {s.isoformat()}..{e.isoformat()} failed: {outcome.cause}")
                    failed.append({"shard": f"{s.isoformat()}..{e.isoformat()}", "error": str(outcome.cause)})
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)

        invoices = await workflow.execute_activity(
            sync_platform_invoices,
            SyncInvoicesInput(start=input.start, end=input.end, mode=input.mode, db_path=input.db_path),
            start_to_close_timeout=timedelta(minutes=10),
            retry_policy=PLATFORM_RETRY,
        )
        attribution = await workflow.execute_activity(
            attribution_pass,
            AttributionPassInput(mode=input.mode, db_path=input.db_path),
            start_to_close_timeout=timedelta(minutes=30),
        )

        partial = [r.shard for r in results if r.failed_queries]
        workflow.logger.info(
            f"Transaction sync done: {len(results)} shards ok, {len(failed)} failed, {len(partial)} partial"
        )
        return {
            "mode": input.mode,
            "shards": len(shards),
            "succeeded": len(results),
            "failed": failed,
            "partial": partial,
            "fetched": sum(r.fetched for r in results),
            "inserted": sum(r.inserted for r in results),
            "attributed": sum(r.attributed for r in results),
            "unattributed": sum(r.unattributed for r in results),
            "platform_invoices_ok": invoices.ok,
            "attribution_pass_ok": attribution.ok,
        }


@workflow.defn
class InvoiceGenerationWorkflow:
    """Generate invoices for a billing period.

    Clients are processed one at a time; a failed or blocked client is
    reported and the rest continue.
    """

    @workflow.run
    async def run(self, input: InvoiceGenerationInput) -> dict:
        client_ids = input.client_ids or await workflow.execute_activity(
            list_billable_clients,
            ListClientsInput(db_path=input.db_path),
            start_to_close_timeout=timedelta(seconds=30),
        )
        workflow.logger.info(
            f"Invoice generation {input.period_start}..{input.period_end} for {len(client_ids)} clients ({input.mode})"
        )

        invoices = []
        failed = []
        for client_id in client_ids:
            try:
                output = await workflow.execute_activity(
                    generate_client_invoice,
                    GenerateInvoiceInput(
                        client_id=client_id,
                        period_start=input.period_start,
                        period_end=input.period_end,
                        mode=input.mode,
                        invoice_date=input.invoice_date,
                        db_path=input.db_path,
                        artifacts_dir=input.artifacts_dir,
                    ),
                    start_to_close_timeout=timedelta(minutes=10),
                    retry_policy=INVOICE_RETRY,
                )
            except ActivityError as e:
                workflow.logger.error(f"Invoice generation failed for {client_id}: {e.cause}")
                failed.append({"client_id": client_id, "error": str(e.cause)})
                continue
            invoices.append(output)

        return {
            "mode": input.mode,
            "clients": len(client_ids),
            "finalized": [o.invoice_number for o in invoices if o.status == "finalized"],
            "previewed": [o.invoice_number for o in invoices if o.status == "preview"],
            "blocked": [{"client_id": o.client_id, "checks": o.failed_checks} for o in invoices if o.status == "blocked"],
            "empty": [o.client_id for o in invoices if o.status == "empty"],
            "failed": failed,
        }
