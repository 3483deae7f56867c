"""Sync activities for the billing pipeline.

Temporal activities wrapping the transaction sync, platform invoice sync and
attribution pass jobs. One activity call handles one time shard, so Temporal
retries a failed shard on its own.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from temporalio import activity

from connectors.fulfillment.fp_client import FPApiConfig, FPClient
from core.config import get_settings
from core.observability.logging import log_activity_complete, log_activity_start, with_correlation
from jobs.models import JobMode
from jobs.sync_job import run_attribution_pass, run_invoice_sync, sync_shard


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SyncShardInput:
    """Input for sync_transaction_shard activity.

    Attributes:
        start: Shard start (ISO datetime, inclusive)
        end: Shard end (ISO datetime, exclusive)
        mode: "dry_run" or "live"
        db_path: Optional store override
    """
    start: str
    end: str
    mode: str = JobMode.DRY_RUN.value
    db_path: Optional[str] = None


@dataclass
class SyncShardOutput:
    """Output from sync_transaction_shard activity."""
    shard: str
    fetched: int
    inserted: int
    updated: int
    attributed: int
    unattributed: int
    rejected: int
    failed_queries: List[str] = field(default_factory=list)


@dataclass
class SyncInvoicesInput:
    start: str
    end: str
    mode: str = JobMode.DRY_RUN.value
    db_path: Optional[str] = None


@dataclass
class AttributionPassInput:
    mode: str = JobMode.DRY_RUN.value
    db_path: Optional[str] = None
    batch_size: int = 1000


@dataclass
class JobSummaryOutput:
    """A JobSummary flattened for the workflow history."""
    job_id: str
    job_type: str
    ok: bool
    successes: int
    failures: int
    skips: int
    warnings: int


def _path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def _client() -> FPClient:
    return FPClient(FPApiConfig.from_settings(get_settings()))


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def sync_transaction_shard(input: SyncShardInput) -> SyncShardOutput:
    """Fetch, attribute and (LIVE) store one time shard of transactions.

    Platform errors propagate so Temporal's retry policy applies. A partial
    fetch is returned, not raised; the caller decides what to do with it.
    """
    mode = JobMode(input.mode)
    settings = get_settings()
    with with_correlation(shard=f"{input.start}..{input.end}", job_mode=mode.value):
        log_activity_start("sync_transaction_shard", start=input.start, end=input.end)
        async with _client() as client:
            result = await sync_shard(
                client,
                datetime.fromisoformat(input.start),
                datetime.fromisoformat(input.end),
                mode,
                _path(input.db_path),
                page_size=settings.fetch_page_size,
                max_pages=settings.fetch_max_pages,
                concurrency=settings.fetch_concurrency,
            )
        log_activity_complete("sync_transaction_shard", fetched=result.fetched, partial=result.partial)

    if result.partial:
        activity.logger.warning(f"Shard {result.shard} partial: {', '.join(result.failed_queries)}")
    return SyncShardOutput(
        shard=result.shard,
        fetched=result.fetched,
        inserted=result.inserted,
        updated=result.updated,
        attributed=result.attributed,
        unattributed=result.unattributed,
        rejected=result.rejected,
        failed_queries=result.failed_queries,
    )


def _summary_output(summary) -> JobSummaryOutput:
    return JobSummaryOutput(
        job_id=summary.job_id,
        job_type=summary.job_type,
        ok=summary.ok,
        successes=summary.successes,
        failures=len(summary.failures),
        skips=len(summary.skips),
        warnings=len(summary.warnings),
    )


@activity.defn
async def sync_platform_invoices(input: SyncInvoicesInput) -> JobSummaryOutput:
    """Sync the platform's invoice records for a date range."""
    activity.logger.info(f"Syncing platform invoices {input.start}..{input.end}")
    async with _client() as client:
        summary = await run_invoice_sync(
            datetime.fromisoformat(input.start),
            datetime.fromisoformat(input.end),
            JobMode(input.mode),
            client,
            _path(input.db_path),
        )
    return _summary_output(summary)


@activity.defn
async def attribution_pass(input: AttributionPassInput) -> JobSummaryOutput:
    """Re-resolve stored unattributed transactions."""
    activity.logger.info(f"Attribution pass ({input.mode})")
    summary = run_attribution_pass(JobMode(input.mode), _path(input.db_path), input.batch_size)
    return _summary_output(summary)
