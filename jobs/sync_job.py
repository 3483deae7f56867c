"""
Transaction Sync Job

Fetch -> validate -> attribute -> upsert, sharded by time range.

Each shard is independently idempotent: the store upserts by transaction
id and attribution is set at most once, so a failed shard is re-run on its
own. DRY_RUN performs the fetch and attribution and reports what would be
written; it writes nothing.
"""

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from attribution.models import AttributionMethod, AttributionResult
from attribution.repository import AttributionRepository
from attribution.resolver import AttributionResolver, summarize_results
from connectors.fulfillment.fp_client import FPApiError
from connectors.fulfillment.fp_models import RawInvoice
from core.config import get_settings
from core.errors import BillingError
from core.models.canonical import Transaction
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import record_job_completed, record_job_failed, record_job_started
from core.storage.database import chunked
from ingestion.db import (
    get_existing_ids,
    get_transactions,
    iter_unattributed,
    record_attribution_notes,
    record_attributions,
    upsert_external_invoices,
    upsert_transactions,
)
from ingestion.fetcher import TransactionFetcher, TransactionSource
from jobs.models import JobMode, JobSummary
from jobs.stages import stage

logger = get_logger(__name__)


class InvoiceSource(Protocol):
    async def list_invoices(self, start, end=None, page_size: int = 100) -> List[RawInvoice]:
        ...


# =============================================================================
# Sharding
# =============================================================================

def split_window(start: datetime, end: datetime, shard_days: int = 1) -> List[Tuple[datetime, datetime]]:
    """Split [start, end) into consecutive shards of at most ``shard_days``."""
    if shard_days < 1:
        raise ValueError("shard_days must be at least 1")
    if end <= start:
        return []
    shards = []
    cursor = start
    step = timedelta(days=shard_days)
    while cursor < end:
        upper = min(cursor + step, end)
        shards.append((cursor, upper))
        cursor = upper
    return shards


def shard_key(start: datetime, end: datetime) -> str:
    return f"{start.isoformat()}..{end.isoformat()}"


# =============================================================================
# Attribution step
# =============================================================================

@dataclass
class AttributionOutcome:
    results: List[AttributionResult] = field(default_factory=list)
    new_attributions: List[tuple] = field(default_factory=list)
    notes: List[tuple] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return summarize_results(self.results)


def attribute(transactions: Sequence[Transaction], db_path: Optional[Path] = None) -> AttributionOutcome:
    """Resolve owners for a batch. Already-attributed rows keep their client."""
    resolver = AttributionResolver(AttributionRepository(db_path))
    outcome = AttributionOutcome(results=resolver.resolve_batch(transactions))
    for result in outcome.results:
        if result.is_new:
            outcome.new_attributions.append(
                (result.transaction_id, result.client_id, result.method.value, result.note)
            )
        elif not result.is_attributed:
            outcome.notes.append((result.transaction_id, result.method.value, result.note))
    return outcome


def _with_stored_clients(
    transactions: Sequence[Transaction], db_path: Optional[Path]
) -> List[Transaction]:
    """Fetched copies carrying the client already stored for them."""
    stored = get_transactions([t.transaction_id for t in transactions], db_path)
    merged = []
    for tx in transactions:
        existing = stored.get(tx.transaction_id)
        if existing is not None and existing.client_id and tx.client_id is None:
            tx = tx.with_client(existing.client_id)
        merged.append(tx)
    return merged


# =============================================================================
# Shard
# =============================================================================

@dataclass
class ShardResult:
    shard: str
    fetched: int = 0
    rejected: int = 0
    inserted: int = 0
    updated: int = 0
    attributed: int = 0
    unattributed: int = 0
    failed_queries: List[str] = field(default_factory=list)
    attribution_methods: Dict[str, int] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.failed_queries)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["partial"] = self.partial
        return d


async def sync_shard(
    source: TransactionSource,
    start: datetime,
    end: datetime,
    mode: JobMode,
    db_path: Optional[Path] = None,
    page_size: int = 250,
    max_pages: int = 20,
    concurrency: int = 4,
) -> ShardResult:
    """Sync one time shard."""
    result = ShardResult(shard=shard_key(start, end))

    with stage("fetch", shard=result.shard):
        fetcher = TransactionFetcher(source, page_size=page_size, max_pages=max_pages, concurrency=concurrency)
        fetched = await fetcher.fetch_window(start, end)
    result.fetched = len(fetched.transactions)
    result.rejected = len(fetched.rejected)
    result.failed_queries = [r.key for r in fetched.failed_queries]
    transactions = sorted(fetched.transactions.values(), key=lambda t: t.transaction_id)

    if mode.is_live:
        with stage("upsert", shard=result.shard):
            stats = upsert_transactions(transactions, db_path)
        result.inserted, result.updated = stats.inserted, stats.updated
    else:
        existing = get_existing_ids([t.transaction_id for t in transactions], db_path)
        result.updated = len(existing)
        result.inserted = len(transactions) - len(existing)

    with stage("attribute", shard=result.shard):
        outcome = attribute(_with_stored_clients(transactions, db_path), db_path)
    result.attributed = len(outcome.new_attributions)
    result.unattributed = len(outcome.notes)
    result.attribution_methods = outcome.counts

    if mode.is_live:
        record_attributions(outcome.new_attributions, db_path)
        record_attribution_notes(outcome.notes, db_path)

    logger.info(
        f"Shard {result.shard}: {result.fetched} fetched, {result.inserted} new, "
        f"{result.attributed} attributed, {result.unattributed} unattributed",
        extra_fields=result.to_dict(),
    )
    return result


async def run_transaction_sync(
    start: datetime,
    end: datetime,
    mode: JobMode,
    source: TransactionSource,
    db_path: Optional[Path] = None,
    shard_days: int = 1,
    page_size: Optional[int] = None,
    max_pages: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> JobSummary:
    """Sync every shard of [start, end). A failing shard does not stop the others."""
    settings = get_settings()
    summary = JobSummary(job_type="transaction_sync", mode=mode)
    record_job_started(summary.job_type)

    with with_correlation(job_id=summary.job_id, job_mode=mode.value):
        for shard_start, shard_end in split_window(start, end, shard_days):
            key = shard_key(shard_start, shard_end)
            with with_correlation(shard=key):
                try:
                    result = await sync_shard(
                        source, shard_start, shard_end, mode, db_path,
                        page_size=page_size or settings.fetch_page_size,
                        max_pages=max_pages or settings.fetch_max_pages,
                        concurrency=concurrency or settings.fetch_concurrency,
                    )
                except (BillingError, FPApiError, sqlite3.Error) as e:
                    logger.exception(f"Shard {key} failed: {e}")
                    summary.record_failure(key, e)
                    continue

            summary.record_success(result.to_dict())
            if result.partial:
                summary.record_warning(key, f"partial fetch; failed sub-queries: {', '.join(result.failed_queries)}")
            if result.rejected:
                summary.record_warning(key, f"{result.rejected} malformed records rejected")

    summary.finish()
    if summary.ok:
        record_job_completed(summary.job_type, summary.duration_ms)
    else:
        record_job_failed(summary.job_type)
    return summary


# =============================================================================
# Platform invoices
# =============================================================================

async def run_invoice_sync(
    start: datetime,
    end: datetime,
    mode: JobMode,
    source: InvoiceSource,
    db_path: Optional[Path] = None,
) -> JobSummary:
    """Sync the platform's own invoice records (the reconciliation oracle)."""
    summary = JobSummary(job_type="invoice_sync", mode=mode)
    record_job_started(summary.job_type)
    with with_correlation(job_id=summary.job_id, job_mode=mode.value):
        try:
            with stage("fetch_invoices"):
                raw = await source.list_invoices(start, end)
            invoices = [r.to_external_invoice() for r in raw]
            if mode.is_live:
                upsert_external_invoices(invoices, db_path)
            summary.record_success({"invoices": len(invoices), "ids": [i.invoice_id for i in invoices][:50]})
        except (FPApiError, sqlite3.Error) as e:
            logger.exception(f"Platform invoice sync failed: {e}")
            summary.record_failure(f"invoices {start.date()}..{end.date()}", e)
    summary.finish()
    if summary.ok:
        record_job_completed(summary.job_type, summary.duration_ms)
    else:
        record_job_failed(summary.job_type)
    return summary


# =============================================================================
# Attribution pass over stored rows
# =============================================================================

def run_attribution_pass(
    mode: JobMode,
    db_path: Optional[Path] = None,
    batch_size: int = 1000,
) -> JobSummary:
    """Re-resolve stored unattributed transactions.

    New source data (shipments, returns, ...) synced since the transaction
    arrived can make a previously unresolved row attributable.
    """
    summary = JobSummary(job_type="attribution_pass", mode=mode)
    record_job_started(summary.job_type)
    counts: Dict[str, int] = {}

    with with_correlation(job_id=summary.job_id, job_mode=mode.value):
        for batch in chunked(iter_unattributed(db_path), batch_size):
            unit = f"batch {batch[0].transaction_id}..{batch[-1].transaction_id}"
            try:
                outcome = attribute(batch, db_path)
                if mode.is_live:
                    record_attributions(outcome.new_attributions, db_path)
                    record_attribution_notes(outcome.notes, db_path)
            except (BillingError, sqlite3.Error) as e:
                logger.exception(f"Attribution {unit} failed: {e}")
                summary.record_failure(unit, e)
                continue

            for method, n in outcome.counts.items():
                counts[method] = counts.get(method, 0) + n
            summary.record_success({
                "unit": unit,
                "attributed": len(outcome.new_attributions),
                "unattributed": len(outcome.notes),
            })
            excluded = sum(1 for r in outcome.results if r.method == AttributionMethod.TENANT_DIRECT)
            if excluded:
                summary.record_skip(unit, f"{excluded} tenant-direct entries excluded from client billing")

    summary.details.append({"methods": counts})
    summary.finish()
    if summary.ok:
        record_job_completed(summary.job_type, summary.duration_ms)
    else:
        record_job_failed(summary.job_type)
    return summary
