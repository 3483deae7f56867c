"""
Transaction Fetcher

Retrieves billing events from the fulfillment platform and returns one
deduplicated set keyed by transaction id.

A time window is fetched by running every sub-query from
``build_query_plans`` through a bounded pool of concurrent workers. Each
sub-query paginates until the platform returns no cursor, a page brings no
record the sub-query has not already seen (pagination loop), or the page
ceiling is reached. A failed sub-query is logged and reported; the rest of
the window still completes.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set

from pydantic import ValidationError

from connectors.fulfillment.fp_client import FPApiError
from connectors.fulfillment.fp_models import RawTransaction, TransactionPage
from core.models.canonical import Transaction
from core.observability.logging import get_logger
from core.observability.metrics import record_processing_time
from ingestion.strategies import TransactionQuery, build_query_plans

logger = get_logger(__name__)


class TransactionSource(Protocol):
    """Read side of the platform API used by the fetcher (FPClient satisfies it)."""

    async def query_transactions(self, body: Dict[str, Any], cursor: Optional[str] = None) -> TransactionPage:
        ...

    async def list_invoice_transactions(self, invoice_id: str, page_size: int = 250) -> List[Dict[str, Any]]:
        ...


# =============================================================================
# Results
# =============================================================================

STOP_EXHAUSTED = "exhausted"
STOP_NO_NEW_RECORDS = "no_new_records"
STOP_MAX_PAGES = "max_pages"
STOP_ERROR = "error"


@dataclass
class SubQueryReport:
    """Outcome of one sub-query."""
    key: str
    pages: int = 0
    records: int = 0
    new_records: int = 0
    stop_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.stop_reason == STOP_ERROR


@dataclass
class RejectedRecord:
    """A platform record that failed boundary validation."""
    query_key: str
    transaction_id: Optional[str]
    error: str


@dataclass
class FetchResult:
    """Merged, deduplicated fetch output plus per-sub-query reporting."""
    transactions: Dict[str, Transaction] = field(default_factory=dict)
    reports: List[SubQueryReport] = field(default_factory=list)
    rejected: List[RejectedRecord] = field(default_factory=list)

    @property
    def failed_queries(self) -> List[SubQueryReport]:
        return [r for r in self.reports if r.failed]

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_queries)

    def to_summary(self) -> Dict[str, Any]:
        return {
            "transactions": len(self.transactions),
            "sub_queries": len(self.reports),
            "failed_sub_queries": [r.key for r in self.failed_queries],
            "pages": sum(r.pages for r in self.reports),
            "records_seen": sum(r.records for r in self.reports),
            "rejected": len(self.rejected),
            "capped_sub_queries": [r.key for r in self.reports if r.stop_reason == STOP_MAX_PAGES],
        }


def _merge(merged: Dict[str, Transaction], tx: Transaction) -> bool:
    """Add ``tx`` to the merge map. Returns True if the id was new.

    When two sub-queries return the same id, the copy that already carries
    the platform invoice id is kept.
    """
    existing = merged.get(tx.transaction_id)
    if existing is None:
        merged[tx.transaction_id] = tx
        return True
    if existing.external_invoice_id is None and tx.external_invoice_id is not None:
        merged[tx.transaction_id] = tx
    return False


def _raw_id(item: Any) -> Optional[str]:
    if isinstance(item, dict) and item.get("transaction_id") is not None:
        return str(item["transaction_id"])
    return None


def parse_record(item: Dict[str, Any]) -> Transaction:
    """Validate one raw platform record and map it to a Transaction.

    Raises:
        ValidationError: The record is malformed
    """
    return RawTransaction.model_validate(item).to_transaction()


# =============================================================================
# Fetcher
# =============================================================================

class TransactionFetcher:
    """
    Fetches complete, deduplicated transaction sets from the platform.

    Usage:
        fetcher = TransactionFetcher(client, page_size=250, max_pages=20, concurrency=4)
        result = await fetcher.fetch_window(start, end)
        result.transactions  # {transaction_id: Transaction}
    """

    def __init__(
        self,
        source: TransactionSource,
        page_size: int = 250,
        max_pages: int = 20,
        concurrency: int = 4,
    ):
        self.source = source
        self.page_size = page_size
        self.max_pages = max_pages
        self.concurrency = concurrency

    async def fetch_window(
        self,
        start: datetime,
        end: datetime,
        plans: Optional[Sequence[TransactionQuery]] = None,
    ) -> FetchResult:
        """Fetch every transaction charged in [start, end)."""
        started = time.monotonic()
        plans = list(plans) if plans is not None else build_query_plans(start, end)
        result = FetchResult()
        semaphore = asyncio.Semaphore(self.concurrency)

        # Workers share one merge map; the event loop runs them one at a time
        # between awaits, so merge updates never interleave.
        reports = await asyncio.gather(
            *(self._run_query(plan, result, semaphore) for plan in plans)
        )
        result.reports = list(reports)

        duration_ms = (time.monotonic() - started) * 1000
        record_processing_time("fetch_window", duration_ms)
        logger.info(
            f"Fetched {len(result.transactions)} transactions from {len(plans)} sub-queries",
            extra_fields=result.to_summary(),
        )
        return result

    async def _run_query(
        self,
        query: TransactionQuery,
        result: FetchResult,
        semaphore: asyncio.Semaphore,
    ) -> SubQueryReport:
        report = SubQueryReport(key=query.key)
        body = query.to_body(self.page_size)
        seen_in_query = set()
        cursor: Optional[str] = None

        async with semaphore:
            while True:
                if report.pages >= self.max_pages:
                    report.stop_reason = STOP_MAX_PAGES
                    logger.warning(
                        f"Sub-query {query.key} hit the {self.max_pages}-page ceiling",
                        extra_fields={"records": report.records},
                    )
                    break

                try:
                    page = await self.source.query_transactions(body, cursor)
                except (FPApiError, ValidationError) as e:
                    report.stop_reason = STOP_ERROR
                    report.error = str(e)
                    logger.warning(
                        f"Sub-query {query.key} failed on page {report.pages + 1}: {e}",
                        extra_fields={"query": query.key},
                    )
                    break

                report.pages += 1
                unseen_on_page = 0
                for position, item in enumerate(page.items):
                    report.records += 1
                    # Malformed records still count as progress; records without
                    # an id are keyed by page position.
                    raw_id = _raw_id(item)
                    seen_key = raw_id if raw_id is not None else f"@{report.pages}:{position}"
                    if seen_key not in seen_in_query:
                        seen_in_query.add(seen_key)
                        unseen_on_page += 1
                    try:
                        tx = parse_record(item)
                    except ValidationError as e:
                        result.rejected.append(RejectedRecord(
                            query_key=query.key,
                            transaction_id=raw_id,
                            error=str(e),
                        ))
                        continue
                    if _merge(result.transactions, tx):
                        report.new_records += 1

                if not page.next:
                    report.stop_reason = STOP_EXHAUSTED
                    break
                if unseen_on_page == 0:
                    report.stop_reason = STOP_NO_NEW_RECORDS
                    break
                cursor = page.next

        return report

    async def fetch_by_invoice(self, invoice_id: str) -> FetchResult:
        """Fetch every transaction the platform lists on one of its invoices."""
        result = FetchResult()
        report = SubQueryReport(key=f"invoice={invoice_id}")
        try:
            items = await self.source.list_invoice_transactions(invoice_id, page_size=self.page_size)
        except (FPApiError, ValidationError) as e:
            report.stop_reason = STOP_ERROR
            report.error = str(e)
            logger.warning(f"Invoice {invoice_id} transaction listing failed: {e}")
            result.reports.append(report)
            return result

        report.pages = 1
        for item in items:
            report.records += 1
            try:
                tx = parse_record(item)
            except ValidationError as e:
                result.rejected.append(RejectedRecord(report.key, _raw_id(item), str(e)))
                continue
            if tx.external_invoice_id is None:
                tx = tx.model_copy(update={"external_invoice_id": invoice_id})
            if _merge(result.transactions, tx):
                report.new_records += 1
        report.stop_reason = STOP_EXHAUSTED
        result.reports.append(report)
        return result

    async def fetch_listings(self, invoice_ids: Iterable[str]) -> "InvoiceListings":
        """Transaction ids the platform lists on each of ``invoice_ids``.

        Rejected records still count as listed: the platform has them even
        if we cannot store them. A failed listing is recorded as an error
        for that invoice only.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def one(invoice_id: str):
            async with semaphore:
                return invoice_id, await self.fetch_by_invoice(invoice_id)

        listings = InvoiceListings()
        for invoice_id, result in await asyncio.gather(*(one(i) for i in sorted(set(invoice_ids)))):
            if result.is_partial:
                listings.errors[invoice_id] = result.failed_queries[0].error or "listing failed"
                continue
            ids = set(result.transactions)
            ids.update(r.transaction_id for r in result.rejected if r.transaction_id)
            listings.listed[invoice_id] = ids
        return listings


@dataclass
class InvoiceListings:
    """Per platform invoice: the listed transaction ids, or why they are unknown."""
    listed: Dict[str, Set[str]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)