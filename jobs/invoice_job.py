"""
Invoice Generation Job

Per client and period, in order:
1. load       attributed, uninvoiced transactions
2. markup     price every transaction
3. rounding   reconcile category rounding
4. assemble   build the invoice and summary
5. preflight  reconciliation gate; FAIL stops here. LIVE runs compare
              against the platform's own listing of every referenced
              platform invoice; a listing that was not fetched is a WARN
6. (LIVE)     reserve number, render, store document, record + mark

DRY_RUN runs stages 1-5 with a previewed number and writes nothing.
"""

import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from attribution.db import lookup_shipment_details
from core.config import get_settings
from core.errors import BillingError, ClientNotFoundError, PreflightBlockedError
from core.models.canonical import InvoiceSummary, LineCategory, ReferenceKind, Transaction
from core.models.refs import DataReference, ReconciliationReport
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import record_job_completed, record_job_failed, record_job_started
from core.storage.artifacts import ArtifactStore
from ingestion.db import iter_client_period
from ingestion.fetcher import InvoiceListings, TransactionFetcher, TransactionSource
from invoicing.assembler import AssembledInvoice, InvoiceAssembler
from invoicing.db import finalize_invoice, get_client, list_clients, peek_invoice_number, reserve_invoice_number
from invoicing.renderer import DocumentRenderer, JsonInvoiceRenderer
from jobs.models import JobMode, JobSummary
from jobs.stages import stage
from markup_engine.engine import MarkupEngine
from reconciliation.engine import preflight_invoice

logger = get_logger(__name__)

STATUS_EMPTY = "empty"
STATUS_PREVIEW = "preview"
STATUS_BLOCKED = "blocked"
STATUS_FINALIZED = "finalized"


@dataclass
class InvoiceRunResult:
    """Outcome of one client's invoice generation."""
    client_id: str
    mode: JobMode
    status: str
    invoice: Optional[AssembledInvoice] = None
    report: Optional[ReconciliationReport] = None
    document: Optional[DataReference] = None
    report_ref: Optional[DataReference] = None
    marked: int = 0

    @property
    def invoice_number(self) -> Optional[str]:
        return self.invoice.invoice_number if self.invoice else None

    @property
    def summary(self) -> Optional[InvoiceSummary]:
        return self.invoice.summary if self.invoice else None

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "mode": self.mode.value,
            "status": self.status,
            "invoice_number": self.invoice_number,
            "line_count": self.summary.line_count if self.summary else 0,
            "total_amount": str(self.summary.total_amount) if self.summary else None,
            "amount_due": str(self.summary.amount_due) if self.summary else None,
            "rounding_adjustments": len(self.invoice.adjustments) if self.invoice else 0,
            "preflight": self.report.status if self.report else None,
            "document": self.document.storage_uri if self.document else None,
            "marked": self.marked,
        }


def referenced_platform_invoices(transactions: Iterable[Transaction]) -> Set[str]:
    return {t.external_invoice_id for t in transactions if t.external_invoice_id}


async def fetch_invoice_listings(
    client_id: str,
    period_start: date,
    period_end: date,
    source: TransactionSource,
    db_path: Optional[Path] = None,
) -> InvoiceListings:
    """Platform listings for every platform invoice the client's uninvoiced lines reference."""
    settings = get_settings()
    referenced = referenced_platform_invoices(iter_client_period(client_id, period_start, period_end, True, db_path))
    if not referenced:
        return InvoiceListings()
    fetcher = TransactionFetcher(source, page_size=settings.fetch_page_size, concurrency=settings.fetch_concurrency)
    listings = await fetcher.fetch_listings(referenced)
    logger.info(
        f"Fetched platform listings for {len(listings.listed)}/{len(referenced)} invoices of {client_id}",
        extra_fields={"failed": sorted(listings.errors)},
    )
    return listings


async def collect_invoice_listings(
    client_ids: Iterable[str],
    period_start: date,
    period_end: date,
    source: TransactionSource,
    db_path: Optional[Path] = None,
) -> Dict[str, InvoiceListings]:
    """{client id: listings}, one client at a time."""
    return {
        client_id: await fetch_invoice_listings(client_id, period_start, period_end, source, db_path)
        for client_id in client_ids
    }


def _listing_inputs(
    transactions: Iterable[Transaction],
    listings: Optional[InvoiceListings],
    mode: JobMode,
) -> Tuple[Optional[Dict[str, Set[str]]], Optional[Dict[str, str]]]:
    """(listed ids, listing errors) for preflight.

    In LIVE mode every referenced platform invoice without a listing is
    reported as unverified.
    """
    if listings is None and not mode.is_live:
        return None, None
    listings = listings or InvoiceListings()
    errors = dict(listings.errors)
    if mode.is_live:
        for invoice_id in referenced_platform_invoices(transactions) - set(listings.listed) - set(errors):
            errors[invoice_id] = "platform listing not fetched"
    return listings.listed, errors


def generate_invoice(
    client_id: str,
    period_start: date,
    period_end: date,
    mode: JobMode,
    renderer: Optional[DocumentRenderer] = None,
    db_path: Optional[Path] = None,
    artifacts_dir: Optional[Path] = None,
    prefix: Optional[str] = None,
    invoice_date: Optional[date] = None,
    reference_totals: Optional[Mapping[LineCategory, Decimal]] = None,
    platform_listings: Optional[InvoiceListings] = None,
) -> InvoiceRunResult:
    """Run the invoice pipeline for one client and period.

    Raises:
        ClientNotFoundError: Unknown client
        RoundingToleranceExceeded: Rounding residual beyond tolerance
        PreflightBlockedError: LIVE run whose preflight reported FAIL
        InvoiceNumberCollisionError: The reserved number already exists
    """
    settings = get_settings()
    prefix = prefix or settings.invoice_number_prefix
    invoice_date = invoice_date or date.today()
    renderer = renderer or JsonInvoiceRenderer()
    assembler = InvoiceAssembler(prefix=prefix)

    with stage("load", client_id=client_id):
        client = get_client(client_id, db_path)
        if client is None:
            raise ClientNotFoundError(client_id)
        transactions = list(iter_client_period(client_id, period_start, period_end, True, db_path))
    if not transactions:
        logger.info(f"No uninvoiced transactions for {client_id} in {period_start}..{period_end}")
        return InvoiceRunResult(client_id=client_id, mode=mode, status=STATUS_EMPTY)

    with stage("markup", client_id=client_id, transactions=len(transactions)):
        shipment_ids = [t.reference_id for t in transactions if t.reference_kind == ReferenceKind.SHIPMENT]
        details = lookup_shipment_details(shipment_ids, db_path)
        line_items = MarkupEngine.for_client(client_id, db_path).price_all(transactions, details)

    with stage("rounding", client_id=client_id):
        line_items, adjustments = assembler.reconcile(line_items, reference_totals)

    with stage("assemble", client_id=client_id):
        preview_number = peek_invoice_number(client_id, invoice_date, prefix, db_path)
        invoice = assembler.assemble(
            client, period_start, period_end, line_items,
            invoice_number=preview_number, invoice_date=invoice_date, adjustments=adjustments,
        )

    with stage("preflight", client_id=client_id):
        listed, listing_errors = _listing_inputs(transactions, platform_listings, mode)
        report = preflight_invoice(invoice, listed, db_path, listing_errors)

    result = InvoiceRunResult(client_id=client_id, mode=mode, status=STATUS_PREVIEW, invoice=invoice, report=report)
    store = ArtifactStore(artifacts_dir or settings.artifacts_dir)

    if report.is_blocking:
        result.status = STATUS_BLOCKED
        if not mode.is_live:
            return result
        result.report_ref = store.put_report(report)
        raise PreflightBlockedError(
            f"Preflight failed for {client_id} ({len(report.failed_checks('BLOCK'))} blocking checks)",
            report=report,
        )

    if not mode.is_live:
        return result

    with stage("finalize", client_id=client_id):
        number, _ = reserve_invoice_number(client_id, invoice_date, prefix, db_path)
        invoice = invoice.with_number(number, is_preview=False)
        with with_correlation(invoice_number=number):
            document = store.put_invoice_document(
                client_id, number, renderer.render(invoice), renderer.content_type, renderer.file_extension,
            )
            result.marked = finalize_invoice(invoice, document, db_path)
            result.report_ref = store.put_report(report)
            logger.info(
                f"Finalized invoice {number}",
                extra_fields={"amount_due": str(invoice.summary.amount_due), "lines": len(invoice.line_items)},
            )

    result.invoice = invoice
    result.document = document
    result.status = STATUS_FINALIZED
    return result


def _record(summary: JobSummary, result: InvoiceRunResult) -> None:
    unit = result.client_id
    if result.status == STATUS_EMPTY:
        summary.record_skip(unit, "no uninvoiced transactions in period")
    elif result.status == STATUS_BLOCKED:
        failed = [c["check_id"] for c in result.report.failed_checks("BLOCK")]
        summary.record_failure(unit, PreflightBlockedError(f"preflight FAIL: {', '.join(failed)}"))
        summary.details.append(result.to_dict())
    else:
        summary.record_success(result.to_dict())
        if result.report and result.report.status == "WARN":
            summary.record_warning(unit, "preflight WARN")


def _run(
    job_type: str,
    client_ids: List[str],
    period_start: date,
    period_end: date,
    mode: JobMode,
    listings_by_client: Optional[Mapping[str, InvoiceListings]] = None,
    **kwargs,
) -> JobSummary:
    summary = JobSummary(job_type=job_type, mode=mode)
    listings_by_client = listings_by_client or {}
    record_job_started(job_type)
    with with_correlation(job_id=summary.job_id, job_mode=mode.value):
        for client_id in client_ids:
            with with_correlation(client_id=client_id):
                try:
                    result = generate_invoice(
                        client_id, period_start, period_end, mode,
                        platform_listings=listings_by_client.get(client_id), **kwargs,
                    )
                except PreflightBlockedError as e:
                    summary.record_failure(client_id, e)
                    if e.report is not None:
                        summary.details.append({"client_id": client_id, "preflight": e.report.summary})
                    continue
                except (BillingError, FileExistsError, sqlite3.Error) as e:
                    logger.exception(f"Invoice generation failed for {client_id}: {e}")
                    summary.record_failure(client_id, e)
                    continue
                _record(summary, result)
    summary.finish()
    if summary.ok:
        record_job_completed(job_type, summary.duration_ms)
    else:
        record_job_failed(job_type)
    return summary


def run_invoice_generation(
    client_id: str,
    period_start: date,
    period_end: date,
    mode: JobMode,
    **kwargs,
) -> JobSummary:
    """Generate one client's invoice and report the outcome as a JobSummary."""
    return _run("invoice_generation", [client_id], period_start, period_end, mode, **kwargs)


def run_invoice_batch(
    period_start: date,
    period_end: date,
    mode: JobMode,
    db_path: Optional[Path] = None,
    **kwargs,
) -> JobSummary:
    """Generate invoices for every active client. One failing client does not stop the rest."""
    client_ids = [c.client_id for c in list_clients(active_only=True, db_path=db_path)]
    return _run("invoice_batch", client_ids, period_start, period_end, mode, db_path=db_path, **kwargs)
