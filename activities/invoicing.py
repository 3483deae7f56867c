"""Invoicing activities for the billing pipeline.

Temporal activities that list billable clients and run invoice generation for
one client. A blocked preflight is a business outcome, so it is returned as a
status rather than raised. LIVE runs first fetch the platform's listing of
every platform invoice the client's lines reference, for the preflight gate.
"""

from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import List, Optional

from temporalio import activity

from connectors.fulfillment.fp_client import FPApiConfig, FPClient
from core.config import get_settings
from core.errors import PreflightBlockedError
from core.observability.logging import log_activity_complete, log_activity_error, log_activity_start, with_correlation
from invoicing.db import list_clients
from jobs.invoice_job import STATUS_BLOCKED, fetch_invoice_listings, generate_invoice
from jobs.models import JobMode


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ListClientsInput:
    db_path: Optional[str] = None


@dataclass
class GenerateInvoiceInput:
    """Input for generate_client_invoice activity.

    Attributes:
        client_id: Client to invoice
        period_start: Inclusive period start (ISO date)
        period_end: Inclusive period end (ISO date)
        mode: "dry_run" or "live"
        invoice_date: Invoice date (ISO date); defaults to today
        db_path: Optional store override
        artifacts_dir: Optional artifact root override
    """
    client_id: str
    period_start: str
    period_end: str
    mode: str = JobMode.DRY_RUN.value
    invoice_date: Optional[str] = None
    db_path: Optional[str] = None
    artifacts_dir: Optional[str] = None


@dataclass
class GenerateInvoiceOutput:
    """Output from generate_client_invoice activity.

    Attributes:
        client_id: Client invoiced
        status: empty, preview, blocked or finalized
        invoice_number: Reserved number (LIVE) or previewed number (DRY_RUN)
        amount_due: Invoice amount due as a decimal string
        preflight_status: PASS, WARN or FAIL
        failed_checks: IDs of failed checks
        document_uri: Stored document (LIVE only)
    """
    client_id: str
    status: str
    invoice_number: Optional[str] = None
    amount_due: Optional[str] = None
    preflight_status: Optional[str] = None
    failed_checks: Optional[List[str]] = None
    document_uri: Optional[str] = None


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def list_billable_clients(input: ListClientsInput) -> List[str]:
    """IDs of every active client."""
    db_path = Path(input.db_path) if input.db_path else None
    return [c.client_id for c in list_clients(active_only=True, db_path=db_path)]


@activity.defn
async def generate_client_invoice(input: GenerateInvoiceInput) -> GenerateInvoiceOutput:
    """Generate (DRY_RUN) or finalize (LIVE) one client's invoice for a period."""
    with with_correlation(client_id=input.client_id, job_mode=input.mode):
        log_activity_start("generate_client_invoice", period_start=input.period_start, period_end=input.period_end)
        mode = JobMode(input.mode)
        period_start = date.fromisoformat(input.period_start)
        period_end = date.fromisoformat(input.period_end)
        db_path = Path(input.db_path) if input.db_path else None

        listings = None
        if mode.is_live:
            async with FPClient(FPApiConfig.from_settings(get_settings())) as client:
                listings = await fetch_invoice_listings(input.client_id, period_start, period_end, client, db_path)

        try:
            result = generate_invoice(
                input.client_id,
                period_start,
                period_end,
                mode,
                db_path=db_path,
                platform_listings=listings,
                artifacts_dir=Path(input.artifacts_dir) if input.artifacts_dir else None,
                invoice_date=date.fromisoformat(input.invoice_date) if input.invoice_date else None,
            )
        except PreflightBlockedError as e:
            log_activity_error("generate_client_invoice", str(e))
            report = e.report
            return GenerateInvoiceOutput(
                client_id=input.client_id,
                status=STATUS_BLOCKED,
                preflight_status=report.status if report else "FAIL",
                failed_checks=[c["check_id"] for c in report.failed_checks()] if report else None,
            )

        log_activity_complete("generate_client_invoice", status=result.status, invoice_number=result.invoice_number)

    return GenerateInvoiceOutput(
        client_id=input.client_id,
        status=result.status,
        invoice_number=result.invoice_number,
        amount_due=str(result.summary.amount_due) if result.summary else None,
        preflight_status=result.report.status if result.report else None,
        failed_checks=[c["check_id"] for c in result.report.failed_checks()] if result.report else None,
        document_uri=result.document.storage_uri if result.document else None,
    )
