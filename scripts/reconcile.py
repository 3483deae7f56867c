"""
Reconciliation diagnostics.

Two modes:
- window (default): every platform invoice dated in the window checked
  against the local store (counts, amounts, missing/phantom transactions,
  mixed clients, unattributed siblings, attribution gaps)
- preflight (--client): a dry-run invoice for one client and period with
  its validator report

With --fetch-listings, each platform invoice's own transaction listing is
fetched so the per-invoice membership checks can run; a listing that fails
to fetch is reported as a WARN. Reports are printed;
--save writes them under ARTIFACTS_DIR/reports.
"""

import argparse
import asyncio
import json
import sys
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Iterable

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from connectors.fulfillment.fp_client import FPApiConfig, FPClient
from core.config import get_settings
from core.models.refs import ReconciliationReport
from core.observability.logging import configure_from_settings
from core.storage.artifacts import ArtifactStore
from ingestion.db import iter_external_invoices
from ingestion.fetcher import InvoiceListings, TransactionFetcher
from jobs.invoice_job import fetch_invoice_listings, generate_invoice
from jobs.models import JobMode
from reconciliation.engine import reconcile_window


async def fetch_listings(invoice_ids: Iterable[str]) -> InvoiceListings:
    settings = get_settings()
    async with FPClient(FPApiConfig.from_settings(settings)) as client:
        fetcher = TransactionFetcher(client, page_size=settings.fetch_page_size, concurrency=settings.fetch_concurrency)
        return await fetcher.fetch_listings(invoice_ids)


async def fetch_client_listings(client_id: str, start: date, end: date, db_path: Path) -> InvoiceListings:
    async with FPClient(FPApiConfig.from_settings(get_settings())) as client:
        return await fetch_invoice_listings(client_id, start, end, client, db_path)


def print_report(report: ReconciliationReport) -> None:
    print("=" * 60)
    print(f"{report.scope}: {report.status}")
    print("=" * 60)
    for check in report.checks:
        mark = "PASS" if check["passed"] else check["severity"]
        print(f"  [{mark:5}] {check['check_id']}: {check['message']}")
    print(f"  Metrics: {json.dumps(report.metrics)}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile local billing data against the platform")
    parser.add_argument("--start", required=True, type=date.fromisoformat, help="Window/period start (inclusive)")
    parser.add_argument("--end", required=True, type=date.fromisoformat, help="Window/period end (inclusive)")
    parser.add_argument("--client", default=None, help="Run an invoice preflight for this client instead")
    parser.add_argument("--fetch-listings", action="store_true", help="Fetch platform per-invoice listings")
    parser.add_argument("--save", action="store_true", help="Write the report JSON under ARTIFACTS_DIR")
    parser.add_argument("--db", type=Path, default=None, help="Override BILLING_DB_PATH")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_from_settings(settings)
    db_path = args.db or settings.db_path

    window_start = datetime.combine(args.start, time.min)
    window_end = datetime.combine(args.end, time.min) + timedelta(days=1)

    listings = None
    if args.client:
        if args.fetch_listings:
            listings = asyncio.run(fetch_client_listings(args.client, args.start, args.end, db_path))
        result = generate_invoice(
            args.client, args.start, args.end, JobMode.DRY_RUN,
            db_path=db_path, platform_listings=listings,
        )
        if result.report is None:
            print(f"{args.client}: no uninvoiced transactions in period")
            return 0
        report = result.report
    else:
        if args.fetch_listings:
            invoice_ids = [inv.invoice_id for inv in iter_external_invoices(window_start, window_end, db_path)]
            listings = asyncio.run(fetch_listings(invoice_ids))
        report = reconcile_window(
            window_start, window_end,
            listings.listed if listings else None, db_path,
            listings.errors if listings else None,
        )

    print_report(report)
    if args.save:
        ref = ArtifactStore(settings.artifacts_dir).put_report(report)
        print(f"  Saved: {ref.storage_uri}")
    return 1 if report.is_blocking else 0


if __name__ == "__main__":
    sys.exit(main())
