"""Generate client invoices for a billing period.

Dry run by default: prices, assembles and preflights every invoice and
prints the previews. Pass --live to reserve numbers, store documents and
mark transactions invoiced; live runs first fetch the platform's listing of
every platform invoice the lines reference so preflight can compare them.

Usage:
    python scripts/generate_invoices.py --start 2024-01-01 --end 2024-01-31
    python scripts/generate_invoices.py --start 2024-01-01 --end 2024-01-31 --client C-100 --live
"""

import argparse
import asyncio
import sys
from datetime import date
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from connectors.fulfillment.fp_client import FPApiConfig, FPClient
from core.config import get_settings
from core.observability.logging import configure_from_settings
from invoicing.db import list_clients
from invoicing.renderer import CsvLineItemRenderer, JsonInvoiceRenderer
from jobs.invoice_job import collect_invoice_listings, run_invoice_batch, run_invoice_generation
from jobs.models import JobMode
from jobs.schema import init_billing_db

RENDERERS = {
    "json": JsonInvoiceRenderer,
    "csv": CsvLineItemRenderer,
}


async def fetch_listings(client_ids, start, end, db_path):
    async with FPClient(FPApiConfig.from_settings(get_settings())) as client:
        return await collect_invoice_listings(client_ids, start, end, client, db_path)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate client invoices")
    parser.add_argument("--start", required=True, type=date.fromisoformat, help="Period start (inclusive)")
    parser.add_argument("--end", required=True, type=date.fromisoformat, help="Period end (inclusive)")
    parser.add_argument("--client", default=None, help="Only this client (default: all active clients)")
    parser.add_argument("--invoice-date", type=date.fromisoformat, default=None, help="Invoice date (default: today)")
    parser.add_argument("--format", choices=sorted(RENDERERS), default="json", help="Document format")
    parser.add_argument("--live", action="store_true", help="Finalize invoices (default: dry run)")
    parser.add_argument("--db", type=Path, default=None, help="Override BILLING_DB_PATH")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_from_settings(settings)
    if args.end < args.start:
        print("--end is before --start", file=sys.stderr)
        return 2

    mode = JobMode.LIVE if args.live else JobMode.DRY_RUN
    db_path = args.db or settings.db_path
    if mode.is_live:
        init_billing_db(db_path)

    options = dict(
        db_path=db_path,
        renderer=RENDERERS[args.format](),
        invoice_date=args.invoice_date,
    )
    if mode.is_live:
        client_ids = [args.client] if args.client else [
            c.client_id for c in list_clients(active_only=True, db_path=db_path)
        ]
        options["listings_by_client"] = asyncio.run(fetch_listings(client_ids, args.start, args.end, db_path))
    if args.client:
        summary = run_invoice_generation(args.client, args.start, args.end, mode, **options)
    else:
        summary = run_invoice_batch(args.start, args.end, mode, **options)

    summary.print()
    for detail in summary.details:
        if "invoice_number" in detail:
            print(
                f"  {detail['client_id']}: {detail['invoice_number']} [{detail['status']}] "
                f"lines={detail['line_count']} amount_due={detail['amount_due']} preflight={detail['preflight']}"
            )
    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
