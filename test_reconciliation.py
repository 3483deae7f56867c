"""
Reconciliation tests: the finalization preflight and window diagnostics
against a seeded store.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from conftest import make_tx
from core.models.canonical import ExternalInvoice, ReferenceKind
from ingestion.db import iter_client_period, upsert_external_invoices, upsert_transactions
from invoicing.assembler import InvoiceAssembler
from markup_engine.engine import MarkupEngine
from reconciliation.engine import CheckStatus, preflight_invoice, reconcile_window

CLIENT = "C-100"
PERIOD = (date(2024, 1, 1), date(2024, 1, 31))


def check(report, check_id):
    return next(c for c in report.checks if c["check_id"] == check_id)


def assemble(db_path, client, transactions=None):
    if transactions is None:
        transactions = list(iter_client_period(CLIENT, *PERIOD, True, db_path))
    items = MarkupEngine([], CLIENT).price_all(transactions)
    return InvoiceAssembler().build(client, *PERIOD, items, invoice_date=date(2024, 2, 1))


@pytest.fixture
def seeded(db_path):
    upsert_transactions([
        make_tx("T1", "10.00", client_id=CLIENT, external_invoice_id="7001"),
        make_tx("T2", "4.50", client_id=CLIENT, external_invoice_id="7001"),
        make_tx("T3", "2.25", fee_type="Per Pick Fee", client_id=CLIENT),
    ], db_path)
    upsert_external_invoices([
        ExternalInvoice(invoice_id="7001", invoice_type="Shipping", invoice_date=datetime(2024, 1, 20),
                        amount=Decimal("14.50")),
    ], db_path)
    return db_path


class TestPreflight:

    def test_consistent_invoice_passes(self, seeded, client):
        report = preflight_invoice(assemble(seeded, client), db_path=seeded)
        assert report.status == CheckStatus.PASS.value
        assert not report.is_blocking
        assert report.metrics["line_count"] == 3
        assert report.client_id == CLIENT

    def test_missing_line_blocks(self, seeded, client):
        partial = [t for t in iter_client_period(CLIENT, *PERIOD, True, seeded) if t.transaction_id != "T3"]
        report = preflight_invoice(assemble(seeded, client, partial), db_path=seeded)
        assert report.is_blocking
        coverage = check(report, "C3_LINE_COVERAGE")
        assert not coverage["passed"]
        assert coverage["evidence"]["missing"] == ["T3"]

    def test_tampered_line_math_blocks(self, seeded, client):
        invoice = assemble(seeded, client)
        invoice.line_items[0] = invoice.line_items[0].model_copy(update={"billed_amount": Decimal("99.99")})
        report = preflight_invoice(invoice, db_path=seeded)
        assert not check(report, "I1_LINE_MATH")["passed"]
        assert not check(report, "I2_SUMMARY_INVARIANTS")["passed"]
        assert report.status == CheckStatus.FAIL.value

    def test_platform_amount_mismatch_blocks(self, seeded, client):
        upsert_external_invoices([ExternalInvoice(invoice_id="7001", amount=Decimal("15.00"))], seeded)
        report = preflight_invoice(assemble(seeded, client), db_path=seeded)
        amount = check(report, "X2_AMOUNT_MATCH")
        assert not amount["passed"]
        assert amount["evidence"]["difference"] == "-0.50"

    def test_platform_listing_gaps(self, seeded, client):
        listings = {"7001": {"T1", "T9"}}
        report = preflight_invoice(assemble(seeded, client), listings, seeded)
        assert check(report, "X1_COUNT_MATCH")["passed"]
        assert check(report, "X3_MISSING_LOCALLY")["evidence"]["missing"] == ["T9"]
        phantom = check(report, "X4_PHANTOM_LOCAL")
        assert phantom["severity"] == "WARN"
        assert phantom["evidence"]["phantom"] == ["T2"]
        assert report.is_blocking

    def test_mixed_clients_on_platform_invoice_blocks(self, seeded, client):
        upsert_transactions([make_tx("T4", "1.00", client_id="C-200", external_invoice_id="7001")], seeded)
        upsert_external_invoices([ExternalInvoice(invoice_id="7001", amount=Decimal("15.50"))], seeded)
        report = preflight_invoice(assemble(seeded, client), db_path=seeded)
        assert not check(report, "X5_SINGLE_CLIENT")["passed"]
        assert report.is_blocking

    def test_unattributed_sibling_warns(self, seeded, client):
        upsert_transactions([make_tx("T5", "1.00", external_invoice_id="7001")], seeded)
        upsert_external_invoices([ExternalInvoice(invoice_id="7001", amount=Decimal("15.50"))], seeded)
        report = preflight_invoice(assemble(seeded, client), db_path=seeded)
        siblings = check(report, "C1_UNATTRIBUTED_SIBLINGS")
        assert siblings["evidence"]["by_invoice"] == {"7001": ["T5"]}
        assert report.status == CheckStatus.WARN.value

    def test_unsynced_platform_invoice_warns(self, db_path, client):
        upsert_transactions([make_tx("T1", "3.00", client_id=CLIENT, external_invoice_id="8001")], db_path)
        report = preflight_invoice(assemble(db_path, client), db_path=db_path)
        assert not check(report, "X0_EXTERNAL_INVOICE_KNOWN")["passed"]
        assert report.status == CheckStatus.WARN.value


class TestWindow:

    def test_window_counts_attribution_gaps(self, seeded):
        upsert_transactions([
            make_tx("T6", "1.00"),
            make_tx("T7", "0.50", reference_kind=ReferenceKind.TENANT_DIRECT, reference_id="Default"),
        ], seeded)
        report = reconcile_window(datetime(2024, 1, 1), datetime(2024, 2, 1), db_path=seeded)

        gaps = check(report, "W1_ATTRIBUTION_GAPS")
        assert gaps["evidence"] == {"unattributed": 2, "tenant_direct": 1}
        assert not gaps["passed"]
        assert report.metrics["transactions"] == 5
        assert report.metrics["platform_invoices"] == 1
        assert check(report, "X2_AMOUNT_MATCH")["passed"]
        assert report.status == CheckStatus.WARN.value

    def test_window_outside_range_is_empty(self, seeded):
        report = reconcile_window(datetime(2023, 1, 1), datetime(2023, 2, 1), db_path=seeded)
        assert report.metrics["transactions"] == 0
        assert report.status == CheckStatus.PASS.value
