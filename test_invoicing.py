"""
Invoicing tests: summary totals, category rounding, invoice numbers,
finalization and document rendering.
"""

import csv
import io
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest

from conftest import make_tx
from core.errors import BillingError, ClientNotFoundError, InvoiceNumberCollisionError, RoundingToleranceExceeded
from core.models.canonical import BillingCategory, Client, LineCategory
from ingestion.db import get_transaction, iter_client_period, upsert_transactions
from invoicing.assembler import InvoiceAssembler, format_invoice_number
from invoicing.db import (
    finalize_invoice,
    get_client,
    get_generated_invoice,
    peek_invoice_number,
    release_invoice,
    reserve_invoice_number,
    upsert_client,
)
from invoicing.renderer import CsvLineItemRenderer, JsonInvoiceRenderer
from invoicing.rounding import reconcile_rounding
from markup_engine.engine import MarkupEngine
from markup_engine.models import MarkupRule, MarkupType

CLIENT = "C-100"
PERIOD = (date(2024, 1, 1), date(2024, 1, 31))
INVOICE_DATE = date(2024, 2, 1)

PICK_RULE = MarkupRule(name="Pick 15%", markup_type=MarkupType.PERCENTAGE, markup_value=Decimal("15"),
                       client_id=CLIENT, billing_category=BillingCategory.SHIPMENT_FEES, id=1)
SHIP_RULE = MarkupRule(name="Shipping at cost", markup_type=MarkupType.FIXED, markup_value=Decimal("0"),
                       client_id=CLIENT, billing_category=BillingCategory.SHIPMENTS, id=2)


def example_transactions():
    return [
        make_tx("T1", "10.00", fee_type="Per Pick Fee", client_id=CLIENT),
        make_tx("T2", "5.20", surcharge=Decimal("0.20"), client_id=CLIENT),
        make_tx("T3", "-3.00", fee_type="Credit", transaction_type="Credit", client_id=CLIENT),
    ]


def price(transactions, rules=(PICK_RULE, SHIP_RULE)):
    return MarkupEngine(list(rules), CLIENT).price_all(transactions)


def penny_picks(n=3):
    """Pick lines whose 15% markup rounds up on every line (0.015 -> 0.02)."""
    return price([make_tx(f"P{i}", "0.10", fee_type="Per Pick Fee", client_id=CLIENT) for i in range(1, n + 1)])


@pytest.fixture
def stored_client(db_path, client):
    upsert_client(client, db_path)
    return client


class TestSummary:

    def test_worked_example_totals(self, client):
        invoice = InvoiceAssembler().build(client, *PERIOD, price(example_transactions()), invoice_date=INVOICE_DATE)
        s = invoice.summary

        assert s.subtotal == Decimal("15.00")
        assert s.total_markup == Decimal("1.50")
        assert s.total_surcharge == Decimal("0.20")
        assert s.total_amount == Decimal("16.70")
        assert s.total_credits == Decimal("-3.00")
        assert s.amount_due == Decimal("13.70")
        assert s.line_count == 3
        assert [c.category for c in s.by_category] == [LineCategory.SHIPPING, LineCategory.PICK_FEES]
        assert s.credits.count == 1
        assert invoice.adjustments == []

    def test_lines_are_in_display_order(self, client):
        invoice = InvoiceAssembler().build(client, *PERIOD, price(example_transactions()), invoice_date=INVOICE_DATE)
        assert [i.transaction_id for i in invoice.line_items] == ["T2", "T1", "T3"]

    def test_preview_number_uses_next_sequence(self, client):
        client = client.model_copy(update={"next_invoice_number": 37})
        invoice = InvoiceAssembler(prefix="JP").build(client, *PERIOD, [], invoice_date=date(2025, 12, 1))
        assert invoice.invoice_number == "JPHS-0037-120125"
        assert invoice.is_preview
        assert invoice.summary.amount_due == Decimal("0")


class TestRounding:

    def test_residual_is_pushed_onto_one_line(self):
        items, adjustments = reconcile_rounding(penny_picks())
        assert sum(i.billed_amount for i in items) == Decimal("0.35")
        assert len(adjustments) == 1
        adjustment = adjustments[0]
        assert adjustment.category == LineCategory.PICK_FEES
        assert adjustment.residual == Decimal("-0.01")
        assert adjustment.transaction_id == "P1"

        adjusted = items[0]
        assert adjusted.billed_amount == Decimal("0.11")
        assert adjusted.rounding_adjustment == Decimal("-0.01")
        assert adjusted.billed_amount == adjusted.expected_billed()

    def test_residual_goes_to_largest_line_with_or_without_a_rule(self):
        big = price([make_tx("BIG", "100.00", fee_type="Per Pick Fee", client_id=CLIENT)], rules=(SHIP_RULE,))
        assert big[0].applied_rule_id is None

        items, adjustments = reconcile_rounding(big + penny_picks())

        assert [a.transaction_id for a in adjustments] == ["BIG"]
        assert items[0].billed_amount == Decimal("99.99")
        assert [i.billed_amount for i in items[1:]] == [Decimal("0.12")] * 3
        assert sum(i.billed_amount for i in items) == Decimal("100.35")

    def test_reference_total_within_tolerance(self):
        items, adjustments = reconcile_rounding(penny_picks(), {LineCategory.PICK_FEES: Decimal("0.38")})
        assert sum(i.billed_amount for i in items) == Decimal("0.38")
        assert adjustments[0].residual == Decimal("0.02")

    def test_residual_beyond_tolerance_raises(self):
        with pytest.raises(RoundingToleranceExceeded) as exc:
            reconcile_rounding(penny_picks(), {LineCategory.PICK_FEES: Decimal("1.00")})
        assert exc.value.category == LineCategory.PICK_FEES.value

    def test_clean_categories_are_untouched(self):
        original = price(example_transactions())
        items, adjustments = reconcile_rounding(original)
        assert adjustments == []
        assert items == original

    def test_assembled_totals_match_reconciled_lines(self, client):
        invoice = InvoiceAssembler().build(client, *PERIOD, penny_picks(), invoice_date=INVOICE_DATE)
        assert invoice.summary.total_amount == Decimal("0.35")
        assert invoice.to_dict()["rounding_adjustments"][0]["residual"] == "-0.01"


class TestInvoiceNumbers:

    def test_format(self):
        assert format_invoice_number("JP", "HS", 7, date(2024, 3, 9)) == "JPHS-0007-030924"

    def test_reserve_is_sequential_and_peek_reserves_nothing(self, db_path, stored_client):
        assert peek_invoice_number(CLIENT, INVOICE_DATE, "JP", db_path) == "JPHS-0001-020124"
        assert reserve_invoice_number(CLIENT, INVOICE_DATE, "JP", db_path) == ("JPHS-0001-020124", 1)
        assert reserve_invoice_number(CLIENT, INVOICE_DATE, "JP", db_path) == ("JPHS-0002-020124", 2)
        assert peek_invoice_number(CLIENT, INVOICE_DATE, "JP", db_path) == "JPHS-0003-020124"

    def test_concurrent_reservations_never_share_a_number(self, db_path, stored_client):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: reserve_invoice_number(CLIENT, INVOICE_DATE, "JP", db_path), range(20)
            ))
        assert sorted(seq for _, seq in results) == list(range(1, 21))
        assert get_client(CLIENT, db_path).next_invoice_number == 21

    def test_unknown_client(self, db_path):
        with pytest.raises(ClientNotFoundError):
            reserve_invoice_number("C-404", INVOICE_DATE, "JP", db_path)

    def test_upsert_never_lowers_the_sequence(self, db_path, stored_client):
        reserve_invoice_number(CLIENT, INVOICE_DATE, "JP", db_path)
        upsert_client(Client(client_id=CLIENT, name="Renamed", short_code="HS", next_invoice_number=1), db_path)
        stored = get_client(CLIENT, db_path)
        assert stored.name == "Renamed"
        assert stored.next_invoice_number == 2


class TestFinalize:

    def _finalized_ready(self, db_path, client, transactions, number):
        upsert_transactions(transactions, db_path)
        invoice = InvoiceAssembler().build(client, *PERIOD, price(transactions), invoice_date=INVOICE_DATE)
        return invoice.with_number(number, is_preview=False)

    def test_finalize_records_and_marks(self, db_path, stored_client):
        invoice = self._finalized_ready(db_path, stored_client, example_transactions(), "JPHS-0001-020124")
        assert finalize_invoice(invoice, db_path=db_path) == 3

        record = get_generated_invoice("JPHS-0001-020124", db_path)
        assert record["status"] == "finalized"
        assert record["amount_due"] == "13.70"
        stored = get_transaction("T1", db_path)
        assert stored.internal_invoice_id == "JPHS-0001-020124"
        assert list(iter_client_period(CLIENT, *PERIOD, True, db_path)) == []

    def test_number_collision(self, db_path, stored_client):
        invoice = self._finalized_ready(db_path, stored_client, example_transactions(), "JPHS-0001-020124")
        finalize_invoice(invoice, db_path=db_path)
        with pytest.raises(InvoiceNumberCollisionError):
            finalize_invoice(invoice, db_path=db_path)

    def test_already_invoiced_line_rolls_back(self, db_path, stored_client):
        first = self._finalized_ready(db_path, stored_client, example_transactions()[:2], "JPHS-0001-020124")
        finalize_invoice(first, db_path=db_path)

        overlapping = example_transactions()[1:]
        second = self._finalized_ready(db_path, stored_client, overlapping, "JPHS-0002-020124")
        with pytest.raises(BillingError):
            finalize_invoice(second, db_path=db_path)
        assert get_generated_invoice("JPHS-0002-020124", db_path) is None
        assert get_transaction("T3", db_path).internal_invoice_id is None
        assert get_transaction("T2", db_path).internal_invoice_id == "JPHS-0001-020124"

    def test_release_frees_transactions_but_keeps_the_number(self, db_path, stored_client):
        invoice = self._finalized_ready(db_path, stored_client, example_transactions(), "JPHS-0001-020124")
        finalize_invoice(invoice, db_path=db_path)

        assert release_invoice("JPHS-0001-020124", db_path) == 3
        assert release_invoice("JPHS-0001-020124", db_path) == 0
        assert get_generated_invoice("JPHS-0001-020124", db_path)["status"] == "released"
        assert len(list(iter_client_period(CLIENT, *PERIOD, True, db_path))) == 3
        with pytest.raises(InvoiceNumberCollisionError):
            finalize_invoice(invoice, db_path=db_path)


class TestRenderers:

    def test_json_document(self, client):
        invoice = InvoiceAssembler().build(client, *PERIOD, price(example_transactions()), invoice_date=INVOICE_DATE)
        doc = json.loads(JsonInvoiceRenderer().render(invoice))
        assert doc["invoice_number"] == invoice.invoice_number
        assert doc["summary"]["total_amount"] == "16.70"
        assert len(doc["line_items"]) == 3

    def test_csv_document(self, client):
        invoice = InvoiceAssembler().build(client, *PERIOD, price(example_transactions()), invoice_date=INVOICE_DATE)
        rows = list(csv.DictReader(io.StringIO(CsvLineItemRenderer().render(invoice).decode("utf-8"))))
        assert [r["transaction_id"] for r in rows] == ["T2", "T1", "T3"]
        assert rows[1]["billed_amount"] == "11.50"
        assert rows[1]["applied_rule_name"] == "Pick 15%"
