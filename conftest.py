"""Shared pytest fixtures: an isolated billing database and settings per test."""

from datetime import datetime
from decimal import Decimal

import pytest

from connectors.fulfillment.fp_client import FPRetryExhaustedError
from connectors.fulfillment.fp_models import RawInvoice, TransactionPage
from core.config import reset_settings
from core.models.canonical import Client, ReferenceKind, Transaction
from core.observability.metrics import MetricsCollector
from jobs.schema import init_billing_db


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point every test at its own database and artifacts directory."""
    monkeypatch.setenv("BILLING_DB_PATH", str(tmp_path / "billing.db"))
    monkeypatch.setenv("ARTIFACTS_DIR", str(tmp_path / "artifacts"))
    monkeypatch.setenv("FP_API_TOKEN", "test-token")
    monkeypatch.setenv("FP_MIN_REQUEST_INTERVAL", "0")
    reset_settings()
    MetricsCollector.reset()
    yield
    reset_settings()
    MetricsCollector.reset()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "billing.db"
    init_billing_db(path)
    return path


@pytest.fixture
def artifacts_dir(tmp_path):
    return tmp_path / "artifacts"


@pytest.fixture
def client():
    return Client(client_id="C-100", name="Harbor Supply", short_code="HS")


def make_tx(transaction_id, amount, fee_type="Shipping", **overrides) -> Transaction:
    """A canonical transaction with sensible defaults for tests."""
    fields = dict(
        transaction_id=transaction_id,
        reference_id=overrides.pop("reference_id", f"S-{transaction_id}"),
        reference_kind=ReferenceKind.SHIPMENT,
        platform_reference_type="Shipment",
        fee_type=fee_type,
        amount=Decimal(str(amount)),
        charge_date=datetime(2024, 1, 15, 12, 0),
    )
    fields.update(overrides)
    return Transaction(**fields)


def raw_record(transaction_id, amount="1.00", **overrides) -> dict:
    """A platform wire record as returned by transactions:query."""
    record = {
        "transaction_id": transaction_id,
        "amount": amount,
        "currency_code": "USD",
        "charge_date": "2024-01-15T12:00:00Z",
        "invoiced_status": False,
        "transaction_fee": "Shipping",
        "reference_id": f"S-{transaction_id}",
        "reference_type": "Shipment",
        "transaction_type": "Charge",
        "additional_details": {},
    }
    record.update(overrides)
    return record


class FakePlatform:
    """In-memory platform: filters records by the query body and pages by offset.

    ``cap`` limits how many records one filtered query can reach, like the
    real API. Queries filtering on a transaction type in ``fail_types`` fail.
    """

    def __init__(self, records, cap=None, fail_types=(), invoice_listings=None, invoices=None):
        self.records = records
        self.cap = cap
        self.fail_types = set(fail_types)
        self.invoice_listings = invoice_listings or {}
        self.invoices = invoices or []
        self.calls = []

    @staticmethod
    def _matches(record, body):
        if "transaction_types" in body and record["transaction_type"] not in body["transaction_types"]:
            return False
        if "reference_types" in body and record["reference_type"] not in body["reference_types"]:
            return False
        if "invoice_types" in body and record.get("invoice_type") not in body["invoice_types"]:
            return False
        if "invoiced_status" in body and record["invoiced_status"] != body["invoiced_status"]:
            return False
        return True

    async def query_transactions(self, body, cursor=None):
        self.calls.append((dict(body), cursor))
        if self.fail_types.intersection(body.get("transaction_types", [])):
            raise FPRetryExhaustedError("transactions:query failed after 6 attempts: HTTP 503")
        matches = [r for r in self.records if self._matches(r, body)]
        if self.cap is not None:
            matches = matches[:self.cap]
        offset = int(cursor or 0)
        size = body["page_size"]
        nxt = str(offset + size) if offset + size < len(matches) else None
        return TransactionPage(items=matches[offset:offset + size], next=nxt)

    async def list_invoice_transactions(self, invoice_id, page_size=250):
        return self.invoice_listings[invoice_id]

    async def list_invoices(self, start, end=None, page_size=100):
        return [RawInvoice.model_validate(i) for i in self.invoices]
