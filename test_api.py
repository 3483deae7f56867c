"""
API tests: health probes and the read-only billing endpoints.
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from attribution.db import upsert_source_rows
from conftest import make_tx
from core.models.canonical import BillingCategory, ReferenceKind
from ingestion.db import record_attribution_notes, upsert_transactions
from invoicing.db import get_client, upsert_client
from markup_engine.db import add_rule
from markup_engine.models import MarkupRule, MarkupType

CLIENT = "C-100"


@pytest.fixture
def api(db_path):
    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def priced_client(db_path, client):
    upsert_client(client, db_path)
    add_rule(MarkupRule(name="Pick 15%", markup_type=MarkupType.PERCENTAGE, markup_value=Decimal("15"),
                        client_id=CLIENT, billing_category=BillingCategory.SHIPMENT_FEES), db_path=db_path)
    return db_path


class TestHealth:

    def test_health_reports_storage_and_metrics(self, api):
        body = api.get("/health").json()
        assert body["status"] == "healthy"
        assert body["services"]["storage"] == "up"
        assert set(body["metrics"]) == {"jobs", "api", "timings"}

    def test_probes(self, api):
        assert api.get("/ready").json() == {"status": "ready"}
        assert api.get("/live").json() == {"status": "alive"}


class TestMarkupPreview:

    def test_matching_rule(self, api, priced_client):
        response = api.post("/billing/markup-preview", json={
            "client_id": CLIENT,
            "billing_category": "shipment_fees",
            "fee_type": "Per Pick Fee",
            "base_amount": "10.00",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["rule_name"] == "Pick 15%"
        assert body["markup_amount"] == "1.50"
        assert body["billed_amount"] == "11.50"
        assert body["candidates"] == ["Pick 15%"]

    def test_no_rule_means_no_markup(self, api, priced_client):
        body = api.post("/billing/markup-preview", json={
            "client_id": CLIENT,
            "billing_category": "storage",
            "fee_type": "Warehousing Fee",
            "base_amount": "4.00",
        }).json()
        assert body["rule_id"] is None
        assert body["billed_amount"] == "4.00"

    def test_unknown_category_is_rejected(self, api):
        response = api.post("/billing/markup-preview", json={
            "client_id": CLIENT, "billing_category": "freight", "fee_type": "x", "base_amount": "1",
        })
        assert response.status_code == 422


class TestPreflight:

    def test_preview_writes_nothing(self, api, priced_client):
        upsert_transactions([make_tx("T1", "10.00", fee_type="Per Pick Fee", client_id=CLIENT)], priced_client)
        response = api.post("/billing/preflight", json={
            "client_id": CLIENT,
            "period_start": "2024-01-01",
            "period_end": "2024-01-31",
            "invoice_date": "2024-02-01",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "preview"
        assert body["invoice"]["invoice_number"] == "JPHS-0001-020124"
        assert body["invoice"]["summary"]["total_amount"] == "11.50"
        assert body["report"]["status"] == "PASS"
        assert get_client(CLIENT, priced_client).next_invoice_number == 1

    def test_nothing_to_invoice(self, api, priced_client):
        body = api.post("/billing/preflight", json={
            "client_id": CLIENT, "period_start": "2024-01-01", "period_end": "2024-01-31",
        }).json()
        assert body["status"] == "empty"
        assert body["invoice"] is None

    def test_unknown_client(self, api):
        response = api.post("/billing/preflight", json={
            "client_id": "C-404", "period_start": "2024-01-01", "period_end": "2024-01-31",
        })
        assert response.status_code == 404

    def test_inverted_period(self, api, priced_client):
        response = api.post("/billing/preflight", json={
            "client_id": CLIENT, "period_start": "2024-02-01", "period_end": "2024-01-01",
        })
        assert response.status_code == 400


class TestUnattributed:

    def test_groups_and_filter(self, api, db_path):
        upsert_source_rows("shipments", [{"shipment_id": "S-T1", "client_id": CLIENT}], db_path)
        upsert_transactions([
            make_tx("T1", "1.00", client_id=CLIENT),
            make_tx("T2", "1.00"),
            make_tx("T3", "1.00"),
            make_tx("T4", "0.25", reference_kind=ReferenceKind.TENANT_DIRECT,
                    platform_reference_type="Default", reference_id="Default"),
        ], db_path)
        record_attribution_notes([
            ("T2", "unresolved", "no shipment S-T2"),
            ("T3", "unresolved", "no shipment S-T3"),
            ("T4", "tenant_direct", None),
        ], db_path)

        body = api.get("/billing/unattributed").json()
        assert body["total"] == 3
        assert body["groups"][0] == {
            "platform_reference_type": "Shipment", "attribution_method": "unresolved", "count": 2,
        }

        filtered = api.get("/billing/unattributed", params={"reference_type": "Default"}).json()
        assert filtered["total"] == 1
        assert filtered["groups"][0]["attribution_method"] == "tenant_direct"
