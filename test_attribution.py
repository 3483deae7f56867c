"""
Attribution tests: direct joins per reference kind, free-text parsing,
sibling fallback, one-way attribution and the per-run lookup cache.
"""

import pytest

from attribution.db import upsert_source_rows
from attribution.models import AttributionMethod
from attribution.repository import AttributionRepository
from attribution.resolver import AttributionResolver, parse_inventory_id, parse_order_number, parse_shipment_id
from conftest import make_tx
from core.errors import AttributionConflictError
from core.models.canonical import ReferenceKind
from core.storage.cache import CachedLookup
from ingestion.db import get_transaction, record_attributions, upsert_transactions


@pytest.fixture
def sources(db_path):
    upsert_source_rows("shipments", [
        {"shipment_id": "900001", "client_id": "C-100", "service_tier": "Ground", "weight_oz": "12"},
        {"shipment_id": "900002", "client_id": "C-200"},
    ], db_path)
    upsert_source_rows("orders", [{"order_id": "O-1", "client_id": "C-200", "order_number": "10045"}], db_path)
    upsert_source_rows("receiving_orders", [{"receiving_order_id": "R-77", "client_id": "C-100"}], db_path)
    upsert_source_rows("returns", [{"return_id": "RT-5", "client_id": "C-100"}], db_path)
    upsert_source_rows("inventory_items", [{"inventory_id": "5521", "client_id": "C-300"}], db_path)
    return db_path


@pytest.fixture
def resolver(sources):
    return AttributionResolver(AttributionRepository(sources))


def tx(transaction_id, kind, reference_id, comment=None, **overrides):
    details = {"Comment": comment} if comment else {}
    return make_tx(transaction_id, "1.00", reference_kind=kind, reference_id=reference_id,
                   additional_details=details, **overrides)


class TestParsing:

    @pytest.mark.parametrize("text,expected", [
        ("Return for order #10045", "10045"),
        ("ORDER NUMBER: A-2291", "A-2291"),
        ("customer ref #884211", "884211"),
        ("damaged in transit", None),
        (None, None),
    ])
    def test_order_number(self, text, expected):
        assert parse_order_number(text) == expected

    def test_shipment_id(self):
        assert parse_shipment_id("Relabel shipment 900001 please") == "900001"
        assert parse_shipment_id("shipment 12") is None

    def test_inventory_id(self):
        assert parse_inventory_id("FC1-5521-A03", {}) == "5521"
        assert parse_inventory_id("5521", {"InventoryId": 5521}) == "5521"
        assert parse_inventory_id("garbage", {}) is None


class TestDirectJoins:

    def test_shipment(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.SHIPMENT, "900001"))
        assert result.client_id == "C-100"
        assert result.method == AttributionMethod.SHIPMENT

    def test_receiving_order(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.RECEIVING_ORDER, "R-77"))
        assert (result.client_id, result.method) == ("C-100", AttributionMethod.RECEIVING_ORDER)

    def test_return_by_id(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.RETURN, "RT-5"))
        assert (result.client_id, result.method) == ("C-100", AttributionMethod.RETURN)

    def test_return_by_order_number_in_comment(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.RETURN, "RT-404", comment="Return for order #10045"))
        assert (result.client_id, result.method) == ("C-200", AttributionMethod.RETURN_ORDER_NUMBER)

    def test_return_with_unparseable_comment(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.RETURN, "RT-404", comment="damaged in transit"))
        assert result.client_id is None
        assert result.method == AttributionMethod.PARSE_FAILED
        assert "damaged in transit" in result.note

    def test_inventory_location(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.INVENTORY_LOCATION, "FC1-5521-A03"))
        assert (result.client_id, result.method) == ("C-300", AttributionMethod.INVENTORY)

    def test_inventory_without_id_is_parse_failure(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.INVENTORY_LOCATION, "FC1"))
        assert result.method == AttributionMethod.PARSE_FAILED

    def test_ticket_comment_with_shipment(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.OTHER, "TKT-1", comment="Relabel shipment 900002"))
        assert (result.client_id, result.method) == ("C-200", AttributionMethod.TICKET_REFERENCE)

    def test_ticket_comment_without_reference(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.OTHER, "TKT-1", comment="general question"))
        assert result.method == AttributionMethod.PARSE_FAILED

    def test_ticket_without_comment_is_unresolved(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.OTHER, "TKT-1"))
        assert result.method == AttributionMethod.UNRESOLVED

    def test_tenant_direct_is_excluded(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.TENANT_DIRECT, "Default"))
        assert result.client_id is None
        assert result.is_excluded

    def test_already_attributed_is_kept(self, resolver):
        result = resolver.resolve(tx("T1", ReferenceKind.SHIPMENT, "900002", client_id="C-100"))
        assert (result.client_id, result.method) == ("C-100", AttributionMethod.EXISTING)
        assert not result.is_new


class TestSiblingFallback:

    def test_inherits_owner_established_in_same_batch(self, resolver):
        orphan = tx("T2", ReferenceKind.SHIPMENT, "999999", external_invoice_id="INV-1")
        anchor = tx("T1", ReferenceKind.SHIPMENT, "900001", external_invoice_id="INV-1")
        orphan_result, anchor_result = resolver.resolve_batch([orphan, anchor])
        assert anchor_result.method == AttributionMethod.SHIPMENT
        assert orphan_result.client_id == "C-100"
        assert orphan_result.method == AttributionMethod.SIBLING_INVOICE

    def test_disagreeing_siblings_leave_it_unattributed(self, sources, resolver):
        upsert_transactions([
            tx("S1", ReferenceKind.SHIPMENT, "900001", external_invoice_id="INV-2", client_id="C-100"),
            tx("S2", ReferenceKind.SHIPMENT, "900002", external_invoice_id="INV-2", client_id="C-200"),
        ], sources)
        result = resolver.resolve(tx("T3", ReferenceKind.SHIPMENT, "999999", external_invoice_id="INV-2"))
        assert result.client_id is None
        assert result.method == AttributionMethod.AMBIGUOUS_SIBLINGS

    def test_tenant_direct_never_inherits(self, sources, resolver):
        upsert_transactions([
            tx("S1", ReferenceKind.SHIPMENT, "900001", external_invoice_id="INV-3", client_id="C-100"),
        ], sources)
        result = resolver.resolve(tx("T2", ReferenceKind.TENANT_DIRECT, "Default", external_invoice_id="INV-3"))
        assert result.method == AttributionMethod.TENANT_DIRECT


class TestOneWayAttribution:

    def test_with_client_is_set_once(self):
        t = make_tx("T1", "1.00").with_client("C-100")
        assert t.with_client("C-100") is t
        with pytest.raises(AttributionConflictError):
            t.with_client("C-200")

    def test_store_rejects_reattribution(self, db_path):
        upsert_transactions([make_tx("T1", "1.00")], db_path)
        assert record_attributions([("T1", "C-100", "shipment", None)], db_path) == 1
        assert record_attributions([("T1", "C-100", "shipment", None)], db_path) == 0
        with pytest.raises(AttributionConflictError):
            record_attributions([("T1", "C-200", "shipment", None)], db_path)
        assert get_transaction("T1", db_path).client_id == "C-100"

    def test_upsert_does_not_clear_attribution(self, db_path):
        upsert_transactions([make_tx("T1", "1.00")], db_path)
        record_attributions([("T1", "C-100", "shipment", None)], db_path)
        stats = upsert_transactions([make_tx("T1", "1.25")], db_path)
        stored = get_transaction("T1", db_path)
        assert stats.updated == 1
        assert stored.client_id == "C-100"
        assert str(stored.amount) == "1.25"


class TestCachedLookup:

    def test_batches_and_caches_misses(self):
        calls = []

        def loader(keys):
            calls.append(list(keys))
            return {k: k.upper() for k in keys if k != "missing"}

        cache = CachedLookup(loader, max_size=10)
        cache.prime(["a", "b", "missing"])
        assert cache.get("a") == "A"
        assert cache.get("missing") is None
        assert calls == [["a", "b", "missing"]]
        assert cache.stats.hits == 2

    def test_evicts_least_recently_used(self):
        cache = CachedLookup(lambda keys: {k: k for k in keys}, max_size=2)
        cache.get("a")
        cache.get("b")
        cache.get("a")
        cache.get("c")
        assert len(cache) == 2
        assert cache.stats.evictions == 1
        cache.get("b")
        assert cache.stats.loads == 4

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            CachedLookup(lambda keys: {}, max_size=0)
