"""
Transaction fetcher tests against an in-memory platform.

The fake platform applies the same filters the real API does and enforces
a per-query record cap, so completeness can be checked end to end.
"""

import asyncio
from datetime import datetime

from conftest import FakePlatform, raw_record
from connectors.fulfillment.fp_models import TransactionPage
from ingestion.fetcher import STOP_EXHAUSTED, STOP_MAX_PAGES, STOP_NO_NEW_RECORDS, TransactionFetcher
from ingestion.strategies import TransactionQuery, build_query_plans

START = datetime(2024, 1, 1)
END = datetime(2024, 1, 2)


def typed_records():
    """1000 records: 400 charges, 400 credits, 200 refunds."""
    records = []
    for i in range(1000):
        tx_type = "Charge" if i < 400 else "Credit" if i < 800 else "Refund"
        records.append(raw_record(f"T{i:04d}", transaction_type=tx_type))
    return records


def by_type_plans():
    return [
        TransactionQuery(START, END),
        TransactionQuery(START, END, transaction_type="Charge"),
        TransactionQuery(START, END, transaction_type="Credit"),
        TransactionQuery(START, END, transaction_type="Refund"),
    ]


def fetch(source, plans=None, **kwargs):
    fetcher = TransactionFetcher(source, **kwargs)
    return asyncio.run(fetcher.fetch_window(START, END, plans))


class TestCompleteness:

    def test_capped_queries_union_to_the_full_set(self):
        source = FakePlatform(typed_records(), cap=400)
        result = fetch(source, by_type_plans(), page_size=100, max_pages=20, concurrency=3)

        assert len(result.transactions) == 1000
        assert not result.is_partial
        unfiltered = next(r for r in result.reports if r.key == "all")
        assert unfiltered.records == 400

    def test_duplicates_across_sub_queries_are_merged(self):
        source = FakePlatform(typed_records()[:50])
        result = fetch(source, by_type_plans(), page_size=20)
        assert len(result.transactions) == 50
        assert sum(r.records for r in result.reports) == 100
        assert sum(r.new_records for r in result.reports) == 50

    def test_invoiced_copy_wins_the_merge(self):
        records = [
            raw_record("T1", transaction_type="Charge"),
            raw_record("T1", transaction_type="Credit", invoice_id=7001, invoice_type="Shipping"),
        ]
        result = fetch(FakePlatform(records), by_type_plans()[1:3])
        assert result.transactions["T1"].external_invoice_id == "7001"

    def test_default_plan_has_unique_keys(self):
        plans = build_query_plans(START, END)
        keys = [p.key for p in plans]
        assert len(keys) == len(set(keys))
        assert keys[0] == "all"
        assert "tx=Charge|ref=Shipment|invoiced=false" in keys


class TestFailures:

    def test_failed_sub_query_does_not_stop_the_window(self):
        source = FakePlatform(typed_records(), cap=400, fail_types={"Credit"})
        result = fetch(source, by_type_plans(), page_size=100)

        assert result.is_partial
        assert [r.key for r in result.failed_queries] == ["tx=Credit"]
        assert "HTTP 503" in result.failed_queries[0].error
        # Charges and refunds still arrive
        assert len(result.transactions) == 600
        assert result.to_summary()["failed_sub_queries"] == ["tx=Credit"]

    def test_malformed_records_are_rejected_individually(self):
        bad = raw_record("T2")
        del bad["transaction_fee"]
        records = [raw_record("T1"), bad, raw_record("T3", amount="not money")]
        result = fetch(FakePlatform(records), [TransactionQuery(START, END)])

        assert set(result.transactions) == {"T1"}
        assert sorted(r.transaction_id for r in result.rejected) == ["T2", "T3"]


class TestPagination:

    def test_page_ceiling(self):
        records = [raw_record(f"T{i}") for i in range(50)]
        result = fetch(FakePlatform(records), [TransactionQuery(START, END)], page_size=10, max_pages=2)
        report = result.reports[0]
        assert report.stop_reason == STOP_MAX_PAGES
        assert report.records == 20
        assert result.to_summary()["capped_sub_queries"] == ["all"]

    def test_repeating_page_stops_the_loop(self):
        class StuckPlatform(FakePlatform):
            async def query_transactions(self, body, cursor=None):
                self.calls.append((dict(body), cursor))
                return TransactionPage(items=self.records, next="same-cursor")

        source = StuckPlatform([raw_record("T1"), raw_record("T2")])
        result = fetch(source, [TransactionQuery(START, END)], max_pages=50)
        assert result.reports[0].stop_reason == STOP_NO_NEW_RECORDS
        assert len(source.calls) == 2
        assert len(result.transactions) == 2

    def test_page_of_malformed_records_does_not_end_the_query(self):
        bad = [raw_record("B1", amount="not money"), raw_record("B2", amount="not money")]
        source = FakePlatform(bad + [raw_record("T1"), raw_record("T2")])
        result = fetch(source, [TransactionQuery(START, END)], page_size=2)

        assert [cursor for _, cursor in source.calls] == [None, "2"]
        assert result.reports[0].stop_reason == STOP_EXHAUSTED
        assert set(result.transactions) == {"T1", "T2"}
        assert sorted(r.transaction_id for r in result.rejected) == ["B1", "B2"]

    def test_filters_reach_the_platform(self):
        source = FakePlatform([])
        query = TransactionQuery(START, END, reference_type="WRO", invoiced_status=False)
        fetch(source, [query], page_size=25)
        body, cursor = source.calls[0]
        assert body["reference_types"] == ["WRO"]
        assert body["invoiced_status"] is False
        assert body["page_size"] == 25
        assert cursor is None


class TestFetchByInvoice:

    def test_listing_carries_the_invoice_id(self):
        source = FakePlatform([], invoice_listings={"7001": [raw_record("T1"), raw_record("T2")]})
        result = asyncio.run(TransactionFetcher(source).fetch_by_invoice("7001"))
        assert {t.external_invoice_id for t in result.transactions.values()} == {"7001"}
        assert result.reports[0].records == 2

    def test_listings_keep_rejected_ids(self):
        source = FakePlatform([], invoice_listings={
            "7001": [raw_record("T1"), raw_record("T2", amount="not money")],
        })
        listings = asyncio.run(TransactionFetcher(source).fetch_listings(["7001", "7001"]))
        assert listings.listed == {"7001": {"T1", "T2"}}
        assert listings.errors == {}
