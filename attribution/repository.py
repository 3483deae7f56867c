"""Attribution Repository.

Read-through access to every attribution source, with a batch-fetch
contract and bounded per-run caches. One repository instance lives for one
job run; nothing is shared across runs.
"""

from pathlib import Path
from typing import Dict, Iterable, Optional, Set

from attribution.db import lookup_clients
from core.models.canonical import ReferenceKind, Transaction
from core.storage.cache import CachedLookup
from ingestion.db import sibling_client_ids


class AttributionRepository:
    """Owner lookups for the attribution resolver."""

    def __init__(self, db_path: Optional[Path] = None, cache_size: int = 50_000):
        self.db_path = db_path
        self.shipments = CachedLookup(
            lambda ids: lookup_clients("shipments", ids, db_path=db_path), cache_size, "shipments")
        self.receiving_orders = CachedLookup(
            lambda ids: lookup_clients("receiving_orders", ids, db_path=db_path), cache_size, "receiving_orders")
        self.returns = CachedLookup(
            lambda ids: lookup_clients("returns", ids, db_path=db_path), cache_size, "returns")
        self.orders_by_number = CachedLookup(
            lambda ids: lookup_clients("orders", ids, key_column="order_number", db_path=db_path),
            cache_size, "orders_by_number")
        self.inventory = CachedLookup(
            lambda ids: lookup_clients("inventory_items", ids, db_path=db_path), cache_size, "inventory")
        self.siblings = CachedLookup(
            lambda ids: sibling_client_ids(ids, db_path=db_path), cache_size, "siblings")

    # =========================================================================
    # Single lookups
    # =========================================================================

    def client_for_shipment(self, shipment_id: str) -> Optional[str]:
        return self.shipments.get(shipment_id)

    def client_for_receiving_order(self, receiving_order_id: str) -> Optional[str]:
        return self.receiving_orders.get(receiving_order_id)

    def client_for_return(self, return_id: str) -> Optional[str]:
        return self.returns.get(return_id)

    def client_for_order_number(self, order_number: str) -> Optional[str]:
        return self.orders_by_number.get(order_number)

    def client_for_inventory(self, inventory_id: str) -> Optional[str]:
        return self.inventory.get(inventory_id)

    def sibling_client_ids(self, external_invoice_id: str) -> Set[str]:
        return set(self.siblings.get(external_invoice_id) or set())

    # =========================================================================
    # Batch priming
    # =========================================================================

    def prime(self, transactions: Iterable[Transaction]) -> None:
        """Load every source key the batch will need, one query per source."""
        by_kind: Dict[ReferenceKind, Set[str]] = {}
        invoice_ids: Set[str] = set()
        for tx in transactions:
            by_kind.setdefault(tx.reference_kind, set()).add(tx.reference_id)
            if tx.external_invoice_id:
                invoice_ids.add(tx.external_invoice_id)

        self.shipments.prime(by_kind.get(ReferenceKind.SHIPMENT, ()))
        self.receiving_orders.prime(by_kind.get(ReferenceKind.RECEIVING_ORDER, ()))
        self.returns.prime(by_kind.get(ReferenceKind.RETURN, ()))
        self.siblings.prime(invoice_ids)

    def record_attribution(self, tx: Transaction, client_id: str) -> None:
        """Make an in-run attribution visible to later sibling lookups."""
        if tx.external_invoice_id:
            current = set(self.siblings.get(tx.external_invoice_id) or set())
            current.add(client_id)
            self.siblings.put(tx.external_invoice_id, current)
