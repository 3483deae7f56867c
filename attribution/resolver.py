"""Attribution Resolver.

Maps each platform transaction to the client that owns it.

Dispatch by reference kind:
1. Shipment -> shipments table
2. ReceivingOrder -> receiving_orders table
3. Return -> returns table, then an order number parsed from the comment
4. InventoryLocation -> inventory id parsed from "{facility}-{inventory}-{location}",
   falling back to additional_details.InventoryId
5. TenantDirect -> excluded from client billing, never attributed
6. Other (e.g. TicketNumber) -> order/shipment reference parsed from the comment

If no direct join resolves, a transaction inherits the owner of its
attributed siblings on the same platform invoice, provided they agree on
exactly one client. Anything still unresolved stays unattributed with the
reason recorded; nothing is guessed.
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from attribution.models import AttributionMethod, AttributionResult
from attribution.repository import AttributionRepository
from core.models.canonical import ReferenceKind, Transaction
from core.observability.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Free-text reference parsing
# =============================================================================

ORDER_NUMBER_PATTERNS = [
    re.compile(r"\border\s*(?:number|num|no\.?|#|id)?\s*[:#]?\s*([A-Za-z0-9-]*\d[A-Za-z0-9-]*)", re.IGNORECASE),
    re.compile(r"#\s*(\d{4,})"),
]

SHIPMENT_ID_PATTERN = re.compile(r"\bshipment\s*(?:id|#)?\s*[:#]?\s*(\d{4,})", re.IGNORECASE)


def parse_order_number(text: Optional[str]) -> Optional[str]:
    """Extract an order number from free text, or None."""
    if not text:
        return None
    for pattern in ORDER_NUMBER_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip("-")
    return None


def parse_shipment_id(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = SHIPMENT_ID_PATTERN.search(text)
    return match.group(1) if match else None


def parse_inventory_id(reference_id: str, additional_details: dict) -> Optional[str]:
    """Inventory id from a "{facility}-{inventory}-{location}" reference.

    Falls back to additional_details["InventoryId"] when the reference id
    does not have the composite shape.
    """
    parts = (reference_id or "").split("-")
    if len(parts) >= 3 and parts[1].strip():
        return parts[1].strip()
    fallback = (additional_details or {}).get("InventoryId")
    if fallback not in (None, ""):
        return str(fallback)
    return None


def _comment(tx: Transaction) -> Optional[str]:
    details = tx.additional_details or {}
    return details.get("Comment") or details.get("TicketReference")


# =============================================================================
# Resolver
# =============================================================================

class AttributionResolver:
    """Resolve transaction owners through the attribution repository.

    Usage:
        resolver = AttributionResolver(AttributionRepository(db_path))
        results = resolver.resolve_batch(transactions)
    """

    def __init__(self, repository: AttributionRepository):
        self.repository = repository

    def resolve(self, tx: Transaction) -> AttributionResult:
        """Attribute one transaction (direct join, then sibling fallback)."""
        return self.resolve_batch([tx])[0]

    def resolve_batch(self, transactions: Sequence[Transaction]) -> List[AttributionResult]:
        """Attribute a batch. Results are returned in input order.

        Direct joins run first for the whole batch so that sibling fallback
        can see every owner the batch itself establishes.
        """
        self.repository.prime(transactions)

        results: List[Optional[AttributionResult]] = [None] * len(transactions)
        pending: List[Tuple[int, Transaction, AttributionResult]] = []

        for i, tx in enumerate(transactions):
            result = self._resolve_direct(tx)
            if result.is_attributed:
                self.repository.record_attribution(tx, result.client_id)
                results[i] = result
            elif result.method == AttributionMethod.TENANT_DIRECT:
                results[i] = result
            else:
                pending.append((i, tx, result))

        for i, tx, direct in pending:
            results[i] = self._resolve_sibling(tx, direct)

        return results

    def _resolve_direct(self, tx: Transaction) -> AttributionResult:
        if tx.client_id is not None:
            return AttributionResult(
                transaction_id=tx.transaction_id, client_id=tx.client_id, method=AttributionMethod.EXISTING
            )

        kind = tx.reference_kind
        if kind == ReferenceKind.TENANT_DIRECT:
            return AttributionResult(
                transaction_id=tx.transaction_id,
                method=AttributionMethod.TENANT_DIRECT,
                note=f"{tx.platform_reference_type or 'Default'} entry not tied to a client",
            )
        if kind == ReferenceKind.SHIPMENT:
            return self._from_lookup(tx, self.repository.client_for_shipment(tx.reference_id),
                                     AttributionMethod.SHIPMENT, f"shipment {tx.reference_id}")
        if kind == ReferenceKind.RECEIVING_ORDER:
            return self._from_lookup(tx, self.repository.client_for_receiving_order(tx.reference_id),
                                     AttributionMethod.RECEIVING_ORDER, f"receiving order {tx.reference_id}")
        if kind == ReferenceKind.RETURN:
            return self._resolve_return(tx)
        if kind == ReferenceKind.INVENTORY_LOCATION:
            return self._resolve_inventory(tx)
        return self._resolve_free_text(tx)

    def _from_lookup(
        self, tx: Transaction, client_id: Optional[str], method: AttributionMethod, what: str
    ) -> AttributionResult:
        if client_id:
            return AttributionResult(transaction_id=tx.transaction_id, client_id=client_id, method=method, note=what)
        return AttributionResult(
            transaction_id=tx.transaction_id, method=AttributionMethod.UNRESOLVED, note=f"{what} not found"
        )

    def _resolve_return(self, tx: Transaction) -> AttributionResult:
        client_id = self.repository.client_for_return(tx.reference_id)
        if client_id:
            return AttributionResult(
                transaction_id=tx.transaction_id, client_id=client_id,
                method=AttributionMethod.RETURN, note=f"return {tx.reference_id}",
            )

        comment = _comment(tx)
        order_number = parse_order_number(comment)
        if order_number is None:
            logger.warning(
                f"Could not parse an order number for return transaction {tx.transaction_id}",
                extra_fields={"transaction_id": tx.transaction_id, "comment": comment},
            )
            return AttributionResult(
                transaction_id=tx.transaction_id, method=AttributionMethod.PARSE_FAILED,
                note=f"return {tx.reference_id} not found; no order number in comment {comment!r}",
            )

        client_id = self.repository.client_for_order_number(order_number)
        if client_id:
            return AttributionResult(
                transaction_id=tx.transaction_id, client_id=client_id,
                method=AttributionMethod.RETURN_ORDER_NUMBER, note=f"order {order_number} from comment",
            )
        return AttributionResult(
            transaction_id=tx.transaction_id, method=AttributionMethod.UNRESOLVED,
            note=f"order {order_number} from comment not found",
        )

    def _resolve_inventory(self, tx: Transaction) -> AttributionResult:
        inventory_id = parse_inventory_id(tx.reference_id, tx.additional_details)
        if inventory_id is None:
            logger.warning(
                f"Could not parse an inventory id for transaction {tx.transaction_id}",
                extra_fields={"transaction_id": tx.transaction_id, "reference_id": tx.reference_id},
            )
            return AttributionResult(
                transaction_id=tx.transaction_id, method=AttributionMethod.PARSE_FAILED,
                note=f"no inventory id in reference {tx.reference_id!r}",
            )
        return self._from_lookup(tx, self.repository.client_for_inventory(inventory_id),
                                 AttributionMethod.INVENTORY, f"inventory {inventory_id}")

    def _resolve_free_text(self, tx: Transaction) -> AttributionResult:
        comment = _comment(tx)
        shipment_id = parse_shipment_id(comment)
        if shipment_id:
            client_id = self.repository.client_for_shipment(shipment_id)
            if client_id:
                return AttributionResult(
                    transaction_id=tx.transaction_id, client_id=client_id,
                    method=AttributionMethod.TICKET_REFERENCE, note=f"shipment {shipment_id} from comment",
                )
        order_number = parse_order_number(comment)
        if order_number:
            client_id = self.repository.client_for_order_number(order_number)
            if client_id:
                return AttributionResult(
                    transaction_id=tx.transaction_id, client_id=client_id,
                    method=AttributionMethod.TICKET_REFERENCE, note=f"order {order_number} from comment",
                )
        if comment and not (shipment_id or order_number):
            logger.warning(
                f"Could not parse a reference from comment on transaction {tx.transaction_id}",
                extra_fields={"transaction_id": tx.transaction_id, "comment": comment},
            )
            return AttributionResult(
                transaction_id=tx.transaction_id, method=AttributionMethod.PARSE_FAILED,
                note=f"no order or shipment reference in comment {comment!r}",
            )
        return AttributionResult(
            transaction_id=tx.transaction_id, method=AttributionMethod.UNRESOLVED,
            note=f"no join for reference type {tx.platform_reference_type!r}",
        )

    def _resolve_sibling(self, tx: Transaction, direct: AttributionResult) -> AttributionResult:
        if not tx.external_invoice_id:
            return direct

        owners = self.repository.sibling_client_ids(tx.external_invoice_id)
        if len(owners) == 1:
            client_id = next(iter(owners))
            return AttributionResult(
                transaction_id=tx.transaction_id, client_id=client_id,
                method=AttributionMethod.SIBLING_INVOICE,
                note=f"sibling on invoice {tx.external_invoice_id}; direct: {direct.note}",
            )
        if len(owners) > 1:
            logger.warning(
                f"Siblings on invoice {tx.external_invoice_id} belong to {len(owners)} clients; "
                f"leaving {tx.transaction_id} unattributed",
            )
            return AttributionResult(
                transaction_id=tx.transaction_id, method=AttributionMethod.AMBIGUOUS_SIBLINGS,
                note=f"invoice {tx.external_invoice_id} siblings owned by {sorted(owners)}",
            )
        return direct


def summarize_results(results: Sequence[AttributionResult]) -> Dict[str, int]:
    """Counts per attribution method."""
    counts: Dict[str, int] = {}
    for r in results:
        counts[r.method.value] = counts.get(r.method.value, 0) + 1
    return counts
