"""Attribution Data Models.

This module defines the models produced by attribution:
- AttributionMethod: Which join (or which failure) decided the outcome
- AttributionResult: The outcome for one transaction
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AttributionMethod(str, Enum):
    """How a transaction's owner was determined, or why it was not.

    Direct joins:
        SHIPMENT, RECEIVING_ORDER, RETURN, RETURN_ORDER_NUMBER,
        INVENTORY, TICKET_REFERENCE
    Fallback:
        SIBLING_INVOICE: inherited from another transaction on the same
        platform invoice
    Not attributed:
        TENANT_DIRECT: platform-level entry, excluded from client billing
        PARSE_FAILED: free-text reference could not be parsed
        AMBIGUOUS_SIBLINGS: siblings disagree on the owner
        UNRESOLVED: no join matched
    """
    EXISTING = "existing"
    SHIPMENT = "shipment"
    RECEIVING_ORDER = "receiving_order"
    RETURN = "return"
    RETURN_ORDER_NUMBER = "return_order_number"
    INVENTORY = "inventory"
    TICKET_REFERENCE = "ticket_reference"
    SIBLING_INVOICE = "sibling_invoice"
    TENANT_DIRECT = "tenant_direct"
    PARSE_FAILED = "parse_failed"
    AMBIGUOUS_SIBLINGS = "ambiguous_siblings"
    UNRESOLVED = "unresolved"


UNATTRIBUTED_METHODS = frozenset({
    AttributionMethod.TENANT_DIRECT,
    AttributionMethod.PARSE_FAILED,
    AttributionMethod.AMBIGUOUS_SIBLINGS,
    AttributionMethod.UNRESOLVED,
})


class AttributionResult(BaseModel):
    """Attribution outcome for one transaction.

    Attributes:
        transaction_id: Platform transaction id
        client_id: Owning client, None when unattributed
        method: Join or failure that produced the outcome
        note: Human-readable detail (parsed reference, failure reason)
    """
    transaction_id: str
    client_id: Optional[str] = None
    method: AttributionMethod
    note: Optional[str] = Field(default=None, description="Detail for audit and review")

    @property
    def is_attributed(self) -> bool:
        return self.client_id is not None

    @property
    def is_excluded(self) -> bool:
        """Tenant-direct entries are deliberately kept off client invoices."""
        return self.method == AttributionMethod.TENANT_DIRECT

    @property
    def is_new(self) -> bool:
        return self.is_attributed and self.method != AttributionMethod.EXISTING
