"""
Query Strategy Plan

The platform caps how many records one filtered query returns, so a busy
window is enumerated by issuing the same window under several independent
filter dimensions. Any record reachable by at least one sub-query ends up
in the merged result.

Dimensions:
- transaction type x invoiced status
- reference type x invoiced status
- transaction type x reference type x invoiced status
- invoice type x invoiced status
"""

from dataclasses import dataclass
from datetime import datetime
from itertools import product
from typing import Any, Dict, List, Optional, Sequence, Tuple

from connectors.fulfillment.fp_models import INVOICE_TYPES, REFERENCE_TYPES, TRANSACTION_TYPES

INVOICED_STATUSES: Tuple[bool, ...] = (True, False)


@dataclass(frozen=True)
class TransactionQuery:
    """One filtered sub-query over a time window."""
    from_date: datetime
    to_date: datetime
    transaction_type: Optional[str] = None
    reference_type: Optional[str] = None
    invoice_type: Optional[str] = None
    invoiced_status: Optional[bool] = None

    @property
    def key(self) -> str:
        """Stable label used in fetch reports and logs."""
        parts = []
        if self.transaction_type:
            parts.append(f"tx={self.transaction_type}")
        if self.reference_type:
            parts.append(f"ref={self.reference_type}")
        if self.invoice_type:
            parts.append(f"inv={self.invoice_type}")
        if self.invoiced_status is not None:
            parts.append(f"invoiced={'true' if self.invoiced_status else 'false'}")
        return "|".join(parts) or "all"

    def to_body(self, page_size: int) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "from_date": self.from_date.isoformat(),
            "to_date": self.to_date.isoformat(),
            "page_size": page_size,
        }
        if self.transaction_type:
            body["transaction_types"] = [self.transaction_type]
        if self.reference_type:
            body["reference_types"] = [self.reference_type]
        if self.invoice_type:
            body["invoice_types"] = [self.invoice_type]
        if self.invoiced_status is not None:
            body["invoiced_status"] = self.invoiced_status
        return body


def build_query_plans(
    from_date: datetime,
    to_date: datetime,
    transaction_types: Sequence[str] = TRANSACTION_TYPES,
    reference_types: Sequence[str] = REFERENCE_TYPES,
    invoice_types: Sequence[str] = INVOICE_TYPES,
    include_unfiltered: bool = True,
) -> List[TransactionQuery]:
    """Build the overlapping sub-queries for one window, without duplicates."""
    plans: List[TransactionQuery] = []
    if include_unfiltered:
        plans.append(TransactionQuery(from_date, to_date))

    for tx_type, invoiced in product(transaction_types, INVOICED_STATUSES):
        plans.append(TransactionQuery(from_date, to_date, transaction_type=tx_type, invoiced_status=invoiced))

    for ref_type, invoiced in product(reference_types, INVOICED_STATUSES):
        plans.append(TransactionQuery(from_date, to_date, reference_type=ref_type, invoiced_status=invoiced))

    for tx_type, ref_type, invoiced in product(transaction_types, reference_types, INVOICED_STATUSES):
        plans.append(TransactionQuery(
            from_date, to_date,
            transaction_type=tx_type, reference_type=ref_type, invoiced_status=invoiced,
        ))

    for inv_type, invoiced in product(invoice_types, INVOICED_STATUSES):
        plans.append(TransactionQuery(from_date, to_date, invoice_type=inv_type, invoiced_status=invoiced))

    seen = set()
    unique = []
    for plan in plans:
        if plan.key not in seen:
            seen.add(plan.key)
            unique.append(plan)
    return unique
