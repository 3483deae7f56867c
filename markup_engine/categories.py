"""
Transaction Categorization

Assigns every transaction two categories:
- BillingCategory: what markup rules match on
- LineCategory: where the line is displayed and totalled on the invoice
"""

from typing import Tuple

from core.models.canonical import BillingCategory, LineCategory, ReferenceKind, Transaction

# Non-shipping fees billed against shipments or tickets
ADDITIONAL_SERVICE_FEES = frozenset({
    "Per Pick Fee",
    "B2B - Each Pick Fee",
    "B2B - Label Fee",
    "B2B - Case Pick Fee",
    "B2B - Pallet Pick Fee",
    "WRO Receiving Fee",
    "Inventory Placement Program Fee",
    "Warehousing Fee",
    "Multi-Hub IQ Fee",
    "Kitting Fee",
    "VAS Fee",
    "VAS - Paid Requests",
    "Duty/Tax",
    "Insurance",
    "Signature Required",
    "Fuel Surcharge",
    "Residential Surcharge",
    "Delivery Area Surcharge",
    "Saturday Delivery",
    "Oversized Package",
    "Dimensional Weight",
})

SHIPPING_FEE = "Shipping"


def fee_line_category(fee_type: str) -> LineCategory:
    """Display category for an additional service fee."""
    if fee_type.startswith("B2B"):
        return LineCategory.B2B_FEES
    if "Pick" in fee_type:
        return LineCategory.PICK_FEES
    return LineCategory.ADDITIONAL_SERVICES


def categorize_transaction(tx: Transaction) -> Tuple[BillingCategory, LineCategory]:
    """Return (matching category, display category) for a transaction."""
    if tx.is_credit:
        return BillingCategory.CREDITS, LineCategory.CREDITS

    kind = tx.reference_kind
    if kind == ReferenceKind.SHIPMENT:
        if tx.fee_type == SHIPPING_FEE:
            return BillingCategory.SHIPMENTS, LineCategory.SHIPPING
        return BillingCategory.SHIPMENT_FEES, fee_line_category(tx.fee_type)

    if kind == ReferenceKind.INVENTORY_LOCATION:
        return BillingCategory.STORAGE, LineCategory.STORAGE

    if kind == ReferenceKind.RETURN:
        return BillingCategory.RETURNS, LineCategory.RETURNS

    if kind == ReferenceKind.RECEIVING_ORDER or "Receiving" in tx.fee_type:
        return BillingCategory.RECEIVING, LineCategory.RECEIVING

    # Ticket-linked services and anything unrecognized
    return BillingCategory.SHIPMENT_FEES, fee_line_category(tx.fee_type)
