"""Fulfillment platform wire models.

These mirror the platform API schema and are separate from the canonical
models in /core/models/. Validation happens here, at the boundary, so a
malformed record fails on its own instead of travelling downstream.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models.canonical import ExternalInvoice, ReferenceKind, Transaction
from core.money import ZERO, to_decimal


# =============================================================================
# Platform Vocabularies
# =============================================================================

TRANSACTION_TYPES = ["Charge", "Credit", "Refund", "Payment", "Adjustment"]

REFERENCE_TYPES = ["Shipment", "Default", "WRO", "Return", "FC", "TicketNumber"]

INVOICE_TYPES = [
    "Shipping",
    "AdditionalFee",
    "WarehouseStorage",
    "ReturnsFee",
    "Credits",
    "WarehouseInboundFee",
]

REFERENCE_KIND_MAP: Dict[str, ReferenceKind] = {
    "Shipment": ReferenceKind.SHIPMENT,
    "WRO": ReferenceKind.RECEIVING_ORDER,
    "URO": ReferenceKind.RECEIVING_ORDER,
    "Return": ReferenceKind.RETURN,
    "FC": ReferenceKind.INVENTORY_LOCATION,
    "Default": ReferenceKind.TENANT_DIRECT,
}


def map_reference_kind(reference_type: Optional[str]) -> ReferenceKind:
    """Map a platform reference type to the canonical kind (unknown -> OTHER)."""
    return REFERENCE_KIND_MAP.get(reference_type or "", ReferenceKind.OTHER)


# =============================================================================
# Wire Models
# =============================================================================

class FPBaseModel(BaseModel):
    """Base model for platform API entities."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RawTax(FPBaseModel):
    tax_type: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    tax_amount: Decimal = ZERO


class RawTransaction(FPBaseModel):
    """One item of ``POST /transactions:query``."""
    transaction_id: str = Field(..., min_length=1)
    amount: Decimal
    currency_code: str = "USD"
    charge_date: datetime
    invoiced_status: bool = False
    invoice_date: Optional[datetime] = None
    invoice_id: Optional[str] = None
    invoice_type: Optional[str] = None
    transaction_fee: str = Field(..., min_length=1)
    reference_id: str
    reference_type: str
    transaction_type: Optional[str] = None
    fulfillment_center: Optional[str] = None
    taxes: List[RawTax] = Field(default_factory=list)
    additional_details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("transaction_id", "invoice_id", "reference_id", mode="before")
    @classmethod
    def _ids_as_strings(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("additional_details", mode="before")
    @classmethod
    def _details_default(cls, v):
        return v or {}

    def to_transaction(self) -> Transaction:
        """Map to the canonical Transaction (unattributed)."""
        details = self.additional_details
        weight = details.get("BillableWeightOz")
        return Transaction(
            transaction_id=self.transaction_id,
            reference_id=self.reference_id,
            reference_kind=map_reference_kind(self.reference_type),
            platform_reference_type=self.reference_type,
            transaction_type=self.transaction_type or "Charge",
            invoice_type=self.invoice_type,
            fee_type=self.transaction_fee,
            amount=self.amount,
            surcharge=to_decimal(details.get("Surcharge")),
            insurance=to_decimal(details.get("InsuranceAmount")),
            tax=sum((t.tax_amount for t in self.taxes), ZERO),
            charge_date=self.charge_date,
            external_invoice_id=self.invoice_id if self.invoice_id else None,
            service_tier=details.get("ShipOption"),
            weight_oz=to_decimal(weight) if weight not in (None, "") else None,
            additional_details=details,
        )


class RawInvoice(FPBaseModel):
    """One item of ``GET /invoices``."""
    invoice_id: str
    invoice_date: Optional[datetime] = None
    invoice_type: Optional[str] = None
    amount: Decimal = ZERO
    currency_code: str = "USD"
    running_balance: Optional[Decimal] = None

    @field_validator("invoice_id", mode="before")
    @classmethod
    def _id_as_string(cls, v):
        return v if isinstance(v, str) else str(v)

    def to_external_invoice(self) -> ExternalInvoice:
        return ExternalInvoice(
            invoice_id=self.invoice_id,
            invoice_type=self.invoice_type,
            invoice_date=self.invoice_date,
            amount=self.amount,
            currency_code=self.currency_code,
        )


class TransactionPage(FPBaseModel):
    """One page of a paginated listing. ``items`` stay raw for per-record validation."""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    next: Optional[str] = None
