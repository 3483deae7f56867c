"""Core canonical data models - platform-neutral billing types.

These models represent billing data in a standardized format that is
independent of the fulfillment platform's wire format. Raw platform
payloads are mapped into these types in /connectors/fulfillment/.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated

from core.errors import AttributionConflictError
from core.money import ZERO, round_money, to_decimal


# =============================================================================
# Value Parsers
# =============================================================================

def _parse_decimal(value):
    """Parse decimal from various formats (string with $ or commas, floats, etc.)."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    return to_decimal(value)


def _parse_datetime(value):
    """Parse datetime from ISO strings, accepting a trailing Z."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return datetime.fromisoformat(s)
    return value


DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]
DateTimeValue = Annotated[datetime, BeforeValidator(_parse_datetime)]


# =============================================================================
# Enums
# =============================================================================

class ReferenceKind(str, Enum):
    """Kind of entity a transaction is billed against."""
    SHIPMENT = "Shipment"
    RECEIVING_ORDER = "ReceivingOrder"
    RETURN = "Return"
    INVENTORY_LOCATION = "InventoryLocation"
    TENANT_DIRECT = "TenantDirect"
    OTHER = "Other"


class BillingCategory(str, Enum):
    """Matching category used by markup rules."""
    SHIPMENTS = "shipments"
    SHIPMENT_FEES = "shipment_fees"
    STORAGE = "storage"
    CREDITS = "credits"
    RETURNS = "returns"
    RECEIVING = "receiving"


class LineCategory(str, Enum):
    """Display grouping on the invoice (distinct from BillingCategory)."""
    SHIPPING = "Shipping"
    PICK_FEES = "Pick Fees"
    B2B_FEES = "B2B Fees"
    ADDITIONAL_SERVICES = "Additional Services"
    STORAGE = "Storage"
    RETURNS = "Returns"
    RECEIVING = "Receiving"
    CREDITS = "Credits"


# Rendering order of display categories
LINE_CATEGORY_ORDER: List[LineCategory] = list(LineCategory)


# =============================================================================
# Base Model
# =============================================================================

class CanonicalBase(BaseModel):
    """Base model for all canonical data structures."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Transactions
# =============================================================================

class Transaction(CanonicalBase):
    """One billable event reported by the fulfillment platform.

    Immutable: attribution and invoicing produce new copies. ``amount`` is
    the platform's total for the event (negative for credits); surcharge,
    insurance and tax are the pass-through components reported alongside it.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    transaction_id: str = Field(..., min_length=1, description="Platform transaction id (globally unique)")
    reference_id: str = Field(..., description="Id of the entity the charge is billed against")
    reference_kind: ReferenceKind = Field(..., description="Canonical reference kind")
    platform_reference_type: Optional[str] = Field(None, description="Raw platform reference type")
    transaction_type: str = Field(default="Charge", description="Charge, Credit, Refund, Payment, Adjustment")
    invoice_type: Optional[str] = Field(None, description="Platform invoice type (Shipping, WarehouseStorage, ...)")
    fee_type: str = Field(..., description="Platform fee/category label")
    amount: DecimalValue = Field(..., description="Signed total amount")
    surcharge: DecimalValue = Field(default=ZERO, description="Pass-through surcharge included in amount")
    insurance: DecimalValue = Field(default=ZERO, description="Pass-through insurance included in amount")
    tax: DecimalValue = Field(default=ZERO, description="Tax reported on top of amount")
    charge_date: DateTimeValue = Field(..., description="When the platform charged the event")
    external_invoice_id: Optional[str] = Field(None, description="Platform invoice id once invoiced")
    client_id: Optional[str] = Field(None, description="Owning client once attributed")
    service_tier: Optional[str] = Field(None, description="Ship option / service level")
    weight_oz: Optional[DecimalValue] = Field(None, description="Billable weight in ounces")
    additional_details: Dict[str, Any] = Field(default_factory=dict)
    internal_invoice_id: Optional[str] = Field(None, description="Our invoice number once finalized")

    @property
    def base_amount(self) -> Decimal:
        """Platform base cost excluding pass-through components."""
        return self.amount - self.surcharge - self.insurance

    @property
    def is_credit(self) -> bool:
        """Platform credits. Refunds stay in their fee's category."""
        return (
            self.transaction_type == "Credit"
            or self.invoice_type == "Credits"
            or self.fee_type == "Credit"
        )

    @property
    def is_refund(self) -> bool:
        return self.transaction_type == "Refund"

    @property
    def is_attributed(self) -> bool:
        return self.client_id is not None

    def with_client(self, client_id: str) -> "Transaction":
        """Return a copy attributed to ``client_id``.

        Attribution is set at most once. Re-attributing to the same client is
        a no-op; a different client raises AttributionConflictError.
        """
        if self.client_id is not None:
            if self.client_id != client_id:
                raise AttributionConflictError(self.transaction_id, self.client_id, client_id)
            return self
        return self.model_copy(update={"client_id": client_id})


class ExternalInvoice(CanonicalBase):
    """The platform's own invoice record. Reconciliation oracle only."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    invoice_id: str
    invoice_type: Optional[str] = None
    invoice_date: Optional[DateTimeValue] = None
    amount: DecimalValue = ZERO
    currency_code: str = "USD"


# =============================================================================
# Clients
# =============================================================================

class Client(CanonicalBase):
    """A billing tenant."""
    client_id: str
    name: str
    short_code: str = Field(..., min_length=1, description="Used to build invoice numbers")
    next_invoice_number: int = Field(default=1, ge=1)
    is_active: bool = True
    email: Optional[str] = None


# =============================================================================
# Invoice Line Items and Summary
# =============================================================================

class LineItem(CanonicalBase):
    """A transaction after markup has been applied.

    ``markup_exact`` keeps the unrounded markup; ``markup_amount`` and
    ``billed_amount`` are at the currency minor unit and may carry a
    rounding adjustment from the reconciler.
    """
    transaction_id: str
    reference_id: str
    reference_kind: ReferenceKind
    charge_date: datetime
    fee_type: str
    category: LineCategory
    billing_category: BillingCategory
    service_tier: Optional[str] = None

    base_amount: Decimal
    surcharge: Decimal = ZERO
    insurance: Decimal = ZERO
    tax: Decimal = ZERO
    markup_exact: Decimal = ZERO
    markup_amount: Decimal = ZERO
    markup_percentage: Decimal = ZERO
    billed_amount: Decimal = ZERO
    rounding_adjustment: Decimal = ZERO

    is_credit: bool = False
    applied_rule_id: Optional[int] = None
    applied_rule_name: Optional[str] = None

    @property
    def exact_billed(self) -> Decimal:
        return self.base_amount + self.surcharge + self.insurance + self.markup_exact

    def expected_billed(self) -> Decimal:
        """The billed amount implied by the line's own components."""
        return round_money(self.base_amount + self.surcharge + self.insurance + self.markup_amount)


class CategoryTotals(CanonicalBase):
    """Totals for one display category."""
    category: LineCategory
    count: int = 0
    base: Decimal = ZERO
    surcharge: Decimal = ZERO
    insurance: Decimal = ZERO
    markup: Decimal = ZERO
    tax: Decimal = ZERO
    billed: Decimal = ZERO


class InvoiceSummary(CanonicalBase):
    """Aggregated view over the line items of one client and period.

    Charge totals (``subtotal`` .. ``total_amount``) and ``by_category``
    cover non-credit lines only; credits are reported separately and
    netted into ``amount_due``.
    """
    client_id: str
    period_start: date
    period_end: date

    subtotal: Decimal = ZERO
    total_surcharge: Decimal = ZERO
    total_insurance: Decimal = ZERO
    total_markup: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_amount: Decimal = ZERO
    by_category: List[CategoryTotals] = Field(default_factory=list)

    credits: Optional[CategoryTotals] = None
    total_credits: Decimal = ZERO
    amount_due: Decimal = ZERO
    line_count: int = 0
