"""Core data models - platform-neutral canonical types."""

from core.models.canonical import (
    # Base
    CanonicalBase,
    DecimalValue,
    DateTimeValue,

    # Enums
    ReferenceKind,
    BillingCategory,
    LineCategory,
    LINE_CATEGORY_ORDER,

    # Entities
    Transaction,
    ExternalInvoice,
    Client,

    # Invoice
    LineItem,
    CategoryTotals,
    InvoiceSummary,
)

from core.models.refs import (
    DataReference,
    ReconciliationReport,
)

__all__ = [
    "CanonicalBase",
    "DecimalValue",
    "DateTimeValue",
    "ReferenceKind",
    "BillingCategory",
    "LineCategory",
    "LINE_CATEGORY_ORDER",
    "Transaction",
    "ExternalInvoice",
    "Client",
    "LineItem",
    "CategoryTotals",
    "InvoiceSummary",
    "DataReference",
    "ReconciliationReport",
]
