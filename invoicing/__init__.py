"""Invoice generation: rounding reconciliation, aggregation, assembly, numbering."""

from invoicing.aggregator import category_totals, summarize
from invoicing.assembler import (
    AssembledInvoice,
    InvoiceAssembler,
    format_invoice_number,
    order_line_items,
)
from invoicing.renderer import CsvLineItemRenderer, DocumentRenderer, JsonInvoiceRenderer
from invoicing.rounding import ROUNDING_TOLERANCE, RoundingAdjustment, reconcile_rounding

__all__ = [
    "category_totals",
    "summarize",
    "AssembledInvoice",
    "InvoiceAssembler",
    "format_invoice_number",
    "order_line_items",
    "CsvLineItemRenderer",
    "DocumentRenderer",
    "JsonInvoiceRenderer",
    "ROUNDING_TOLERANCE",
    "RoundingAdjustment",
    "reconcile_rounding",
]
