"""Document renderers.

A renderer turns an AssembledInvoice into opaque bytes. Layout lives
entirely in the renderer; nothing else in the pipeline knows about it.
"""

import csv
import io
import json
from typing import Protocol

from invoicing.assembler import AssembledInvoice


class DocumentRenderer(Protocol):
    content_type: str
    file_extension: str

    def render(self, invoice: AssembledInvoice) -> bytes:
        ...


class JsonInvoiceRenderer:
    """Full invoice (header, summary, lines, rounding adjustments) as JSON."""
    content_type = "application/json"
    file_extension = "json"

    def render(self, invoice: AssembledInvoice) -> bytes:
        return json.dumps(invoice.to_dict(), indent=2, default=str).encode("utf-8")


class CsvLineItemRenderer:
    """One row per line item, for spreadsheet import."""
    content_type = "text/csv"
    file_extension = "csv"

    COLUMNS = [
        "transaction_id", "reference_id", "charge_date", "category", "fee_type", "service_tier",
        "base_amount", "surcharge", "insurance", "markup_amount", "markup_percentage",
        "billed_amount", "tax", "applied_rule_name",
    ]

    def render(self, invoice: AssembledInvoice) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["invoice_number", *self.COLUMNS])
        for item in invoice.line_items:
            row = item.model_dump(mode="json")
            writer.writerow([invoice.invoice_number, *(row.get(c) if row.get(c) is not None else "" for c in self.COLUMNS)])
        return buffer.getvalue().encode("utf-8")
