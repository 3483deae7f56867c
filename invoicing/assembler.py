"""Invoice Assembler.

Combines reconciled line items, client metadata and the billing period
into an AssembledInvoice ready for validation and rendering.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.models.canonical import LINE_CATEGORY_ORDER, Client, InvoiceSummary, LineCategory, LineItem
from invoicing.aggregator import summarize
from invoicing.rounding import ROUNDING_TOLERANCE, RoundingAdjustment, reconcile_rounding

DEFAULT_PREFIX = "JP"

_CATEGORY_RANK = {c: i for i, c in enumerate(LINE_CATEGORY_ORDER)}


def format_invoice_number(prefix: str, short_code: str, sequence: int, invoice_date: date) -> str:
    """Human-readable invoice number, e.g. JPHS-0037-120125."""
    return f"{prefix}{short_code}-{sequence:04d}-{invoice_date.strftime('%m%d%y')}"


def order_line_items(line_items: Sequence[LineItem]) -> List[LineItem]:
    """Display order: category order, then charge date, then transaction id."""
    return sorted(
        line_items,
        key=lambda i: (_CATEGORY_RANK.get(i.category, len(_CATEGORY_RANK)), i.charge_date, i.transaction_id),
    )


@dataclass
class AssembledInvoice:
    """A complete invoice: number, client, period, ordered lines and summary."""
    invoice_number: str
    client: Client
    period_start: date
    period_end: date
    invoice_date: date
    line_items: List[LineItem]
    summary: InvoiceSummary
    adjustments: List[RoundingAdjustment] = field(default_factory=list)
    is_preview: bool = True

    @property
    def client_id(self) -> str:
        return self.client.client_id

    def with_number(self, invoice_number: str, is_preview: bool = False) -> "AssembledInvoice":
        return replace(self, invoice_number=invoice_number, is_preview=is_preview)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_number": self.invoice_number,
            "client": self.client.model_dump(mode="json"),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "invoice_date": self.invoice_date.isoformat(),
            "is_preview": self.is_preview,
            "summary": self.summary.model_dump(mode="json"),
            "line_items": [i.model_dump(mode="json") for i in self.line_items],
            "rounding_adjustments": [a.to_dict() for a in self.adjustments],
        }


class InvoiceAssembler:
    """
    Builds AssembledInvoice objects.

    Usage:
        assembler = InvoiceAssembler(prefix="JP")
        invoice = assembler.build(client, start, end, line_items)
    """

    def __init__(self, prefix: str = DEFAULT_PREFIX, tolerance: Decimal = ROUNDING_TOLERANCE):
        self.prefix = prefix
        self.tolerance = tolerance

    def invoice_number(self, client: Client, sequence: int, invoice_date: date) -> str:
        return format_invoice_number(self.prefix, client.short_code, sequence, invoice_date)

    def reconcile(
        self,
        line_items: Sequence[LineItem],
        reference_totals: Optional[Mapping[LineCategory, Decimal]] = None,
    ):
        return reconcile_rounding(line_items, reference_totals, self.tolerance)

    def assemble(
        self,
        client: Client,
        period_start: date,
        period_end: date,
        line_items: Sequence[LineItem],
        invoice_number: Optional[str] = None,
        invoice_date: Optional[date] = None,
        adjustments: Optional[List[RoundingAdjustment]] = None,
        is_preview: bool = True,
    ) -> AssembledInvoice:
        """Assemble already-reconciled line items.

        Without an explicit number the client's next sequence number is
        used for display only; nothing is reserved.
        """
        invoice_date = invoice_date or date.today()
        if invoice_number is None:
            invoice_number = self.invoice_number(client, client.next_invoice_number, invoice_date)
        ordered = order_line_items(line_items)
        return AssembledInvoice(
            invoice_number=invoice_number,
            client=client,
            period_start=period_start,
            period_end=period_end,
            invoice_date=invoice_date,
            line_items=ordered,
            summary=summarize(ordered, client.client_id, period_start, period_end),
            adjustments=list(adjustments or []),
            is_preview=is_preview,
        )

    def build(
        self,
        client: Client,
        period_start: date,
        period_end: date,
        line_items: Sequence[LineItem],
        reference_totals: Optional[Mapping[LineCategory, Decimal]] = None,
        invoice_date: Optional[date] = None,
    ) -> AssembledInvoice:
        """Reconcile rounding, then assemble a preview invoice."""
        reconciled, adjustments = self.reconcile(line_items, reference_totals)
        return self.assemble(
            client, period_start, period_end, reconciled,
            invoice_date=invoice_date, adjustments=adjustments,
        )
