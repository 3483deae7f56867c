"""Invoice summary aggregation.

Charge totals and the per-category breakdown cover non-credit lines;
credits get their own totals and are netted into amount_due. Totals are
plain sums of the (reconciled) line values, so category totals always add
up to the top-level figures.
"""

from datetime import date
from typing import Dict, Iterable, List

from core.models.canonical import (
    LINE_CATEGORY_ORDER,
    CategoryTotals,
    InvoiceSummary,
    LineCategory,
    LineItem,
)
from core.money import ZERO


def _add(totals: CategoryTotals, item: LineItem) -> None:
    totals.count += 1
    totals.base += item.base_amount
    totals.surcharge += item.surcharge
    totals.insurance += item.insurance
    totals.markup += item.markup_amount
    totals.tax += item.tax
    totals.billed += item.billed_amount


def category_totals(line_items: Iterable[LineItem]) -> Dict[LineCategory, CategoryTotals]:
    totals: Dict[LineCategory, CategoryTotals] = {}
    for item in line_items:
        if item.category not in totals:
            totals[item.category] = CategoryTotals(category=item.category)
        _add(totals[item.category], item)
    return totals


def summarize(
    line_items: Iterable[LineItem],
    client_id: str,
    period_start: date,
    period_end: date,
) -> InvoiceSummary:
    """Build the InvoiceSummary for one client and period."""
    items = list(line_items)
    charges = [i for i in items if not i.is_credit]
    credits = [i for i in items if i.is_credit]

    per_category = category_totals(charges)
    by_category: List[CategoryTotals] = [
        per_category[c] for c in LINE_CATEGORY_ORDER if c in per_category
    ]

    credit_totals = None
    if credits:
        credit_totals = CategoryTotals(category=LineCategory.CREDITS)
        for item in credits:
            _add(credit_totals, item)

    total_amount = sum((c.billed for c in by_category), ZERO)
    total_tax = sum((i.tax for i in items), ZERO)
    total_credits = credit_totals.billed if credit_totals else ZERO

    return InvoiceSummary(
        client_id=client_id,
        period_start=period_start,
        period_end=period_end,
        subtotal=sum((c.base for c in by_category), ZERO),
        total_surcharge=sum((c.surcharge for c in by_category), ZERO),
        total_insurance=sum((c.insurance for c in by_category), ZERO),
        total_markup=sum((c.markup for c in by_category), ZERO),
        total_tax=total_tax,
        total_amount=total_amount,
        by_category=by_category,
        credits=credit_totals,
        total_credits=total_credits,
        amount_due=total_amount + total_tax + total_credits,
        line_count=len(items),
    )
