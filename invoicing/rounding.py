"""Category rounding reconciliation.

Each line's billed amount is rounded on its own, so a category's sum of
rounded lines can drift a cent or two from the rounded sum of its exact
values (or from an external reference total). The residual is pushed onto
one line per category so the displayed total is exact.

The tolerance is deliberately small: a residual above it means the
per-line arithmetic is wrong, and is raised instead of absorbed.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from core.errors import RoundingToleranceExceeded
from core.models.canonical import LineCategory, LineItem
from core.money import ZERO, money_sum, round_money
from core.observability.logging import get_logger

logger = get_logger(__name__)

ROUNDING_TOLERANCE = Decimal("0.05")


@dataclass
class RoundingAdjustment:
    """One residual pushed onto one line."""
    category: LineCategory
    transaction_id: str
    residual: Decimal
    target_total: Decimal
    rounded_total: Decimal

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "transaction_id": self.transaction_id,
            "residual": str(self.residual),
            "target_total": str(self.target_total),
            "rounded_total": str(self.rounded_total),
        }


def _adjustment_target(items: Sequence[LineItem]) -> LineItem:
    """Largest-magnitude line; ties go to the lowest transaction id."""
    return min(items, key=lambda i: (-abs(i.billed_amount), i.transaction_id))


def category_target(items: Sequence[LineItem], reference_total: Optional[Decimal] = None) -> Decimal:
    """The total a category must display."""
    if reference_total is not None:
        return round_money(reference_total)
    return round_money(money_sum(i.exact_billed for i in items))


def reconcile_rounding(
    line_items: Sequence[LineItem],
    reference_totals: Optional[Mapping[LineCategory, Decimal]] = None,
    tolerance: Decimal = ROUNDING_TOLERANCE,
) -> Tuple[List[LineItem], List[RoundingAdjustment]]:
    """Make every category's rounded line sum equal its target total.

    Args:
        line_items: Priced line items for one client and period
        reference_totals: Optional per-category totals to match exactly
            (e.g. the platform's own invoice figures); defaults to the
            rounded sum of exact billed values
        tolerance: Largest residual that may be absorbed

    Returns:
        (line items in input order, adjustments made)

    Raises:
        RoundingToleranceExceeded: A category residual is above tolerance
    """
    reference_totals = reference_totals or {}
    items = list(line_items)
    by_category: Dict[LineCategory, List[int]] = {}
    for idx, item in enumerate(items):
        by_category.setdefault(item.category, []).append(idx)

    adjustments: List[RoundingAdjustment] = []
    for category, indexes in by_category.items():
        members = [items[i] for i in indexes]
        target = category_target(members, reference_totals.get(category))
        rounded = money_sum(m.billed_amount for m in members)
        residual = target - rounded
        if residual == ZERO:
            continue
        if abs(residual) > tolerance:
            raise RoundingToleranceExceeded(category.value, residual, tolerance)

        chosen = _adjustment_target(members)
        position = indexes[members.index(chosen)]
        items[position] = chosen.model_copy(update={
            "markup_amount": chosen.markup_amount + residual,
            "billed_amount": chosen.billed_amount + residual,
            "rounding_adjustment": chosen.rounding_adjustment + residual,
        })
        adjustments.append(RoundingAdjustment(
            category=category,
            transaction_id=chosen.transaction_id,
            residual=residual,
            target_total=target,
            rounded_total=rounded,
        ))
        logger.warning(
            f"Rounding residual {residual} in {category.value} applied to {chosen.transaction_id}",
            extra_fields={"category": category.value, "residual": str(residual), "target": str(target)},
        )

    return items, adjustments
