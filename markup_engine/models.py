"""
Markup Engine Models

Defines data structures for:
- Markup rules (conditions + markup kind/value)
- The matching context built from one transaction
- Markup results
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from core.models.canonical import BillingCategory
from core.money import ZERO, to_decimal


class MarkupType(str, Enum):
    """How a rule's value turns a base cost into a markup."""
    PERCENTAGE = "percentage"  # value is percent: 15 means 15%
    FIXED = "fixed"            # value is a currency amount


# (label, min_oz inclusive, max_oz exclusive; None = unbounded)
WEIGHT_BRACKETS: List[Tuple[str, Decimal, Optional[Decimal]]] = [
    ("0-8oz", Decimal("0"), Decimal("8")),
    ("8-16oz", Decimal("8"), Decimal("16")),
    ("1-2lb", Decimal("16"), Decimal("32")),
    ("2-5lb", Decimal("32"), Decimal("80")),
    ("5-10lb", Decimal("80"), Decimal("160")),
    ("10lb+", Decimal("160"), None),
]


def weight_bracket(label: str) -> Tuple[Decimal, Optional[Decimal]]:
    """Weight range for a bracket label."""
    for name, lo, hi in WEIGHT_BRACKETS:
        if name == label:
            return lo, hi
    raise ValueError(f"Unknown weight bracket: {label}")


# =============================================================================
# Rules
# =============================================================================

@dataclass
class MarkupRule:
    """
    A conditional pricing rule.

    Every condition field left as None is a wildcard. Specificity is the
    number of conditions set (see rules.specificity_score).

    Attributes:
        id: Database ID
        name: Human-readable rule name
        markup_type: percentage or fixed
        markup_value: Percent (15 = 15%) or fixed currency amount
        client_id: Client the rule is scoped to (None = global)
        billing_category: Matching category condition
        fee_type: Platform fee label condition
        service_tier: Ship option / service level condition
        weight_min_oz / weight_max_oz: Weight range condition, min <= w < max
        is_active: Inactive rules never match
        effective_from / effective_to: Inclusive validity window on charge date
        applies_to_surcharge / applies_to_insurance: Mark up these pass-through
            components too (default: pass-through untouched)
        created_at: Used to break specificity ties (newest wins)
    """
    name: str
    markup_type: MarkupType
    markup_value: Decimal
    client_id: Optional[str] = None
    billing_category: Optional[BillingCategory] = None
    fee_type: Optional[str] = None
    service_tier: Optional[str] = None
    weight_min_oz: Optional[Decimal] = None
    weight_max_oz: Optional[Decimal] = None
    is_active: bool = True
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    applies_to_surcharge: bool = False
    applies_to_insurance: bool = False
    description: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    id: Optional[int] = None

    def __post_init__(self):
        self.markup_type = MarkupType(self.markup_type)
        self.markup_value = to_decimal(self.markup_value)
        if self.billing_category is not None:
            self.billing_category = BillingCategory(self.billing_category)
        if self.fee_type is not None:
            self.fee_type = self.fee_type.strip()
        if self.weight_min_oz is not None:
            self.weight_min_oz = to_decimal(self.weight_min_oz)
        if self.weight_max_oz is not None:
            self.weight_max_oz = to_decimal(self.weight_max_oz)
        if (
            self.weight_min_oz is not None
            and self.weight_max_oz is not None
            and self.weight_min_oz >= self.weight_max_oz
        ):
            raise ValueError(f"Rule '{self.name}': weight_min_oz must be below weight_max_oz")
        if self.effective_from and self.effective_to and self.effective_from > self.effective_to:
            raise ValueError(f"Rule '{self.name}': effective_from is after effective_to")

    @property
    def scope(self) -> str:
        return "client" if self.client_id else "global"

    @property
    def has_weight_condition(self) -> bool:
        return self.weight_min_oz is not None or self.weight_max_oz is not None


# =============================================================================
# Matching
# =============================================================================

@dataclass
class MatchingContext:
    """What a rule is matched against for one transaction."""
    client_id: str
    billing_category: BillingCategory
    fee_type: str
    service_tier: Optional[str] = None
    weight_oz: Optional[Decimal] = None
    charge_date: Optional[date] = None


@dataclass
class MarkupResult:
    """
    Markup computed for one base amount.

    Attributes:
        markup_exact: Unrounded markup (percentage rules) or the fixed amount
        markup_amount: markup_exact rounded to the currency minor unit
        markup_percentage: markup / base * 100 (0 for a zero base)
        rule: The selected rule, None when nothing matched
    """
    markup_exact: Decimal = ZERO
    markup_amount: Decimal = ZERO
    markup_percentage: Decimal = ZERO
    rule: Optional[MarkupRule] = None

    @property
    def rule_id(self) -> Optional[int]:
        return self.rule.id if self.rule else None

    @property
    def rule_name(self) -> Optional[str]:
        return self.rule.name if self.rule else None
