"""
Markup Engine Package

Conditional, specificity-ranked markup rules applied on top of the
platform's base costs.

Usage:
    from markup_engine import MarkupEngine

    engine = MarkupEngine.for_client("C-100")
    line_items = engine.price_all(transactions, shipment_details)
"""

from .categories import ADDITIONAL_SERVICE_FEES, categorize_transaction, fee_line_category
from .db import (
    add_rule,
    deactivate_rule,
    get_rule,
    get_rule_history,
    get_rules_for_client,
    init_markup_db,
    list_rules,
    update_rule,
)
from .engine import MarkupEngine, mirror_credit, preview_markup
from .models import (
    WEIGHT_BRACKETS,
    MarkupResult,
    MarkupRule,
    MarkupType,
    MatchingContext,
    weight_bracket,
)
from .rules import (
    calculate_markup,
    markup_percentage,
    matching_rules,
    rule_matches_context,
    select_rule,
    specificity_score,
)

__all__ = [
    "ADDITIONAL_SERVICE_FEES",
    "categorize_transaction",
    "fee_line_category",
    "add_rule",
    "deactivate_rule",
    "get_rule",
    "get_rule_history",
    "get_rules_for_client",
    "init_markup_db",
    "list_rules",
    "update_rule",
    "MarkupEngine",
    "mirror_credit",
    "preview_markup",
    "WEIGHT_BRACKETS",
    "MarkupResult",
    "MarkupRule",
    "MarkupType",
    "MatchingContext",
    "weight_bracket",
    "calculate_markup",
    "markup_percentage",
    "matching_rules",
    "rule_matches_context",
    "select_rule",
    "specificity_score",
]
