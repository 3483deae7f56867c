"""
Markup Rule Selection

Pure functions: which rules match a context, how specific a rule is, which
single rule wins, and what markup it produces. Nothing here touches the
database.

Selection policy:
1. Candidates are active rules whose every non-null condition matches.
2. The candidate with the most conditions set wins.
3. Ties go to the most recently created rule, then the highest id.
"""

from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from core.money import ZERO, round_money, to_decimal
from .models import MarkupRule, MarkupResult, MarkupType, MatchingContext

HUNDRED = Decimal("100")


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().casefold() == (b or "").strip().casefold()


def rule_matches_context(rule: MarkupRule, ctx: MatchingContext) -> bool:
    """True if every condition set on the rule holds for the context."""
    if not rule.is_active:
        return False
    if rule.client_id is not None and rule.client_id != ctx.client_id:
        return False
    if rule.billing_category is not None and rule.billing_category != ctx.billing_category:
        return False
    if rule.fee_type is not None and not _same(rule.fee_type, ctx.fee_type):
        return False
    if rule.service_tier is not None and not _same(rule.service_tier, ctx.service_tier):
        return False

    if rule.has_weight_condition:
        # A weight condition never matches an unknown weight
        if ctx.weight_oz is None:
            return False
        if rule.weight_min_oz is not None and ctx.weight_oz < rule.weight_min_oz:
            return False
        if rule.weight_max_oz is not None and ctx.weight_oz >= rule.weight_max_oz:
            return False

    if ctx.charge_date is not None:
        if rule.effective_from is not None and ctx.charge_date < rule.effective_from:
            return False
        if rule.effective_to is not None and ctx.charge_date > rule.effective_to:
            return False

    return True


def specificity_score(rule: MarkupRule) -> int:
    """Number of non-wildcard conditions on the rule.

    client, category, fee type, service tier, and weight range (either
    bound) each count once.
    """
    return sum([
        rule.client_id is not None,
        rule.billing_category is not None,
        rule.fee_type is not None,
        rule.service_tier is not None,
        rule.has_weight_condition,
    ])


def _precedence(rule: MarkupRule) -> Tuple:
    return (
        specificity_score(rule),
        rule.created_at,
        rule.id if rule.id is not None else -1,
        rule.name,
    )


def matching_rules(rules: Iterable[MarkupRule], ctx: MatchingContext) -> List[MarkupRule]:
    """All candidate rules, best first."""
    candidates = [r for r in rules if rule_matches_context(r, ctx)]
    return sorted(candidates, key=_precedence, reverse=True)


def select_rule(rules: Iterable[MarkupRule], ctx: MatchingContext) -> Optional[MarkupRule]:
    """The single winning rule for the context, or None."""
    candidates = [r for r in rules if rule_matches_context(r, ctx)]
    if not candidates:
        return None
    return max(candidates, key=_precedence)


def markup_percentage(markup: Decimal, base: Decimal) -> Decimal:
    """markup / base * 100, to two places (0 when base is 0)."""
    if base == ZERO:
        return ZERO
    return round_money(markup / base * HUNDRED)


def calculate_markup(base: Decimal, rule: Optional[MarkupRule]) -> MarkupResult:
    """Markup for ``base`` under ``rule``.

    percentage: base * value / 100, rounded to the minor unit
    fixed: the value, carrying the sign of the base (refunds reverse it)
    no rule: zero
    """
    base = to_decimal(base)
    if rule is None:
        return MarkupResult()

    if rule.markup_type == MarkupType.PERCENTAGE:
        exact = base * rule.markup_value / HUNDRED
    else:
        exact = -rule.markup_value if base < ZERO else rule.markup_value

    amount = round_money(exact)
    return MarkupResult(
        markup_exact=exact,
        markup_amount=amount,
        markup_percentage=markup_percentage(amount, base),
        rule=rule,
    )
