"""
Markup Engine

Turns attributed transactions into priced line items:
1. Categorize (matching category + display category)
2. Build the matching context, enriched from shipment records
3. Select the single most specific rule and compute the markup
4. Price the line: base + surcharge + insurance + markup
5. Mirror shipping markup onto credits that offset a shipment in the same run
"""

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from core.models.canonical import BillingCategory, LineCategory, LineItem, Transaction
from core.money import ZERO, amounts_match, round_money, to_decimal
from core.observability.logging import get_logger
from .categories import categorize_transaction
from .db import get_rules_for_client
from .models import MarkupResult, MarkupRule, MatchingContext, MarkupType
from .rules import calculate_markup, markup_percentage, matching_rules, select_rule

logger = get_logger(__name__)


class MarkupEngine:
    """
    Applies a client's markup rules to its transactions.

    Usage:
        engine = MarkupEngine.for_client("C-100")
        items = engine.price_all(transactions, shipment_details)
    """

    def __init__(self, rules: Sequence[MarkupRule], client_id: Optional[str] = None):
        self.client_id = client_id
        self.rules = [r for r in rules if r.client_id is None or client_id is None or r.client_id == client_id]

    @classmethod
    def for_client(cls, client_id: str, db_path: Optional[Path] = None) -> "MarkupEngine":
        return cls(get_rules_for_client(client_id, db_path=db_path), client_id=client_id)

    def context_for(
        self,
        tx: Transaction,
        billing_category: BillingCategory,
        shipment: Optional[Mapping] = None,
    ) -> MatchingContext:
        """Matching context for a transaction.

        Service tier and weight come from the transaction when the platform
        reported them, otherwise from the synced shipment record.
        """
        shipment = shipment or {}
        service_tier = tx.service_tier or shipment.get("service_tier")
        weight = tx.weight_oz
        if weight is None and shipment.get("weight_oz") not in (None, ""):
            weight = to_decimal(shipment["weight_oz"])
        charge_date = tx.charge_date.date() if tx.charge_date else None
        return MatchingContext(
            client_id=tx.client_id or self.client_id,
            billing_category=billing_category,
            fee_type=tx.fee_type,
            service_tier=service_tier,
            weight_oz=weight,
            charge_date=charge_date,
        )

    def match(self, ctx: MatchingContext) -> Optional[MarkupRule]:
        """Winning rule for the context.

        Credits only ever match rules that explicitly target the credits
        category; category-wildcard rules price charges, not credits.
        """
        return select_rule(self._eligible(ctx), ctx)

    def candidates(self, ctx: MatchingContext) -> List[MarkupRule]:
        """Every rule that matches the context, winner first."""
        return matching_rules(self._eligible(ctx), ctx)

    def _eligible(self, ctx: MatchingContext) -> List[MarkupRule]:
        if ctx.billing_category == BillingCategory.CREDITS:
            return [r for r in self.rules if r.billing_category == BillingCategory.CREDITS]
        return self.rules

    def price(self, tx: Transaction, shipment: Optional[Mapping] = None) -> LineItem:
        """Price one transaction."""
        billing_category, line_category = categorize_transaction(tx)
        ctx = self.context_for(tx, billing_category, shipment)
        rule = self.match(ctx)
        return self._line_item(tx, billing_category, line_category, ctx, rule)

    def price_all(
        self,
        transactions: Iterable[Transaction],
        shipment_details: Optional[Mapping[str, Mapping]] = None,
    ) -> List[LineItem]:
        """Price a batch. Output order follows input order."""
        shipment_details = shipment_details or {}
        transactions = list(transactions)
        items: List[Optional[LineItem]] = [None] * len(transactions)
        credits = []

        for i, tx in enumerate(transactions):
            if tx.is_credit:
                credits.append(i)
                continue
            items[i] = self.price(tx, shipment_details.get(tx.reference_id))

        shipping = {
            item.reference_id: item
            for item in items
            if item is not None and item.category == LineCategory.SHIPPING
        }
        for i in credits:
            tx = transactions[i]
            item = self.price(tx, shipment_details.get(tx.reference_id))
            if item.applied_rule_id is None and item.applied_rule_name is None:
                item = mirror_credit(item, shipping.get(tx.reference_id))
            items[i] = item

        return items

    def _line_item(
        self,
        tx: Transaction,
        billing_category: BillingCategory,
        line_category: LineCategory,
        ctx: MatchingContext,
        rule: Optional[MarkupRule],
    ) -> LineItem:
        base = tx.base_amount
        markup_base = base
        if rule is not None and rule.markup_type == MarkupType.PERCENTAGE:
            # Pass-through components only carry markup when the rule says so
            if rule.applies_to_surcharge:
                markup_base += tx.surcharge
            if rule.applies_to_insurance:
                markup_base += tx.insurance

        result: MarkupResult = calculate_markup(markup_base, rule)
        billed = round_money(base + tx.surcharge + tx.insurance + result.markup_amount)

        return LineItem(
            transaction_id=tx.transaction_id,
            reference_id=tx.reference_id,
            reference_kind=tx.reference_kind,
            charge_date=tx.charge_date,
            fee_type=tx.fee_type,
            category=line_category,
            billing_category=billing_category,
            service_tier=ctx.service_tier,
            base_amount=base,
            surcharge=tx.surcharge,
            insurance=tx.insurance,
            tax=tx.tax,
            markup_exact=result.markup_exact,
            markup_amount=result.markup_amount,
            markup_percentage=markup_percentage(result.markup_amount, base),
            billed_amount=billed,
            is_credit=tx.is_credit,
            applied_rule_id=result.rule_id,
            applied_rule_name=result.rule_name,
        )


def mirror_credit(credit: LineItem, shipping: Optional[LineItem]) -> LineItem:
    """Give a credit the markup of the shipping charge it exactly offsets.

    A refunded label should refund what the client was billed, markup
    included. Only applies when the credit's magnitude equals the shipping
    base (within a cent) and that shipping line carried markup.
    """
    if shipping is None or shipping.markup_exact == ZERO or shipping.base_amount == ZERO:
        return credit
    if not amounts_match(abs(credit.base_amount), abs(shipping.base_amount), tolerance=Decimal("0.009")):
        return credit

    markup_exact = credit.base_amount * shipping.markup_exact / shipping.base_amount
    markup_amount = round_money(markup_exact)
    logger.info(
        f"Mirroring shipping markup onto credit {credit.transaction_id}",
        extra_fields={
            "transaction_id": credit.transaction_id,
            "shipment": credit.reference_id,
            "markup": str(markup_amount),
        },
    )
    return credit.model_copy(update={
        "markup_exact": markup_exact,
        "markup_amount": markup_amount,
        "markup_percentage": markup_percentage(markup_amount, credit.base_amount),
        "billed_amount": round_money(credit.base_amount + credit.surcharge + credit.insurance + markup_amount),
        "applied_rule_id": shipping.applied_rule_id,
        "applied_rule_name": f"{shipping.applied_rule_name} (mirrored)",
    })


def preview_markup(
    rules: Sequence[MarkupRule],
    client_id: str,
    billing_category: BillingCategory,
    fee_type: str,
    base_amount: Decimal,
    service_tier: Optional[str] = None,
    weight_oz: Optional[Decimal] = None,
    charge_date: Optional[date] = None,
) -> Tuple[MarkupResult, List[MarkupRule]]:
    """Which rule wins for a context, the markup it yields and every matching rule."""
    ctx = MatchingContext(
        client_id=client_id,
        billing_category=billing_category,
        fee_type=fee_type,
        service_tier=service_tier,
        weight_oz=weight_oz,
        charge_date=charge_date,
    )
    engine = MarkupEngine(rules, client_id=client_id)
    candidates = engine.candidates(ctx)
    return calculate_markup(to_decimal(base_amount), engine.match(ctx)), candidates
