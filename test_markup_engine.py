"""
Markup engine tests: rule selection, markup arithmetic, credits and the
rule store.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from itertools import permutations

import pytest

from conftest import make_tx
from core.models.canonical import BillingCategory, LineCategory, ReferenceKind
from markup_engine.categories import categorize_transaction
from markup_engine.db import add_rule, deactivate_rule, get_rule, get_rule_history, get_rules_for_client, update_rule
from markup_engine.engine import MarkupEngine, preview_markup
from markup_engine.models import MarkupRule, MarkupType, MatchingContext, weight_bracket
from markup_engine.rules import calculate_markup, select_rule, specificity_score

CLIENT = "C-100"


def pct(name, value, **conditions) -> MarkupRule:
    return MarkupRule(name=name, markup_type=MarkupType.PERCENTAGE, markup_value=Decimal(value), **conditions)


def fixed(name, value, **conditions) -> MarkupRule:
    return MarkupRule(name=name, markup_type=MarkupType.FIXED, markup_value=Decimal(value), **conditions)


def ctx(**overrides) -> MatchingContext:
    fields = dict(
        client_id=CLIENT,
        billing_category=BillingCategory.SHIPMENTS,
        fee_type="Shipping",
        charge_date=date(2024, 1, 15),
    )
    fields.update(overrides)
    return MatchingContext(**fields)


# =============================================================================
# Selection
# =============================================================================

class TestRuleSelection:

    def test_most_specific_rule_wins_in_any_order(self):
        rules = [
            pct("global", "10"),
            pct("client shipments", "20", client_id=CLIENT, billing_category=BillingCategory.SHIPMENTS),
            pct("client shipments ground", "25", client_id=CLIENT, billing_category=BillingCategory.SHIPMENTS,
                service_tier="Ground"),
        ]
        for ordering in permutations(rules):
            winner = select_rule(ordering, ctx(service_tier="Ground"))
            assert winner.name == "client shipments ground"

    def test_specificity_counts_weight_range_once(self):
        rule = pct("heavy", "5", weight_min_oz=Decimal("16"), weight_max_oz=Decimal("32"))
        assert specificity_score(rule) == 1
        assert specificity_score(pct("none", "5")) == 0

    def test_tie_goes_to_newest_rule(self):
        older = pct("older", "10", billing_category=BillingCategory.SHIPMENTS,
                    created_at=datetime(2024, 1, 1))
        newer = pct("newer", "12", billing_category=BillingCategory.SHIPMENTS,
                    created_at=datetime(2024, 2, 1))
        assert select_rule([newer, older], ctx()).name == "newer"
        assert select_rule([older, newer], ctx()).name == "newer"

    def test_other_client_rule_never_matches(self):
        rules = [pct("someone else", "50", client_id="C-999")]
        assert select_rule(rules, ctx()) is None

    def test_inactive_rule_never_matches(self):
        assert select_rule([pct("off", "10", is_active=False)], ctx()) is None

    def test_fee_type_match_ignores_case_and_whitespace(self):
        rule = pct("pick", "15", fee_type="Per Pick Fee")
        assert select_rule([rule], ctx(billing_category=BillingCategory.SHIPMENT_FEES,
                                        fee_type="  per pick fee ")) is rule

    def test_weight_range_is_min_inclusive_max_exclusive(self):
        lo, hi = weight_bracket("8-16oz")
        rule = pct("8-16", "10", weight_min_oz=lo, weight_max_oz=hi)
        assert select_rule([rule], ctx(weight_oz=Decimal("8"))) is rule
        assert select_rule([rule], ctx(weight_oz=Decimal("15.99"))) is rule
        assert select_rule([rule], ctx(weight_oz=Decimal("16"))) is None

    def test_weight_rule_never_matches_unknown_weight(self):
        rule = pct("light", "10", weight_max_oz=Decimal("8"))
        assert select_rule([rule], ctx(weight_oz=None)) is None

    def test_effective_window_is_inclusive(self):
        rule = pct("january", "10", effective_from=date(2024, 1, 1), effective_to=date(2024, 1, 15))
        assert select_rule([rule], ctx(charge_date=date(2024, 1, 15))) is rule
        assert select_rule([rule], ctx(charge_date=date(2024, 1, 16))) is None

    def test_invalid_rules_are_rejected(self):
        with pytest.raises(ValueError):
            pct("bad weight", "10", weight_min_oz=Decimal("16"), weight_max_oz=Decimal("8"))
        with pytest.raises(ValueError):
            pct("bad dates", "10", effective_from=date(2024, 2, 1), effective_to=date(2024, 1, 1))
        with pytest.raises(ValueError):
            weight_bracket("3-4lb")


# =============================================================================
# Arithmetic
# =============================================================================

class TestCalculateMarkup:

    def test_percentage_rounds_half_up(self):
        result = calculate_markup(Decimal("10.05"), pct("p", "15"))
        assert result.markup_exact == Decimal("1.5075")
        assert result.markup_amount == Decimal("1.51")

    def test_fixed_markup_follows_base_sign(self):
        rule = fixed("flat", "1.25")
        assert calculate_markup(Decimal("8.00"), rule).markup_amount == Decimal("1.25")
        assert calculate_markup(Decimal("-8.00"), rule).markup_amount == Decimal("-1.25")

    def test_fixed_markup_on_zero_base(self):
        result = calculate_markup(Decimal("0"), fixed("flat", "2.00"))
        assert result.markup_amount == Decimal("2.00")
        assert result.markup_percentage == Decimal("0")

    def test_no_rule_means_no_markup(self):
        result = calculate_markup(Decimal("12.34"), None)
        assert result.markup_amount == Decimal("0")
        assert result.rule is None


# =============================================================================
# Engine
# =============================================================================

class TestMarkupEngine:

    def test_worked_example(self):
        rules = [
            pct("Pick 15%", "15", client_id=CLIENT, billing_category=BillingCategory.SHIPMENT_FEES,
                fee_type="Per Pick Fee", id=1),
            fixed("Shipping at cost", "0", client_id=CLIENT, billing_category=BillingCategory.SHIPMENTS, id=2),
        ]
        transactions = [
            make_tx("T1", "10.00", fee_type="Per Pick Fee", client_id=CLIENT),
            make_tx("T2", "5.20", surcharge=Decimal("0.20"), client_id=CLIENT),
            make_tx("T3", "-3.00", fee_type="Credit", transaction_type="Credit", client_id=CLIENT),
        ]
        pick, ship, credit = MarkupEngine(rules, CLIENT).price_all(transactions)

        assert pick.category == LineCategory.PICK_FEES
        assert pick.markup_amount == Decimal("1.50")
        assert pick.billed_amount == Decimal("11.50")
        assert pick.applied_rule_id == 1

        assert ship.base_amount == Decimal("5.00")
        assert ship.markup_amount == Decimal("0.00")
        assert ship.billed_amount == Decimal("5.20")

        assert credit.is_credit
        assert credit.category == LineCategory.CREDITS
        assert credit.billed_amount == Decimal("-3.00")
        assert credit.applied_rule_id is None

    def test_pass_through_components_untouched_by_default(self):
        tx = make_tx("T1", "10.50", surcharge=Decimal("0.50"), client_id=CLIENT)
        plain = MarkupEngine([pct("ship", "10", billing_category=BillingCategory.SHIPMENTS)], CLIENT).price(tx)
        assert plain.markup_amount == Decimal("1.00")
        assert plain.billed_amount == Decimal("11.50")

        with_surcharge = MarkupEngine(
            [pct("ship", "10", billing_category=BillingCategory.SHIPMENTS, applies_to_surcharge=True)], CLIENT
        ).price(tx)
        assert with_surcharge.markup_amount == Decimal("1.05")
        assert with_surcharge.billed_amount == Decimal("11.55")

    def test_shipment_details_fill_tier_and_weight(self):
        rule = pct("ground light", "20", service_tier="Ground", weight_max_oz=Decimal("16"))
        tx = make_tx("T1", "10.00", client_id=CLIENT)
        engine = MarkupEngine([rule], CLIENT)
        assert engine.price(tx).applied_rule_name is None
        item = engine.price(tx, {"service_tier": "Ground", "weight_oz": "12"})
        assert item.applied_rule_name == "ground light"
        assert item.markup_amount == Decimal("2.00")

    def test_wildcard_rules_do_not_price_credits(self):
        rules = [pct("everything", "10")]
        tx = make_tx("T1", "-4.00", fee_type="Credit", transaction_type="Credit", client_id=CLIENT)
        item = MarkupEngine(rules, CLIENT).price(tx)
        assert item.markup_amount == Decimal("0")
        assert item.billed_amount == Decimal("-4.00")

    def test_credit_category_rule_prices_credits(self):
        rules = [pct("credits", "10", billing_category=BillingCategory.CREDITS)]
        tx = make_tx("T1", "-4.00", fee_type="Credit", transaction_type="Credit", client_id=CLIENT)
        item = MarkupEngine(rules, CLIENT).price(tx)
        assert item.markup_amount == Decimal("-0.40")
        assert item.billed_amount == Decimal("-4.40")

    def test_credit_mirrors_markup_of_offset_shipment(self):
        rules = [pct("ship", "20", billing_category=BillingCategory.SHIPMENTS, id=7)]
        charge = make_tx("T1", "10.00", reference_id="S-1", client_id=CLIENT)
        credit = make_tx("T2", "-10.00", reference_id="S-1", fee_type="Credit",
                         transaction_type="Credit", client_id=CLIENT)
        # Credit first: mirroring does not depend on input order
        mirrored, shipped = MarkupEngine(rules, CLIENT).price_all([credit, charge])
        assert shipped.markup_amount == Decimal("2.00")
        assert mirrored.markup_amount == Decimal("-2.00")
        assert mirrored.billed_amount == Decimal("-12.00")
        assert mirrored.applied_rule_id == 7
        assert mirrored.applied_rule_name.endswith("(mirrored)")

    def test_partial_credit_is_not_mirrored(self):
        rules = [pct("ship", "20", billing_category=BillingCategory.SHIPMENTS)]
        charge = make_tx("T1", "10.00", reference_id="S-1", client_id=CLIENT)
        credit = make_tx("T2", "-5.00", reference_id="S-1", fee_type="Credit",
                         transaction_type="Credit", client_id=CLIENT)
        _, item = MarkupEngine(rules, CLIENT).price_all([charge, credit])
        assert item.markup_amount == Decimal("0")
        assert item.billed_amount == Decimal("-5.00")

    def test_refund_reverses_fixed_markup(self):
        rules = [fixed("label", "1.00", billing_category=BillingCategory.SHIPMENTS)]
        tx = make_tx("T1", "-5.00", transaction_type="Refund", client_id=CLIENT)
        item = MarkupEngine(rules, CLIENT).price(tx)
        assert not item.is_credit
        assert item.billed_amount == Decimal("-6.00")

    def test_preview_markup(self):
        rules = [
            pct("general", "5"),
            pct("storage", "8", billing_category=BillingCategory.STORAGE),
            pct("returns", "3", billing_category=BillingCategory.RETURNS),
        ]
        result, candidates = preview_markup(rules, CLIENT, BillingCategory.STORAGE, "Warehousing Fee", Decimal("50"))
        assert result.rule_name == "storage"
        assert result.markup_amount == Decimal("4.00")
        assert [r.name for r in candidates] == ["storage", "general"]


class TestCategorization:

    @pytest.mark.parametrize("kind,fee,expected", [
        (ReferenceKind.SHIPMENT, "Shipping", (BillingCategory.SHIPMENTS, LineCategory.SHIPPING)),
        (ReferenceKind.SHIPMENT, "Per Pick Fee", (BillingCategory.SHIPMENT_FEES, LineCategory.PICK_FEES)),
        (ReferenceKind.SHIPMENT, "B2B - Label Fee", (BillingCategory.SHIPMENT_FEES, LineCategory.B2B_FEES)),
        (ReferenceKind.INVENTORY_LOCATION, "Warehousing Fee", (BillingCategory.STORAGE, LineCategory.STORAGE)),
        (ReferenceKind.RETURN, "Return Processing", (BillingCategory.RETURNS, LineCategory.RETURNS)),
        (ReferenceKind.RECEIVING_ORDER, "WRO Receiving Fee", (BillingCategory.RECEIVING, LineCategory.RECEIVING)),
        (ReferenceKind.OTHER, "VAS Fee", (BillingCategory.SHIPMENT_FEES, LineCategory.ADDITIONAL_SERVICES)),
    ])
    def test_categories(self, kind, fee, expected):
        assert categorize_transaction(make_tx("T1", "1.00", fee_type=fee, reference_kind=kind)) == expected


# =============================================================================
# Rule store
# =============================================================================

class TestRuleStore:

    def test_rules_round_trip_with_history(self, db_path):
        rule = add_rule(pct("pick", "15", client_id=CLIENT, billing_category=BillingCategory.SHIPMENT_FEES,
                            weight_min_oz=Decimal("8")), changed_by="ops", db_path=db_path)
        stored = get_rule(rule.id, db_path)
        assert stored.markup_value == Decimal("15")
        assert stored.billing_category == BillingCategory.SHIPMENT_FEES
        assert stored.weight_min_oz == Decimal("8")

        stored.markup_value = Decimal("18")
        update_rule(stored, changed_by="ops", reason="price change", db_path=db_path)
        assert get_rule(rule.id, db_path).markup_value == Decimal("18")

        assert deactivate_rule(rule.id, db_path=db_path)
        assert not deactivate_rule(rule.id, db_path=db_path)
        actions = [h["action"] for h in get_rule_history(rule.id, db_path)]
        assert actions == ["created", "updated", "deactivated"]

    def test_client_sees_own_and_global_rules(self, db_path):
        add_rule(pct("global", "10"), db_path=db_path)
        add_rule(pct("mine", "12", client_id=CLIENT), db_path=db_path)
        add_rule(pct("theirs", "14", client_id="C-999"), db_path=db_path)
        off = add_rule(pct("old", "30", client_id=CLIENT), db_path=db_path)
        deactivate_rule(off.id, db_path=db_path)

        names = {r.name for r in get_rules_for_client(CLIENT, db_path=db_path)}
        assert names == {"global", "mine"}

    def test_engine_for_client_loads_stored_rules(self, db_path):
        add_rule(pct("ship", "10", client_id=CLIENT, billing_category=BillingCategory.SHIPMENTS,
                     created_at=datetime.utcnow() - timedelta(days=1)), db_path=db_path)
        engine = MarkupEngine.for_client(CLIENT, db_path)
        item = engine.price(make_tx("T1", "20.00", client_id=CLIENT))
        assert item.markup_amount == Decimal("2.00")
