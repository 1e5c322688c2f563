"""Rate calculator rules, rounding and determinism."""

from decimal import Decimal

from orderflow.services.rates.schemas import Destination, RateDraft, RateItem
from orderflow.services.rates.service import RateCalculator, TaxRule, currency_for_country


def draft(subtotal_items, country="US", region="CA", currency="USD") -> RateDraft:
    items = tuple(RateItem(product_id=f"p{i}", unit_price_cents=price, qty=qty) for i, (price, qty) in enumerate(subtotal_items))
    return RateDraft(
        subtotal_cents=sum(item.unit_price_cents * item.qty for item in items),
        items=items,
        destination=Destination(country=country, region=region),
        currency=currency,
    )


def calculator(**kwargs) -> RateCalculator:
    kwargs.setdefault("free_shipping_threshold_cents", 7500)
    kwargs.setdefault("inclusive_currencies", ["GBP"])
    return RateCalculator(**kwargs)


def test_us_ca_scenario():
    result = calculator().calculate(draft([(600, 2)]))

    assert result.tax_cents == 87
    assert result.shipping_cents == 799
    assert result.breakdown.tax_rule == "US-CA"
    assert result.breakdown.tax_rate_bps == 725
    assert 1200 + result.added_tax_cents + result.shipping_cents == 2086


def test_region_specific_rule_wins_and_unknown_region_has_no_tax():
    ny = calculator().calculate(draft([(1000, 1)], region="NY"))
    tx = calculator().calculate(draft([(1000, 1)], region="TX"))

    assert ny.tax_cents == 89  # 88.75 rounds half up
    assert tx.tax_cents == 0
    assert tx.breakdown.tax_rule is None
    assert tx.shipping_cents == 699


def test_free_shipping_at_threshold():
    result = calculator().calculate(draft([(2500, 3)]))

    assert result.shipping_cents == 0
    assert result.breakdown.adjustments[0].reason == "FREE_SHIPPING_THRESHOLD"
    assert result.breakdown.adjustments[0].amount_cents == -(599 + 300)


def test_tax_inclusive_currency_backs_tax_out_without_changing_total():
    result = calculator().calculate(draft([(600, 2)], country="GB", region=None, currency="GBP"))

    assert result.breakdown.prices_include_tax is True
    assert result.tax_cents == 200
    assert result.included_tax_cents == 200
    assert result.added_tax_cents == 0
    assert result.shipping_cents == 499 + 75 * 2


def test_same_destination_in_exclusive_currency_adds_tax():
    result = calculator().calculate(draft([(600, 2)], country="GB", region=None, currency="USD"))

    assert result.added_tax_cents == 240
    assert result.included_tax_cents == 0


def test_unmatched_destination_is_free():
    result = calculator().calculate(draft([(600, 2)], country="JP", region=None, currency="JPY"))

    assert result.tax_cents == 0
    assert result.shipping_cents == 0
    assert result.breakdown.shipping_rule is None


def test_deterministic_for_identical_inputs():
    calc = calculator()
    first = calc.calculate(draft([(333, 3), (1999, 1)], region="NY"))
    second = calc.calculate(draft([(333, 3), (1999, 1)], region="NY"))

    assert first.model_dump_json() == second.model_dump_json()


def test_custom_rules_first_match_wins():
    calc = calculator(tax_rules=[TaxRule("US-ALL", "US", Decimal("0.05")), TaxRule("US-CA", "US", Decimal("0.0725"), "CA")])

    assert calc.calculate(draft([(1000, 1)])).tax_cents == 50


def test_currency_for_country():
    assert currency_for_country("us") == "USD"
    assert currency_for_country("GB") == "GBP"
    assert currency_for_country("ZZ") == "GBP"
