"""Rule-based tax & shipping calculation.

Pure and deterministic: the same draft is priced at cart-display time and
again inside the checkout transaction, and both results must match exactly.
All arithmetic is done in `Decimal` with half-up rounding to whole cents.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from orderflow.common.config import settings
from orderflow.services.rates.schemas import (
    Adjustment,
    Destination,
    RateBreakdown,
    RateDraft,
    RateItem,
    RateResult,
)


@dataclass(frozen=True)
class TaxRule:
    label: str
    country: str
    rate: Decimal
    region: str | None = None

    def matches(self, destination: Destination) -> bool:
        if destination.country.upper() != self.country:
            return False
        return self.region is None or (destination.region or "").upper() == self.region


@dataclass(frozen=True)
class ShippingRule:
    label: str
    country: str
    base_cents: int
    per_item_cents: int = 0

    def matches(self, destination: Destination) -> bool:
        return destination.country.upper() == self.country


# First match wins, so region-specific rules precede country-wide ones.
DEFAULT_TAX_RULES: tuple[TaxRule, ...] = (
    TaxRule("US-CA", "US", Decimal("0.0725"), region="CA"),
    TaxRule("US-NY", "US", Decimal("0.08875"), region="NY"),
    TaxRule("UK-VAT", "GB", Decimal("0.20")),
)

DEFAULT_SHIPPING_RULES: tuple[ShippingRule, ...] = (
    ShippingRule("US_STANDARD", "US", 599, 100),
    ShippingRule("UK_STANDARD", "GB", 499, 75),
)


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RateCalculator:
    """Computes tax and shipping for a draft against fixed rule tables."""

    def __init__(
        self,
        tax_rules: Iterable[TaxRule] = DEFAULT_TAX_RULES,
        shipping_rules: Iterable[ShippingRule] = DEFAULT_SHIPPING_RULES,
        free_shipping_threshold_cents: int | None = None,
        inclusive_currencies: Iterable[str] | None = None,
    ) -> None:
        self.tax_rules = tuple(tax_rules)
        self.shipping_rules = tuple(shipping_rules)
        self.free_shipping_threshold_cents = (
            settings.free_shipping_threshold_cents
            if free_shipping_threshold_cents is None
            else free_shipping_threshold_cents
        )
        if inclusive_currencies is None:
            inclusive_currencies = settings.inclusive_currencies()
        self.inclusive_currencies = frozenset(code.upper() for code in inclusive_currencies)

    def calculate(self, draft: RateDraft) -> RateResult:
        tax_rule = next((rule for rule in self.tax_rules if rule.matches(draft.destination)), None)
        rate = tax_rule.rate if tax_rule else Decimal("0")
        prices_include_tax = bool(draft.currency) and draft.currency.upper() in self.inclusive_currencies

        subtotal = Decimal(draft.subtotal_cents)
        if prices_include_tax:
            tax_cents = _round_cents(subtotal - subtotal / (Decimal("1") + rate))
        else:
            tax_cents = _round_cents(subtotal * rate)

        shipping_rule = next((rule for rule in self.shipping_rules if rule.matches(draft.destination)), None)
        base = shipping_rule.base_cents if shipping_rule else 0
        per_item = shipping_rule.per_item_cents if shipping_rule else 0
        units = sum(item.qty for item in draft.items)
        shipping_cents = base + per_item * units

        adjustments = []
        if draft.subtotal_cents >= self.free_shipping_threshold_cents and shipping_cents > 0:
            adjustments.append(Adjustment(reason="FREE_SHIPPING_THRESHOLD", amount_cents=-shipping_cents))
            shipping_cents = 0

        return RateResult(
            tax_cents=tax_cents,
            shipping_cents=shipping_cents,
            breakdown=RateBreakdown(
                tax_rate_bps=_round_cents(rate * 10000) if tax_rule else None,
                tax_rule=tax_rule.label if tax_rule else None,
                shipping_rule=shipping_rule.label if shipping_rule else None,
                base_shipping_cents=base,
                per_item_cents=per_item,
                adjustments=adjustments,
                prices_include_tax=prices_include_tax,
            ),
        )


def build_draft(lines, destination: Destination, currency: str | None) -> RateDraft:
    """Build a draft from cart-like lines exposing product_id, price_cents_snapshot and qty."""

    items = tuple(
        RateItem(product_id=line.product_id, unit_price_cents=line.price_cents_snapshot, qty=line.qty)
        for line in lines
    )
    return RateDraft(
        subtotal_cents=sum(item.unit_price_cents * item.qty for item in items),
        items=items,
        destination=destination,
        currency=currency.upper() if currency else None,
    )


COUNTRY_CURRENCIES: dict[str, str] = {
    "US": "USD",
    "GB": "GBP",
    "CA": "CAD",
    "AU": "AUD",
    "IE": "EUR",
    "FR": "EUR",
    "DE": "EUR",
    "ES": "EUR",
    "IT": "EUR",
    "NL": "EUR",
}


def currency_for_country(country: str | None) -> str:
    """Display currency for a destination; unknown countries use the base currency."""

    return COUNTRY_CURRENCIES.get((country or "").upper(), settings.base_currency.upper())
