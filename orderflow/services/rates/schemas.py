"""Rate calculator inputs/outputs."""

from pydantic import BaseModel, ConfigDict, Field


class Destination(BaseModel):
    model_config = ConfigDict(frozen=True)

    country: str = Field(min_length=2, max_length=2)
    region: str | None = None
    postal_code: str | None = None


class RateItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    unit_price_cents: int = Field(ge=0)
    qty: int = Field(ge=1)


class RateDraft(BaseModel):
    """Everything the calculator looks at. Two equal drafts always price the same."""

    model_config = ConfigDict(frozen=True)

    subtotal_cents: int = Field(ge=0)
    items: tuple[RateItem, ...]
    destination: Destination
    currency: str | None = None


class Adjustment(BaseModel):
    reason: str
    amount_cents: int


class RateBreakdown(BaseModel):
    tax_rate_bps: int | None = None  # 725 => 7.25%
    tax_rule: str | None = None
    shipping_rule: str | None = None
    base_shipping_cents: int = 0
    per_item_cents: int = 0
    adjustments: list[Adjustment] = Field(default_factory=list)
    prices_include_tax: bool = False


class RateResult(BaseModel):
    """`tax_cents` is the tax contained in the price; it is only added on top when not inclusive."""

    tax_cents: int
    shipping_cents: int
    breakdown: RateBreakdown

    @property
    def added_tax_cents(self) -> int:
        return 0 if self.breakdown.prices_include_tax else self.tax_cents

    @property
    def included_tax_cents(self) -> int:
        return self.tax_cents if self.breakdown.prices_include_tax else 0
