"""API request/response schemas for checkout and order endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from orderflow.services.rates.schemas import Destination, RateBreakdown


class AddressIn(BaseModel):
    """Shipping or billing address captured at checkout."""

    full_name: str = Field(min_length=1)
    line1: str = Field(min_length=1)
    line2: str | None = None
    city: str = Field(min_length=1)
    region: str | None = None
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=2, max_length=2)
    phone: str | None = None

    def destination(self) -> Destination:
        return Destination(country=self.country.upper(), region=self.region, postal_code=self.postal_code)


class CartLine(BaseModel):
    """Read-only cart line; the price is the snapshot the shopper saw."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(min_length=1)
    size: str | None = None
    qty: int = Field(ge=1, le=99)
    price_cents_snapshot: int = Field(ge=0)


class CartSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    lines: tuple[CartLine, ...] = ()


class CheckoutRequest(BaseModel):
    """Checkout payload accepted from the storefront."""

    lines: list[CartLine] = Field(default_factory=list)
    shipping_address: AddressIn
    billing_address: AddressIn | None = None
    email: str = Field(min_length=3)
    discount_code: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=100)
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    def cart(self) -> CartSnapshot:
        return CartSnapshot(lines=tuple(self.lines))


class QuoteRequest(BaseModel):
    """Cart-display pricing request; priced with the same draft checkout uses."""

    lines: list[CartLine] = Field(min_length=1)
    destination: Destination
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class QuoteResponse(BaseModel):
    subtotal_cents: int
    tax_cents: int
    included_tax_cents: int
    shipping_cents: int
    total_cents: int
    currency: str
    breakdown: RateBreakdown


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    variant_id: str | None = None
    size: str | None = None
    sku: str
    name_snapshot: str
    qty: int
    unit_price_cents: int
    line_total_cents: int


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str | None = None
    status: str
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    included_tax_cents: int
    shipping_cents: int
    total_cents: int
    currency: str
    email: str
    discount_code: str | None = None
    payment_retry_count: int = 0
    created_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    items: list[OrderItemOut] = Field(default_factory=list)


class OrderEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    message: str | None = None
    meta: dict = Field(default_factory=dict)
    created_at: datetime | None = None
