"""Shared fixtures: a fresh SQLite file per test, isolated metrics, fake provider."""

import json
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from prometheus_client import CollectorRegistry

from orderflow.common.config import Settings
from orderflow.common.db import make_engine, make_session_factory
from orderflow.common.errors import PaymentProviderError, WebhookVerificationError
from orderflow.common.observability import Observability
from orderflow.schema import create_schema
from orderflow.services.api.main import build_core
from orderflow.services.inventory.models import Product, SizeVariant
from orderflow.services.orders.models import DiscountCode
from orderflow.services.orders.schemas import AddressIn, CartLine, CartSnapshot
from orderflow.services.payments.provider import REUSABLE_INTENT_STATUSES, CreatedIntent, IntentLookup, LookupKind


class FakePaymentProvider:
    """In-memory provider with switches for failure paths. Signature == "valid" passes."""

    name = "fake"

    def __init__(self) -> None:
        self.intents: dict[str, dict] = {}
        self.create_calls = 0
        self.fail_create = False

    def create_intent(self, amount_cents, currency, metadata, idempotency_key=None) -> CreatedIntent:
        self.create_calls += 1
        if self.fail_create:
            raise PaymentProviderError("provider unavailable", provider=self.name)
        intent_id = f"pi_fake_{uuid4().hex[:16]}"
        self.intents[intent_id] = {
            "amount": amount_cents,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret",
            "metadata": metadata,
        }
        return CreatedIntent(id=intent_id, client_secret=f"{intent_id}_secret", raw={"id": intent_id})

    def retrieve_intent(self, intent_id: str) -> IntentLookup:
        intent = self.intents.get(intent_id)
        if intent is None:
            kind = LookupKind.NOT_FOUND if intent_id.startswith("pi_fake_") else LookupKind.STALE
            return IntentLookup(kind, intent_id)
        if intent["status"] not in REUSABLE_INTENT_STATUSES:
            return IntentLookup(LookupKind.STALE, intent_id, status=intent["status"], amount_cents=intent["amount"])
        return IntentLookup(
            LookupKind.FOUND,
            intent_id,
            client_secret=intent["client_secret"],
            status=intent["status"],
            amount_cents=intent["amount"],
        )

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        if signature != "valid":
            raise WebhookVerificationError("webhook signature verification failed")
        return json.loads(payload)


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "api_key": "",
        "checkout_rate_limit_per_minute": 0,
        "webhook_simulated_mode": True,
        "max_payment_retries": 3,
        "base_currency": "GBP",
        "tax_inclusive_currencies": "",
        "free_shipping_threshold_cents": 7500,
        "event_relay_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'orderflow-test.db'}")
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def observability():
    return Observability(service_name="orderflow-test", registry=CollectorRegistry())


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def app_settings():
    return make_settings()


@pytest.fixture
def core(session_factory, observability, provider, app_settings):
    return build_core(session_factory, observability, provider, app_settings)


@pytest.fixture
def make_product(session_factory):
    """Create a product with one size variant; returns (product_id, variant_id)."""

    def _make(price_cents: int = 600, stock: int = 5, size: str = "M", deleted: bool = False):
        with session_factory() as db:
            product = Product(sku=f"SKU-{uuid4().hex[:8]}", name="Linen Shirt", price_cents=price_cents)
            db.add(product)
            db.flush()
            variant = SizeVariant(product_id=product.id, label=size, stock=stock)
            db.add(variant)
            if deleted:
                product.deleted_at = datetime.now(timezone.utc)
            db.commit()
            return product.id, variant.id

    return _make


@pytest.fixture
def make_discount(session_factory):
    def _make(code: str = "SAVE10", kind: str = "PERCENT", **fields):
        with session_factory() as db:
            discount = DiscountCode(code=code, kind=kind, active=True, times_used=0, **fields)
            db.add(discount)
            db.commit()
            return discount.id

    return _make


@pytest.fixture
def stock_of(session_factory):
    def _stock(variant_id: str) -> int:
        with session_factory() as db:
            return db.get(SizeVariant, variant_id).stock

    return _stock


@pytest.fixture
def us_address():
    return AddressIn(
        full_name="Ada Shopper",
        line1="1 Market St",
        city="San Francisco",
        region="CA",
        postal_code="94105",
        country="US",
    )


@pytest.fixture
def gb_address():
    return AddressIn(full_name="Alan Shopper", line1="10 Downing St", city="London", postal_code="SW1A 2AA", country="GB")


def cart(*lines) -> CartSnapshot:
    """cart((product_id, size, qty, price), ...)"""

    return CartSnapshot(
        lines=tuple(
            CartLine(product_id=product_id, size=size, qty=qty, price_cents_snapshot=price)
            for product_id, size, qty, price in lines
        )
    )


@pytest.fixture
def place_order(core, make_product, us_address):
    """Create one PENDING order for 2 x 600 (size M); returns (order, variant_id)."""

    def _place(stock: int = 5, qty: int = 2, **kwargs):
        product_id, variant_id = make_product(price_cents=600, stock=stock)
        result = core.orders.create_order(
            cart((product_id, "M", qty, 600)), us_address, email="ada@example.com", **kwargs
        )
        return result.order, variant_id

    return _place


def metric_value(observability, name: str, **labels) -> float:
    return observability.registry.get_sample_value(name, {"service": observability.service_name, **labels}) or 0.0
