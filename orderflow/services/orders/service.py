"""Order Builder: cart snapshot -> persisted PENDING order in one transaction.

Stock reservation, discount usage and the order rows commit together or not
at all. Checkout idempotency keys are scoped to the user (or guest session)
and backed by a unique constraint, so a concurrent double-submit resolves to
the order that won the insert.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from orderflow.common.errors import (
    EmptyCartError,
    InvalidDiscountError,
    InvalidOrderStateError,
    OrderNotFoundError,
    OutOfStockError,
    ProductUnavailableError,
)
from orderflow.common.logging import logger
from orderflow.common.state_machine import PRE_PAYMENT_STATES, OrderStatus, PaymentStatus
from orderflow.services.inventory.models import Product, SizeVariant
from orderflow.services.orders.event_log import OrderEventKind
from orderflow.services.orders.models import Address, DiscountCode, Order, OrderItem
from orderflow.services.orders.schemas import AddressIn, CartSnapshot, QuoteResponse
from orderflow.services.rates.schemas import Destination
from orderflow.services.rates.service import build_draft, currency_for_country


@dataclass
class CheckoutResult:
    order: Order
    idempotent: bool = False


@dataclass
class _ResolvedLine:
    line: object
    product: Product
    variant: SizeVariant | None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def idempotency_scope(user_id: str | None, session_id: str | None, email: str) -> str:
    """Namespace for checkout idempotency keys; guests without a session key on their email."""

    if user_id:
        return f"user:{user_id}"
    if session_id:
        return f"session:{session_id}"
    return f"guest:{email.strip().lower()}"


class OrderBuilder:
    """Creates, reads and cancels orders."""

    def __init__(self, session_factory, inventory, rates, event_log, lifecycle, observability) -> None:
        self.session_factory = session_factory
        self.inventory = inventory
        self.rates = rates
        self.event_log = event_log
        self.lifecycle = lifecycle
        self.observability = observability

    @property
    def _service(self) -> str:
        return self.observability.service_name

    def _find_by_key(self, db, scope: str | None, key: str | None) -> Order | None:
        if not scope or not key:
            return None
        return db.execute(
            select(Order).where(Order.idempotency_scope == scope, Order.checkout_idempotency_key == key)
        ).scalar_one_or_none()

    def _resolve_lines(self, db, cart: CartSnapshot) -> list[_ResolvedLine]:
        resolved = []
        for index, line in enumerate(cart.lines):
            product = db.get(Product, line.product_id)
            if product is None or product.deleted_at is not None:
                raise ProductUnavailableError(
                    f"product {line.product_id} is no longer available",
                    line=index,
                    product_id=line.product_id,
                    reason="inactive",
                )
            variant = None
            if line.size:
                variant = self.inventory.find_variant(db, line.product_id, line.size)
                if variant is None:
                    raise ProductUnavailableError(
                        f"size {line.size} not found for product {line.product_id}",
                        line=index,
                        product_id=line.product_id,
                        size=line.size,
                        reason="size_not_found",
                    )
            resolved.append(_ResolvedLine(line=line, product=product, variant=variant))
        return resolved

    def _reserve_stock(self, db, resolved: list[_ResolvedLine]) -> None:
        for index, entry in enumerate(resolved):
            if entry.variant is None:
                continue
            if not self.inventory.reserve(db, entry.variant.id, entry.line.qty):
                self.observability.metrics.stock_reservation_failed_total.labels(service=self._service).inc()
                available = db.execute(
                    select(SizeVariant.stock).where(SizeVariant.id == entry.variant.id)
                ).scalar_one_or_none()
                raise OutOfStockError(
                    f"insufficient stock for {entry.product.name} size {entry.line.size}",
                    line=index,
                    product_id=entry.product.id,
                    size=entry.line.size,
                    requested=entry.line.qty,
                    available=available or 0,
                )

    def _claim_discount(self, db, raw_code: str, subtotal_cents: int) -> tuple[DiscountCode, int]:
        """Validate a code, compute its amount and consume one use.

        The usage claim is a conditional increment, so the last remaining use
        of a limited code goes to exactly one checkout.
        """

        code = raw_code.strip().upper()
        discount = db.execute(select(DiscountCode).where(DiscountCode.code == code)).scalar_one_or_none()
        if discount is None or not discount.active:
            raise InvalidDiscountError("discount code is not valid", code=code, reason="not_found")
        now = datetime.now(timezone.utc)
        starts_at = _as_utc(discount.starts_at)
        ends_at = _as_utc(discount.ends_at)
        if starts_at and starts_at > now:
            raise InvalidDiscountError("discount code is not active yet", code=code, reason="not_started")
        if ends_at and ends_at < now:
            raise InvalidDiscountError("discount code has expired", code=code, reason="expired")
        if discount.min_subtotal_cents and subtotal_cents < discount.min_subtotal_cents:
            raise InvalidDiscountError(
                "order subtotal is below the discount minimum",
                code=code,
                reason="min_subtotal",
                min_subtotal_cents=discount.min_subtotal_cents,
            )

        if discount.kind == "FIXED":
            amount = min(subtotal_cents, discount.value_cents or 0)
        elif discount.kind == "PERCENT":
            amount = min(subtotal_cents, subtotal_cents * (discount.percent or 0) // 100)
        else:
            raise InvalidDiscountError("discount code is not valid", code=code, reason="unknown_kind")

        claimed = db.execute(
            update(DiscountCode)
            .where(
                DiscountCode.id == discount.id,
                DiscountCode.active.is_(True),
                (DiscountCode.usage_limit.is_(None)) | (DiscountCode.times_used < DiscountCode.usage_limit),
            )
            .values(times_used=DiscountCode.times_used + 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise InvalidDiscountError("discount code usage limit reached", code=code, reason="exhausted")
        return discount, amount

    @staticmethod
    def _address_row(address: AddressIn, user_id: str | None) -> Address:
        return Address(
            user_id=user_id,
            full_name=address.full_name,
            line1=address.line1,
            line2=address.line2,
            city=address.city,
            region=address.region,
            postal_code=address.postal_code,
            country=address.country.upper(),
            phone=address.phone,
        )

    def create_order(
        self,
        cart: CartSnapshot,
        shipping_address: AddressIn,
        *,
        email: str,
        user_id: str | None = None,
        session_id: str | None = None,
        discount_code: str | None = None,
        idempotency_key: str | None = None,
        currency: str | None = None,
        billing_address: AddressIn | None = None,
    ) -> CheckoutResult:
        """Create one PENDING order, or return the one already created under the same key."""

        metrics = self.observability.metrics
        if not cart.lines:
            metrics.checkout_rejected_total.labels(service=self._service, code=EmptyCartError.code).inc()
            raise EmptyCartError("cart has no lines")

        scope = idempotency_scope(user_id, session_id, email)
        destination = shipping_address.destination()
        currency = (currency or currency_for_country(destination.country)).upper()
        started = time.perf_counter()
        tracer = self.observability.tracer("orderflow.orders")

        with tracer.start_as_current_span("checkout.create_order"), self.session_factory() as db:
            existing = self._find_by_key(db, scope, idempotency_key)
            if existing is not None:
                logger.info("checkout replayed order_id=%s scope=%s", existing.id, scope)
                return CheckoutResult(order=existing, idempotent=True)

            try:
                resolved = self._resolve_lines(db, cart)
                self._reserve_stock(db, resolved)

                subtotal = sum(entry.line.price_cents_snapshot * entry.line.qty for entry in resolved)
                discount, discount_cents = (None, 0)
                if discount_code:
                    discount, discount_cents = self._claim_discount(db, discount_code, subtotal)

                rate = self.rates.calculate(build_draft(cart.lines, destination, currency))
                shipping_row = self._address_row(shipping_address, user_id)
                billing_row = self._address_row(billing_address, user_id) if billing_address else shipping_row
                db.add(shipping_row)
                if billing_row is not shipping_row:
                    db.add(billing_row)
                db.flush()

                order = Order(
                    user_id=user_id,
                    idempotency_scope=scope if idempotency_key else None,
                    checkout_idempotency_key=idempotency_key,
                    status=OrderStatus.PENDING,
                    subtotal_cents=subtotal,
                    discount_cents=discount_cents,
                    tax_cents=rate.added_tax_cents,
                    included_tax_cents=rate.included_tax_cents,
                    shipping_cents=rate.shipping_cents,
                    total_cents=subtotal - discount_cents + rate.added_tax_cents + rate.shipping_cents,
                    currency=currency,
                    email=email,
                    shipping_address_id=shipping_row.id,
                    billing_address_id=billing_row.id,
                    discount_code_id=discount.id if discount else None,
                    discount_code=discount.code if discount else None,
                    payment_retry_count=0,
                )
                db.add(order)
                db.flush()
                for position, entry in enumerate(resolved):
                    db.add(
                        OrderItem(
                            order_id=order.id,
                            position=position,
                            product_id=entry.product.id,
                            variant_id=entry.variant.id if entry.variant else None,
                            size=entry.line.size,
                            sku=entry.product.sku,
                            name_snapshot=entry.product.name,
                            qty=entry.line.qty,
                            unit_price_cents=entry.line.price_cents_snapshot,
                            line_total_cents=entry.line.price_cents_snapshot * entry.line.qty,
                        )
                    )

                if discount is not None:
                    self.event_log.append(
                        db,
                        order.id,
                        OrderEventKind.DISCOUNT_APPLIED,
                        f"Discount {discount.code} applied",
                        {
                            "discountCode": discount.code,
                            "discountKind": discount.kind,
                            "discountPercent": discount.percent,
                            "discountValueCents": discount.value_cents,
                            "totalDiscountCents": discount_cents,
                        },
                    )
                self.event_log.append(
                    db,
                    order.id,
                    OrderEventKind.ORDER_CREATED,
                    "Order created from checkout",
                    {
                        "subtotalCents": subtotal,
                        "discountCents": discount_cents,
                        "taxCents": order.tax_cents,
                        "includedTaxCents": order.included_tax_cents,
                        "shippingCents": order.shipping_cents,
                        "totalCents": order.total_cents,
                        "currency": currency,
                        "itemCount": sum(entry.line.qty for entry in resolved),
                        "rateBreakdown": rate.breakdown.model_dump(),
                    },
                )
                db.commit()
            except IntegrityError:
                # Lost a concurrent double-submit on the idempotency key; the
                # rollback also returns the stock this attempt reserved.
                db.rollback()
                existing = self._find_by_key(db, scope, idempotency_key)
                if existing is None:
                    raise
                logger.info("checkout idempotency race resolved order_id=%s", existing.id)
                return CheckoutResult(order=existing, idempotent=True)
            except (EmptyCartError, ProductUnavailableError, OutOfStockError, InvalidDiscountError) as exc:
                db.rollback()
                metrics.checkout_rejected_total.labels(service=self._service, code=exc.code).inc()
                logger.info("checkout rejected code=%s detail=%s", exc.code, exc.detail)
                raise

            db.refresh(order)
            order.items  # load before the session closes
            metrics.orders_created_total.labels(service=self._service).inc()
            metrics.checkout_latency_seconds.labels(service=self._service).observe(time.perf_counter() - started)
            logger.info("order created order_id=%s total_cents=%s currency=%s", order.id, order.total_cents, currency)
            return CheckoutResult(order=order)

    def quote(self, lines, destination: Destination, currency: str | None = None) -> QuoteResponse:
        """Price a cart for display exactly the way checkout will price it."""

        currency = (currency or currency_for_country(destination.country)).upper()
        draft = build_draft(lines, destination, currency)
        rate = self.rates.calculate(draft)
        return QuoteResponse(
            subtotal_cents=draft.subtotal_cents,
            tax_cents=rate.added_tax_cents,
            included_tax_cents=rate.included_tax_cents,
            shipping_cents=rate.shipping_cents,
            total_cents=draft.subtotal_cents + rate.added_tax_cents + rate.shipping_cents,
            currency=currency,
            breakdown=rate.breakdown,
        )

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id)
            order.items
            return order

    def list_events(self, order_id: str):
        with self.session_factory() as db:
            if db.get(Order, order_id) is None:
                raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id)
            return self.event_log.list_events(db, order_id)

    def cancel_order(self, order_id: str, user_id: str | None = None, reason: str = "CUSTOMER_CANCELLED") -> Order:
        """Customer cancellation of an unpaid order: stock and discount usage come back once."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None or (order.user_id and order.user_id != user_id):
                raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id)
            if order.status not in PRE_PAYMENT_STATES:
                raise InvalidOrderStateError(
                    f"order {order_id} cannot be cancelled from {order.status}",
                    order_id=order_id,
                    status=order.status,
                )
            outcome = self.lifecycle.cancel(
                db, order, reason, payment_status=PaymentStatus.CANCELLED, meta={"cancelledBy": user_id or "guest"}
            )
            if not outcome.applied:
                db.rollback()
                current = db.get(Order, order_id)
                db.refresh(current)
                raise InvalidOrderStateError(
                    f"order {order_id} changed state during cancellation",
                    order_id=order_id,
                    status=current.status,
                )
            db.commit()
            self.observability.metrics.stock_restored_units_total.labels(
                service=self._service, reason=reason
            ).inc(outcome.restored_units)
            logger.info("order cancelled order_id=%s restored_units=%s", order_id, outcome.restored_units)
            order.items
            return order
