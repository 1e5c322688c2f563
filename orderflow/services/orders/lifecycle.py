"""Guarded order status transitions and their side effects.

Every transition is a conditional `UPDATE orders ... WHERE status IN (...)`.
Side effects (capture, metrics, stock restore) run only when that update
touched the row, inside the same transaction, so two racing callers cannot
both apply them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from orderflow.common.state_machine import (
    OPEN_PAYMENT_STATES,
    PRE_PAYMENT_STATES,
    OrderStatus,
    PaymentStatus,
    validate_payment_transition,
    validate_transition,
)
from orderflow.services.orders.event_log import OrderEventKind
from orderflow.services.orders.models import DiscountCode, Order
from orderflow.services.payments.models import PaymentRecord


@dataclass
class CancellationOutcome:
    applied: bool
    stock_operations: list[dict] = field(default_factory=list)

    @property
    def restored_units(self) -> int:
        return sum(op["quantity"] for op in self.stock_operations)


class OrderLifecycle:
    """Applies PAID / AWAITING_PAYMENT / CANCELLED transitions for checkout components."""

    def __init__(self, inventory, event_log) -> None:
        self.inventory = inventory
        self.event_log = event_log

    def transition(self, db, order: Order, target: str, from_states: tuple[str, ...], **values) -> bool:
        """Move `order` to `target` only if it is still in one of `from_states`."""

        for source in from_states:
            validate_transition(source, target)
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status.in_(from_states))
            .values(status=target, updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        set_committed_value(order, "status", target)
        for key, value in values.items():
            set_committed_value(order, key, value)
        return True

    def _settle_payment_records(self, db, order_id: str, target: str) -> int:
        for source in OPEN_PAYMENT_STATES:
            validate_payment_transition(source, target)
        result = db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.order_id == order_id, PaymentRecord.status.in_(OPEN_PAYMENT_STATES))
            .values(status=target, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def mark_awaiting_payment(self, db, order: Order, meta: dict | None = None) -> bool:
        if not self.transition(db, order, OrderStatus.AWAITING_PAYMENT, (OrderStatus.PENDING,)):
            return False
        self.event_log.append(
            db,
            order.id,
            OrderEventKind.PAYMENT_PROCESSING,
            "Payment is processing with the provider",
            meta,
        )
        return True

    def mark_paid(self, db, order: Order, meta: dict | None = None) -> bool:
        """PENDING/AWAITING_PAYMENT -> PAID, capture open payment records, bump purchase counters."""

        paid_at = datetime.now(timezone.utc)
        if not self.transition(db, order, OrderStatus.PAID, PRE_PAYMENT_STATES, paid_at=paid_at):
            return False
        captured = self._settle_payment_records(db, order.id, PaymentStatus.CAPTURED)
        product_ids = sorted({item.product_id for item in order.items})
        for product_id in product_ids:
            self.inventory.upsert_counter(db, product_id, "purchases", 1)
        self.event_log.append(
            db,
            order.id,
            OrderEventKind.PAYMENT_SUCCEEDED,
            "Payment captured, order paid",
            {
                **(meta or {}),
                "paymentAmount": order.total_cents,
                "paymentCurrency": order.currency,
                "capturedRecords": captured,
                "productIds": product_ids,
            },
        )
        return True

    def cancel(
        self,
        db,
        order: Order,
        reason: str,
        payment_status: str = PaymentStatus.FAILED,
        meta: dict | None = None,
    ) -> CancellationOutcome:
        """PENDING/AWAITING_PAYMENT -> CANCELLED with stock restore and discount release.

        Stock comes back exactly once: the restore is unreachable unless this
        call is the one that moved the order out of a pre-payment state.
        """

        cancelled_at = datetime.now(timezone.utc)
        if not self.transition(db, order, OrderStatus.CANCELLED, PRE_PAYMENT_STATES, cancelled_at=cancelled_at):
            return CancellationOutcome(applied=False)

        closed = self._settle_payment_records(db, order.id, payment_status)
        if order.discount_code_id:
            db.execute(
                update(DiscountCode)
                .where(DiscountCode.id == order.discount_code_id, DiscountCode.times_used > 0)
                .values(times_used=DiscountCode.times_used - 1)
                .execution_options(synchronize_session=False)
            )
        operations = self.inventory.restore_order_items(db, order.items)
        outcome = CancellationOutcome(applied=True, stock_operations=operations)
        if operations:
            self.event_log.append(
                db,
                order.id,
                OrderEventKind.STOCK_RESTORED,
                f"Stock restored: {reason.lower().replace('_', ' ')}",
                {"reason": reason, "stockOperations": operations, "totalQuantity": outcome.restored_units},
            )
        self.event_log.append(
            db,
            order.id,
            OrderEventKind.ORDER_CANCELLED,
            f"Order cancelled: {reason.lower().replace('_', ' ')}",
            {**(meta or {}), "reason": reason, "closedPaymentRecords": closed, "totalCents": order.total_cents},
        )
        return outcome
