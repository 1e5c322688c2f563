"""Payment Intent Manager.

Keeps one live provider intent per order. The order row is locked while the
intent is resolved so two concurrent requests for the same order cannot both
create one. Order status is never changed here; only the webhook reconciler
advances an order once payment is confirmed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from orderflow.common.config import settings
from orderflow.common.errors import (
    InvalidOrderStateError,
    MaxRetriesExceededError,
    OrderNotFoundError,
    PaymentProviderError,
)
from orderflow.common.logging import logger, order_id_ctx
from orderflow.common.state_machine import OPEN_PAYMENT_STATES, PRE_PAYMENT_STATES, PaymentStatus
from orderflow.services.orders.event_log import OrderEventKind
from orderflow.services.orders.models import Order
from orderflow.services.payments.models import PaymentRecord


@dataclass
class IntentResult:
    order_id: str
    payment_intent_id: str
    client_secret: str
    outcome: str  # created | reused | upgraded
    payment_record_id: str


@dataclass
class RetryResult(IntentResult):
    attempt: int = 0
    max_retries: int = 0
    backoff_seconds: int = 0
    next_retry_at: datetime | None = None

    @property
    def retries_remaining(self) -> int:
        return max(0, self.max_retries - self.attempt)


def backoff_seconds(attempt: int, base: int | None = None, cap: int | None = None) -> int:
    """Advisory wait before attempt `attempt + 1`: base * 2^(attempt-1), capped."""

    base = settings.retry_backoff_base_seconds if base is None else base
    cap = settings.retry_backoff_cap_seconds if cap is None else cap
    return min(base * 2 ** max(0, attempt - 1), cap)


class PaymentIntentManager:
    """Creates, reuses and retries provider payment intents for orders."""

    def __init__(self, session_factory, provider, event_log, observability, max_retries: int | None = None) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.event_log = event_log
        self.observability = observability
        self.max_retries = settings.max_payment_retries if max_retries is None else max_retries

    @property
    def _service(self) -> str:
        return self.observability.service_name

    def _count_outcome(self, outcome: str) -> None:
        self.observability.metrics.payment_intents_total.labels(service=self._service, outcome=outcome).inc()

    def _lock_payable_order(self, db, order_id: str) -> Order:
        order = db.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id)
        if order.status not in PRE_PAYMENT_STATES:
            raise InvalidOrderStateError(
                f"order {order_id} is {order.status}, payment is not possible",
                order_id=order_id,
                status=order.status,
            )
        return order

    def _live_record(self, db, order_id: str) -> PaymentRecord | None:
        return db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id, PaymentRecord.status.in_(OPEN_PAYMENT_STATES))
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _metadata(self, order: Order, **extra) -> dict[str, str]:
        return {"orderId": order.id, "userId": order.user_id or "guest", **{k: str(v) for k, v in extra.items()}}

    def get_or_create_intent(self, order_id: str) -> IntentResult:
        """Return the order's live intent, creating or replacing it when needed."""

        order_id_ctx.set(order_id)
        try:
            with self.session_factory() as db:
                order = self._lock_payable_order(db, order_id)
                record = self._live_record(db, order.id)

                if record is not None:
                    lookup = self.provider.retrieve_intent(record.provider_ref)
                    if lookup.found and lookup.amount_cents in (None, order.total_cents):
                        db.commit()
                        self._count_outcome("reused")
                        return IntentResult(order.id, record.provider_ref, lookup.client_secret, "reused", record.id)

                    # Stale or missing reference: replace the intent on the same row.
                    previous_ref = record.provider_ref
                    intent = self.provider.create_intent(
                        order.total_cents,
                        order.currency,
                        self._metadata(order),
                        idempotency_key=f"orderflow:{order.id}:{record.id}:{previous_ref}",
                    )
                    record.provider = self.provider.name
                    record.provider_ref = intent.id
                    record.amount_cents = order.total_cents
                    record.currency = order.currency
                    record.status = PaymentStatus.PAYMENT_PENDING
                    record.raw_payload = {**intent.raw, "replaced": previous_ref, "lookup": lookup.kind}
                    self.event_log.append(
                        db,
                        order.id,
                        OrderEventKind.PAYMENT_INTENT_CREATED,
                        "Payment intent replaced",
                        {
                            "paymentIntentId": intent.id,
                            "previousPaymentIntentId": previous_ref,
                            "lookup": lookup.kind,
                            "lookupReason": lookup.reason,
                        },
                    )
                    db.commit()
                    self._count_outcome("upgraded")
                    logger.info("payment intent upgraded order_id=%s from=%s to=%s", order.id, previous_ref, intent.id)
                    return IntentResult(order.id, intent.id, intent.client_secret, "upgraded", record.id)

                record = PaymentRecord(
                    order_id=order.id,
                    provider=self.provider.name,
                    provider_ref="",
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    status=PaymentStatus.PAYMENT_PENDING,
                )
                db.add(record)
                db.flush()
                intent = self.provider.create_intent(
                    order.total_cents,
                    order.currency,
                    self._metadata(order),
                    idempotency_key=f"orderflow:{order.id}:{record.id}",
                )
                record.provider_ref = intent.id
                record.raw_payload = intent.raw
                self.event_log.append(
                    db,
                    order.id,
                    OrderEventKind.PAYMENT_INTENT_CREATED,
                    "Payment intent created",
                    {"paymentIntentId": intent.id, "amountCents": order.total_cents, "currency": order.currency},
                )
                db.commit()
                self._count_outcome("created")
                logger.info("payment intent created order_id=%s intent=%s", order.id, intent.id)
                return IntentResult(order.id, intent.id, intent.client_secret, "created", record.id)
        except PaymentProviderError:
            self._count_outcome("error")
            raise

    def retry_payment(self, order_id: str, max_retries: int | None = None) -> RetryResult:
        """Start a fresh intent for an unpaid order, at most `max_retries` times.

        The attempt counter is claimed with a conditional increment on the
        order row, so concurrent retries cannot both take the last slot.
        """

        limit = self.max_retries if max_retries is None else max_retries
        order_id_ctx.set(order_id)
        try:
            with self.session_factory() as db:
                order = self._lock_payable_order(db, order_id)
                attempt = db.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.status.in_(PRE_PAYMENT_STATES),
                        Order.payment_retry_count < limit,
                    )
                    .values(payment_retry_count=Order.payment_retry_count + 1)
                    .returning(Order.payment_retry_count)
                    .execution_options(synchronize_session=False)
                ).scalar_one_or_none()
                if attempt is None:
                    db.rollback()
                    logger.warning("payment retry rejected order_id=%s max_retries=%s", order_id, limit)
                    raise MaxRetriesExceededError(
                        f"maximum payment retries ({limit}) reached for order {order_id}",
                        order_id=order_id,
                        max_retries=limit,
                    )

                superseded = db.execute(
                    update(PaymentRecord)
                    .where(PaymentRecord.order_id == order.id, PaymentRecord.status.in_(OPEN_PAYMENT_STATES))
                    .values(status=PaymentStatus.FAILED, updated_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                ).rowcount

                intent = self.provider.create_intent(
                    order.total_cents,
                    order.currency,
                    self._metadata(order, retryAttempt=attempt),
                    idempotency_key=f"orderflow:{order.id}:retry:{attempt}",
                )
                record = PaymentRecord(
                    order_id=order.id,
                    provider=self.provider.name,
                    provider_ref=intent.id,
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    status=PaymentStatus.PAYMENT_PENDING,
                    raw_payload={**intent.raw, "retryAttempt": attempt},
                )
                db.add(record)
                db.flush()

                wait = backoff_seconds(attempt)
                next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=wait)
                self.event_log.append(
                    db,
                    order.id,
                    OrderEventKind.PAYMENT_RETRY_ATTEMPT,
                    f"Payment retry attempt {attempt} of {limit}",
                    {
                        "attempt": attempt,
                        "maxRetries": limit,
                        "paymentIntentId": intent.id,
                        "supersededRecords": superseded,
                        "backoffSeconds": wait,
                        "nextRetryAt": next_retry_at.isoformat(),
                    },
                )
                db.commit()
        except PaymentProviderError:
            self._count_outcome("error")
            raise

        self.observability.metrics.payment_retries_total.labels(service=self._service).inc()
        self._count_outcome("created")
        logger.info("payment retry order_id=%s attempt=%s intent=%s", order_id, attempt, intent.id)
        return RetryResult(
            order_id=order_id,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            outcome="created",
            payment_record_id=record.id,
            attempt=attempt,
            max_retries=limit,
            backoff_seconds=wait,
            next_retry_at=next_retry_at,
        )

    def retry_status(self, order_id: str) -> dict:
        """Read-only view of how many retries an order has used and when the next is advised."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id)
            attempts = order.payment_retry_count
            latest = db.execute(
                select(PaymentRecord)
                .where(PaymentRecord.order_id == order_id)
                .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            history = [
                {"attempt": event.meta.get("attempt"), "at": event.meta.get("timestamp"), "message": event.message}
                for event in self.event_log.list_events(db, order_id)
                if event.kind == OrderEventKind.PAYMENT_RETRY_ATTEMPT
            ]

        next_retry_at = None
        if attempts and latest is not None and latest.created_at is not None:
            last_attempt = latest.created_at
            if last_attempt.tzinfo is None:
                last_attempt = last_attempt.replace(tzinfo=timezone.utc)
            next_retry_at = last_attempt + timedelta(seconds=backoff_seconds(attempts))
        return {
            "orderId": order_id,
            "status": order.status,
            "attempts": attempts,
            "maxRetries": self.max_retries,
            "retriesRemaining": max(0, self.max_retries - attempts),
            "canRetry": order.status in PRE_PAYMENT_STATES and attempts < self.max_retries,
            "latestPaymentStatus": latest.status if latest else None,
            "nextRetryAt": next_retry_at.isoformat() if next_retry_at else None,
            "history": history,
        }
