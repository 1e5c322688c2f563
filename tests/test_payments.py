"""Payment Intent Manager: one live intent per order, in-place upgrade, bounded retries."""

import pytest
from sqlalchemy import select

from conftest import metric_value
from orderflow.common.errors import (
    InvalidOrderStateError,
    MaxRetriesExceededError,
    OrderNotFoundError,
    PaymentProviderError,
)
from orderflow.common.state_machine import OrderStatus, PaymentStatus
from orderflow.services.orders.event_log import OrderEventKind
from orderflow.services.orders.models import Order, OrderEvent
from orderflow.services.payments.models import PaymentRecord
from orderflow.services.payments.service import backoff_seconds


def payment_records(session_factory, order_id):
    with session_factory() as db:
        return (
            db.execute(select(PaymentRecord).where(PaymentRecord.order_id == order_id).order_by(PaymentRecord.created_at))
            .scalars()
            .all()
        )


def set_status(session_factory, order_id, status):
    with session_factory() as db:
        db.get(Order, order_id).status = status
        db.commit()


def test_create_intent_leaves_order_pending(core, place_order, session_factory, observability):
    order, _ = place_order()

    result = core.payments.get_or_create_intent(order.id)

    assert result.outcome == "created"
    assert result.client_secret.startswith(result.payment_intent_id)
    records = payment_records(session_factory, order.id)
    assert len(records) == 1
    assert records[0].provider_ref == result.payment_intent_id
    assert records[0].status == PaymentStatus.PAYMENT_PENDING
    assert records[0].amount_cents == order.total_cents
    with session_factory() as db:
        assert db.get(Order, order.id).status == OrderStatus.PENDING
    assert metric_value(observability, "payment_intents_total", outcome="created") == 1.0


def test_second_call_reuses_live_intent(core, place_order, provider, session_factory):
    order, _ = place_order()

    first = core.payments.get_or_create_intent(order.id)
    second = core.payments.get_or_create_intent(order.id)

    assert second.outcome == "reused"
    assert second.payment_intent_id == first.payment_intent_id
    assert second.client_secret == first.client_secret
    assert provider.create_calls == 1
    assert len(payment_records(session_factory, order.id)) == 1


def test_stale_reference_is_upgraded_in_place(core, place_order, provider, session_factory):
    order, _ = place_order()
    with session_factory() as db:
        db.add(
            PaymentRecord(
                order_id=order.id,
                provider="fake",
                provider_ref="sim_placeholder_123",
                amount_cents=order.total_cents,
                currency=order.currency,
                status=PaymentStatus.PAYMENT_PENDING,
            )
        )
        db.commit()

    result = core.payments.get_or_create_intent(order.id)

    assert result.outcome == "upgraded"
    records = payment_records(session_factory, order.id)
    assert len(records) == 1
    assert records[0].provider_ref == result.payment_intent_id
    assert records[0].raw_payload["replaced"] == "sim_placeholder_123"


def test_terminal_provider_intent_is_replaced(core, place_order, provider, session_factory):
    order, _ = place_order()
    first = core.payments.get_or_create_intent(order.id)
    provider.intents[first.payment_intent_id]["status"] = "canceled"

    second = core.payments.get_or_create_intent(order.id)

    assert second.outcome == "upgraded"
    assert second.payment_intent_id != first.payment_intent_id
    assert len(payment_records(session_factory, order.id)) == 1


def test_provider_failure_is_retryable_and_leaves_no_record(core, place_order, provider, session_factory, observability):
    order, _ = place_order()
    provider.fail_create = True

    with pytest.raises(PaymentProviderError) as exc:
        core.payments.get_or_create_intent(order.id)

    assert exc.value.retryable is True
    assert exc.value.to_dict()["retryable"] is True
    assert payment_records(session_factory, order.id) == []
    with session_factory() as db:
        assert db.get(Order, order.id).status == OrderStatus.PENDING
    assert metric_value(observability, "payment_intents_total", outcome="error") == 1.0


@pytest.mark.parametrize("status", [OrderStatus.PAID, OrderStatus.CANCELLED])
def test_intent_requires_pre_payment_state(core, place_order, session_factory, status):
    order, _ = place_order()
    set_status(session_factory, order.id, status)

    with pytest.raises(InvalidOrderStateError):
        core.payments.get_or_create_intent(order.id)


def test_awaiting_payment_order_can_get_intent(core, place_order, session_factory):
    order, _ = place_order()
    set_status(session_factory, order.id, OrderStatus.AWAITING_PAYMENT)

    assert core.payments.get_or_create_intent(order.id).outcome == "created"


def test_unknown_order(core):
    with pytest.raises(OrderNotFoundError):
        core.payments.get_or_create_intent("does-not-exist")


def test_retry_creates_new_record_and_supersedes_live_one(core, place_order, session_factory):
    order, _ = place_order()
    first = core.payments.get_or_create_intent(order.id)

    retry = core.payments.retry_payment(order.id)

    assert retry.attempt == 1
    assert retry.retries_remaining == 2
    assert retry.backoff_seconds == 300
    assert retry.next_retry_at is not None
    records = {r.provider_ref: r for r in payment_records(session_factory, order.id)}
    assert records[first.payment_intent_id].status == PaymentStatus.FAILED
    assert records[retry.payment_intent_id].status == PaymentStatus.PAYMENT_PENDING


def test_fourth_retry_rejected_without_new_record(core, place_order, session_factory, provider):
    order, _ = place_order()
    for expected in (1, 2, 3):
        assert core.payments.retry_payment(order.id).attempt == expected
    calls_before = provider.create_calls

    with pytest.raises(MaxRetriesExceededError):
        core.payments.retry_payment(order.id)

    assert provider.create_calls == calls_before
    assert len(payment_records(session_factory, order.id)) == 3
    with session_factory() as db:
        attempts = db.execute(
            select(OrderEvent).where(
                OrderEvent.order_id == order.id, OrderEvent.kind == OrderEventKind.PAYMENT_RETRY_ATTEMPT
            )
        ).scalars().all()
        assert [e.meta["attempt"] for e in attempts] == [1, 2, 3]
        assert db.get(Order, order.id).payment_retry_count == 3


def test_failed_provider_call_does_not_consume_a_retry(core, place_order, provider, session_factory):
    order, _ = place_order()
    provider.fail_create = True
    with pytest.raises(PaymentProviderError):
        core.payments.retry_payment(order.id)
    provider.fail_create = False

    assert core.payments.retry_payment(order.id).attempt == 1


def test_retry_status(core, place_order):
    order, _ = place_order()
    core.payments.retry_payment(order.id)

    status = core.payments.retry_status(order.id)

    assert status["attempts"] == 1
    assert status["retriesRemaining"] == 2
    assert status["canRetry"] is True
    assert status["latestPaymentStatus"] == PaymentStatus.PAYMENT_PENDING
    assert status["nextRetryAt"] is not None
    assert [h["attempt"] for h in status["history"]] == [1]


def test_backoff_is_exponential_and_capped():
    assert [backoff_seconds(n, base=300, cap=3600) for n in (1, 2, 3, 4, 5, 6)] == [300, 600, 1200, 2400, 3600, 3600]
