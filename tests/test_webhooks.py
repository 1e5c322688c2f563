"""Webhook Reconciler: idempotency gate, status guard, compensation."""

import json
import threading

import pytest
from sqlalchemy import select

from conftest import metric_value
from orderflow.common.errors import OrderNotFoundError, WebhookPayloadError, WebhookVerificationError
from orderflow.common.state_machine import OrderStatus, PaymentStatus
from orderflow.services.inventory.models import ProductMetrics
from orderflow.services.orders.event_log import OrderEventKind
from orderflow.services.orders.models import Order, OrderEvent
from orderflow.services.payments.models import PaymentRecord, ProcessedWebhookEvent
from orderflow.services.payments.webhooks import WebhookKind, parse_webhook


def provider_event(event_id, event_type, order_id=None, intent_id="pi_fake_x") -> bytes:
    metadata = {"orderId": order_id} if order_id else {}
    return json.dumps(
        {"id": event_id, "type": event_type, "data": {"object": {"id": intent_id, "metadata": metadata}}}
    ).encode()


def simulated(order_id, status, event_id=None) -> bytes:
    body = {"orderId": order_id, "status": status}
    if event_id:
        body["eventId"] = event_id
    return json.dumps(body).encode()


def order_status(session_factory, order_id):
    with session_factory() as db:
        return db.get(Order, order_id).status


def purchases(session_factory, product_id):
    with session_factory() as db:
        row = db.get(ProductMetrics, product_id)
        return row.purchases if row else 0


def kinds(session_factory, order_id):
    with session_factory() as db:
        return [
            e.kind
            for e in db.execute(select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.id)).scalars()
        ]


def test_success_marks_paid_captures_and_counts(core, place_order, session_factory, observability):
    order, _ = place_order()
    intent = core.payments.get_or_create_intent(order.id)

    result = core.webhooks.handle_event(
        provider_event("evt_1", "payment_intent.succeeded", order.id, intent.payment_intent_id), "valid"
    )

    assert result.applied is True
    assert result.idempotent is False
    with session_factory() as db:
        paid = db.get(Order, order.id)
        assert paid.status == OrderStatus.PAID
        assert paid.paid_at is not None
        record = db.execute(select(PaymentRecord).where(PaymentRecord.order_id == order.id)).scalar_one()
        assert record.status == PaymentStatus.CAPTURED
        assert db.get(ProcessedWebhookEvent, "evt_1").outcome == "paid"
    assert purchases(session_factory, order.items[0].product_id) == 1
    assert kinds(session_factory, order.id)[-1] == OrderEventKind.PAYMENT_SUCCEEDED
    assert metric_value(observability, "webhook_events_total", event_type="succeeded", outcome="applied") == 1.0


def test_duplicate_delivery_is_idempotent(core, place_order, session_factory, observability):
    order, _ = place_order()
    payload = provider_event("evt_dup", "payment_intent.succeeded", order.id)

    first = core.webhooks.handle_event(payload, "valid")
    second = core.webhooks.handle_event(payload, "valid")

    assert first.applied is True
    assert second.applied is False
    assert second.idempotent is True
    assert purchases(session_factory, order.items[0].product_id) == 1
    assert kinds(session_factory, order.id).count(OrderEventKind.PAYMENT_SUCCEEDED) == 1
    assert metric_value(observability, "webhook_events_total", event_type="succeeded", outcome="duplicate") == 1.0


def test_second_success_event_for_paid_order_is_noop(core, place_order, session_factory):
    order, _ = place_order()
    core.webhooks.handle_event(provider_event("evt_a", "payment_intent.succeeded", order.id), "valid")

    result = core.webhooks.handle_event(provider_event("evt_b", "payment_intent.succeeded", order.id), "valid")

    assert result.idempotent is True
    assert result.reason == "already_paid"
    assert purchases(session_factory, order.items[0].product_id) == 1


def test_concurrent_success_deliveries_apply_once(core, place_order, session_factory):
    order, _ = place_order()
    barrier = threading.Barrier(4)
    results = []

    def deliver(i):
        barrier.wait()
        results.append(core.webhooks.handle_event(provider_event(f"evt_c{i}", "payment_intent.succeeded", order.id), "valid"))

    threads = [threading.Thread(target=deliver, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.applied) == 1
    assert purchases(session_factory, order.items[0].product_id) == 1
    assert order_status(session_factory, order.id) == OrderStatus.PAID


def test_failure_cancels_and_restores_stock_once(core, place_order, session_factory, stock_of, observability):
    order, variant_id = place_order(stock=5, qty=2)
    core.payments.get_or_create_intent(order.id)
    assert stock_of(variant_id) == 3

    first = core.webhooks.handle_event(provider_event("evt_f1", "payment_intent.payment_failed", order.id), "valid")
    replay = core.webhooks.handle_event(provider_event("evt_f1", "payment_intent.payment_failed", order.id), "valid")
    other = core.webhooks.handle_event(provider_event("evt_f2", "payment_intent.payment_failed", order.id), "valid")

    assert first.applied is True
    assert replay.idempotent is True
    assert other.applied is False
    assert other.reason == "terminal_state"
    assert stock_of(variant_id) == 5
    with session_factory() as db:
        cancelled = db.get(Order, order.id)
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        record = db.execute(select(PaymentRecord).where(PaymentRecord.order_id == order.id)).scalar_one()
        assert record.status == PaymentStatus.FAILED
    events = kinds(session_factory, order.id)
    assert events.count(OrderEventKind.STOCK_RESTORED) == 1
    assert events.count(OrderEventKind.PAYMENT_FAILED) == 1
    assert metric_value(observability, "stock_restored_units_total", reason="PAYMENT_FAILED") == 2.0


def test_success_after_cancel_does_not_resurrect(core, place_order, session_factory, observability):
    order, _ = place_order()
    core.webhooks.handle_event(provider_event("evt_x1", "payment_intent.payment_failed", order.id), "valid")

    result = core.webhooks.handle_event(provider_event("evt_x2", "payment_intent.succeeded", order.id), "valid")

    assert result.applied is False
    assert result.reason == "invalid_state"
    assert order_status(session_factory, order.id) == OrderStatus.CANCELLED
    assert purchases(session_factory, order.items[0].product_id) == 0
    assert kinds(session_factory, order.id)[-1] == OrderEventKind.SYSTEM_EVENT
    assert metric_value(observability, "webhook_events_total", event_type="succeeded", outcome="invalid_state") == 1.0
    with session_factory() as db:
        assert db.get(ProcessedWebhookEvent, "evt_x2").outcome == "invalid_state"


def test_processing_moves_to_awaiting_payment_then_paid(core, place_order, session_factory):
    order, _ = place_order()

    processing = core.webhooks.handle_event(provider_event("evt_p1", "payment_intent.processing", order.id), "valid")
    assert processing.applied is True
    assert order_status(session_factory, order.id) == OrderStatus.AWAITING_PAYMENT

    core.webhooks.handle_event(provider_event("evt_p2", "payment_intent.succeeded", order.id), "valid")
    assert order_status(session_factory, order.id) == OrderStatus.PAID


def test_unknown_event_type_is_acknowledged(core, place_order, session_factory):
    order, _ = place_order()

    result = core.webhooks.handle_event(provider_event("evt_u", "charge.refund.updated", order.id), "valid")

    assert result.applied is False
    assert result.reason == "ignored"
    assert order_status(session_factory, order.id) == OrderStatus.PENDING


def test_order_located_by_intent_reference(core, place_order, session_factory):
    order, _ = place_order()
    intent = core.payments.get_or_create_intent(order.id)

    result = core.webhooks.handle_event(
        provider_event("evt_ref", "payment_intent.succeeded", None, intent.payment_intent_id), "valid"
    )

    assert result.applied is True
    assert result.order_id == order.id


def test_missing_order_reference_rejected(core):
    with pytest.raises(WebhookPayloadError):
        core.webhooks.handle_event(provider_event("evt_none", "payment_intent.succeeded", None, "pi_unknown"), "valid")


def test_unknown_order_rejected(core):
    with pytest.raises(OrderNotFoundError):
        core.webhooks.handle_event(provider_event("evt_404", "payment_intent.succeeded", "no-such-order"), "valid")


def test_bad_signature_rejected(core, place_order):
    order, _ = place_order()

    with pytest.raises(WebhookVerificationError):
        core.webhooks.handle_event(provider_event("evt_sig", "payment_intent.succeeded", order.id), "forged")


def test_unsigned_rejected_outside_simulated_mode(core, place_order):
    order, _ = place_order()
    core.webhooks.simulated_mode = False

    with pytest.raises(WebhookVerificationError):
        core.webhooks.handle_event(simulated(order.id, "success"))


def test_simulated_flat_payload(core, place_order, session_factory, stock_of):
    order, variant_id = place_order(stock=4, qty=1)

    result = core.webhooks.handle_event(simulated(order.id, "fail", event_id="sim-1"))
    replay = core.webhooks.handle_event(simulated(order.id, "fail", event_id="sim-1"))

    assert result.applied is True
    assert replay.idempotent is True
    assert order_status(session_factory, order.id) == OrderStatus.CANCELLED
    assert stock_of(variant_id) == 4


def test_simulated_event_without_id_relies_on_status_guard(core, place_order, session_factory):
    order, _ = place_order()

    first = core.webhooks.handle_event(simulated(order.id, "success"))
    second = core.webhooks.handle_event(simulated(order.id, "success"))

    assert first.applied is True
    assert second.reason == "already_paid"
    assert purchases(session_factory, order.items[0].product_id) == 1
    with session_factory() as db:
        assert db.execute(select(ProcessedWebhookEvent)).first() is None


def test_parse_webhook_discriminates_shapes():
    provider = parse_webhook(
        {"id": "evt", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "metadata": {"order_id": "o1"}}}},
        allow_simulated=False,
    )
    flat = parse_webhook({"payment_intent_id": "pi_2", "state": "failed", "order_id": "o2"}, allow_simulated=True)

    assert (provider.source, provider.kind, provider.order_id, provider.intent_id) == ("provider", WebhookKind.SUCCEEDED, "o1", "pi_1")
    assert (flat.source, flat.kind, flat.order_id, flat.intent_id) == ("simulated", WebhookKind.FAILED, "o2", "pi_2")
    with pytest.raises(WebhookPayloadError):
        parse_webhook({"payment_intent_id": "pi_2", "state": "failed"}, allow_simulated=False)


def test_late_failure_for_superseded_intent_keeps_order_payable(core, place_order, session_factory, stock_of):
    order, variant_id = place_order(stock=5, qty=2)
    first = core.payments.get_or_create_intent(order.id)
    retry = core.payments.retry_payment(order.id)

    late = core.webhooks.handle_event(
        provider_event("evt_old_fail", "payment_intent.payment_failed", order.id, first.payment_intent_id), "valid"
    )
    paid = core.webhooks.handle_event(
        provider_event("evt_new_ok", "payment_intent.succeeded", order.id, retry.payment_intent_id), "valid"
    )

    assert late.applied is False
    assert late.reason == "stale_intent"
    assert paid.applied is True
    assert order_status(session_factory, order.id) == OrderStatus.PAID
    assert stock_of(variant_id) == 3
    assert OrderEventKind.PAYMENT_FAILED not in kinds(session_factory, order.id)
    with session_factory() as db:
        assert db.get(ProcessedWebhookEvent, "evt_old_fail").outcome == "stale_intent"


def test_failure_for_live_intent_still_cancels(core, place_order, session_factory):
    order, _ = place_order()
    core.payments.get_or_create_intent(order.id)
    retry = core.payments.retry_payment(order.id)

    result = core.webhooks.handle_event(
        provider_event("evt_live_fail", "payment_intent.payment_failed", order.id, retry.payment_intent_id), "valid"
    )

    assert result.applied is True
    assert order_status(session_factory, order.id) == OrderStatus.CANCELLED
