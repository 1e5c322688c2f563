"""Webhook Reconciler: provider payment events -> order state.

Two idempotency layers apply. `processed_webhook_events` short-circuits an
exact redelivery of the same event id, and every order mutation is a guarded
transition that no-ops once the order has left its pre-payment states. The
status write, its side effects and the gate row commit together.
"""

import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select

from orderflow.common.db import dialect_insert
from orderflow.common.errors import OrderNotFoundError, WebhookPayloadError, WebhookVerificationError
from orderflow.common.logging import event_id_ctx, logger, order_id_ctx
from orderflow.common.state_machine import OPEN_PAYMENT_STATES, PRE_PAYMENT_STATES, OrderStatus, PaymentStatus
from orderflow.services.orders.event_log import OrderEventKind
from orderflow.services.orders.models import Order
from orderflow.services.payments.models import PaymentRecord, ProcessedWebhookEvent


class WebhookKind:
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PROCESSING = "PROCESSING"
    IGNORED = "IGNORED"


PROVIDER_EVENT_KINDS = {
    "payment_intent.succeeded": WebhookKind.SUCCEEDED,
    "payment_intent.payment_failed": WebhookKind.FAILED,
    "payment_intent.canceled": WebhookKind.FAILED,
    "payment_intent.processing": WebhookKind.PROCESSING,
}

SIMULATED_STATUS_KINDS = {
    "success": WebhookKind.SUCCEEDED,
    "succeeded": WebhookKind.SUCCEEDED,
    "paid": WebhookKind.SUCCEEDED,
    "fail": WebhookKind.FAILED,
    "failed": WebhookKind.FAILED,
    "processing": WebhookKind.PROCESSING,
}


@dataclass(frozen=True)
class PaymentWebhook:
    """Normalized webhook. `source` is the discriminator: "provider" or "simulated"."""

    source: str
    kind: str
    event_type: str
    event_id: str | None
    order_id: str | None
    intent_id: str | None
    failure_message: str | None = None


@dataclass
class WebhookResult:
    applied: bool
    idempotent: bool = False
    reason: str | None = None
    order_id: str | None = None
    kind: str | None = None


def _first(mapping: dict, *keys: str):
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return None


def parse_provider_event(body: dict[str, Any]) -> PaymentWebhook:
    obj = (body.get("data") or {}).get("object") or {}
    if not isinstance(obj, dict):
        raise WebhookPayloadError("event data.object must be an object")
    metadata = obj.get("metadata") or {}
    error = obj.get("last_payment_error") or {}
    event_type = str(body.get("type"))
    return PaymentWebhook(
        source="provider",
        kind=PROVIDER_EVENT_KINDS.get(event_type, WebhookKind.IGNORED),
        event_type=event_type,
        event_id=body.get("id"),
        order_id=_first(metadata, "orderId", "order_id"),
        intent_id=obj.get("id"),
        failure_message=error.get("message") if isinstance(error, dict) else None,
    )


def parse_simulated_event(body: dict[str, Any]) -> PaymentWebhook:
    status = str(_first(body, "status", "state") or "").lower()
    kind = SIMULATED_STATUS_KINDS.get(status, WebhookKind.IGNORED)
    return PaymentWebhook(
        source="simulated",
        kind=kind,
        event_type=f"simulated.{status or 'unknown'}",
        event_id=_first(body, "eventId", "event_id"),
        order_id=_first(body, "orderId", "order_id"),
        intent_id=_first(body, "paymentIntentId", "payment_intent_id", "id"),
        failure_message=body.get("message"),
    )


def parse_webhook(body: Any, allow_simulated: bool) -> PaymentWebhook:
    """Resolve the payload shape once; everything downstream reads `PaymentWebhook`."""

    if not isinstance(body, dict):
        raise WebhookPayloadError("webhook body must be a JSON object")
    if "type" in body and "data" in body:
        return parse_provider_event(body)
    if allow_simulated:
        return parse_simulated_event(body)
    raise WebhookPayloadError("unrecognized webhook payload shape")


class WebhookReconciler:
    """Verifies, deduplicates and applies payment webhooks."""

    def __init__(self, session_factory, provider, lifecycle, event_log, observability, simulated_mode: bool = False):
        self.session_factory = session_factory
        self.provider = provider
        self.lifecycle = lifecycle
        self.event_log = event_log
        self.observability = observability
        self.simulated_mode = simulated_mode

    def _count(self, webhook: PaymentWebhook, outcome: str) -> None:
        self.observability.metrics.webhook_events_total.labels(
            service=self.observability.service_name, event_type=webhook.kind.lower(), outcome=outcome
        ).inc()

    def _authenticate(self, raw_payload: bytes, signature: str | None) -> PaymentWebhook:
        if signature:
            return parse_webhook(self.provider.verify_webhook(raw_payload, signature), allow_simulated=False)
        if not self.simulated_mode:
            raise WebhookVerificationError("missing webhook signature")
        try:
            body = json.loads(raw_payload)
        except ValueError as exc:
            raise WebhookPayloadError("webhook body is not valid JSON") from exc
        return parse_webhook(body, allow_simulated=True)

    def _close_gate(self, db, webhook: PaymentWebhook, order_id: str | None, outcome: str) -> None:
        if not webhook.event_id:
            return
        stmt = (
            dialect_insert(db, ProcessedWebhookEvent)
            .values(
                event_id=webhook.event_id,
                provider=webhook.source,
                event_type=webhook.event_type,
                order_id=order_id,
                outcome=outcome,
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        db.execute(stmt)

    def _locate_order(self, db, webhook: PaymentWebhook) -> Order:
        order_id = webhook.order_id
        if not order_id and webhook.intent_id:
            order_id = db.execute(
                select(PaymentRecord.order_id).where(PaymentRecord.provider_ref == webhook.intent_id).limit(1)
            ).scalar_one_or_none()
        if not order_id:
            raise WebhookPayloadError("webhook carries no order reference", event_id=webhook.event_id)
        order = db.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id)
        order_id_ctx.set(order.id)
        return order

    def handle_event(self, raw_payload: bytes, signature: str | None = None) -> WebhookResult:
        webhook = self._authenticate(raw_payload, signature)
        event_id_ctx.set(webhook.event_id or "")

        with self.session_factory() as db:
            if webhook.event_id and db.get(ProcessedWebhookEvent, webhook.event_id) is not None:
                logger.info("duplicate webhook skipped event_id=%s type=%s", webhook.event_id, webhook.event_type)
                self._count(webhook, "duplicate")
                return WebhookResult(applied=False, idempotent=True, reason="duplicate_event", kind=webhook.kind)

            if webhook.kind == WebhookKind.IGNORED:
                self._close_gate(db, webhook, webhook.order_id, "ignored")
                db.commit()
                self._count(webhook, "ignored")
                return WebhookResult(applied=False, reason="ignored", order_id=webhook.order_id, kind=webhook.kind)

            order = self._locate_order(db, webhook)
            if webhook.kind == WebhookKind.SUCCEEDED:
                result = self._apply_success(db, order, webhook)
            elif webhook.kind == WebhookKind.FAILED:
                result = self._apply_failure(db, order, webhook)
            else:
                result = self._apply_processing(db, order, webhook)

        self._count(webhook, "applied" if result.applied else (result.reason or "noop"))
        return result

    def _noop(self, db, order: Order, webhook: PaymentWebhook, reason: str) -> WebhookResult:
        db.rollback()
        self._close_gate(db, webhook, order.id, reason)
        db.commit()
        logger.info("webhook no-op order_id=%s kind=%s reason=%s", order.id, webhook.kind, reason)
        return WebhookResult(applied=False, idempotent=True, reason=reason, order_id=order.id, kind=webhook.kind)

    def _apply_success(self, db, order: Order, webhook: PaymentWebhook) -> WebhookResult:
        if order.status == OrderStatus.PAID:
            return self._noop(db, order, webhook, "already_paid")
        if order.status not in PRE_PAYMENT_STATES:
            # Acknowledged so the provider stops retrying; needs operator follow-up.
            logger.error(
                "payment succeeded for order in state %s order_id=%s intent=%s",
                order.status,
                order.id,
                webhook.intent_id,
            )
            self.event_log.append(
                db,
                order.id,
                OrderEventKind.SYSTEM_EVENT,
                f"Payment success received for {order.status} order; not applied",
                {
                    "eventId": webhook.event_id,
                    "paymentIntentId": webhook.intent_id,
                    "orderStatus": order.status,
                    "severity": "error",
                },
            )
            self._close_gate(db, webhook, order.id, "invalid_state")
            db.commit()
            return WebhookResult(applied=False, reason="invalid_state", order_id=order.id, kind=webhook.kind)

        meta = {"eventId": webhook.event_id, "paymentIntentId": webhook.intent_id, "source": webhook.source}
        if not self.lifecycle.mark_paid(db, order, meta):
            return self._noop(db, order, webhook, "already_applied")
        self._close_gate(db, webhook, order.id, "paid")
        db.commit()
        logger.info("order paid order_id=%s intent=%s", order.id, webhook.intent_id)
        return WebhookResult(applied=True, order_id=order.id, kind=webhook.kind)

    def _superseded_intent(self, db, order: Order, webhook: PaymentWebhook) -> bool:
        """True when the event's intent was already replaced by a still-open one."""

        if not webhook.intent_id:
            return False
        statuses = dict(
            db.execute(
                select(PaymentRecord.provider_ref, PaymentRecord.status).where(PaymentRecord.order_id == order.id)
            ).all()
        )
        event_status = statuses.get(webhook.intent_id)
        if event_status is None or event_status in OPEN_PAYMENT_STATES:
            return False
        return any(status in OPEN_PAYMENT_STATES for status in statuses.values())

    def _apply_failure(self, db, order: Order, webhook: PaymentWebhook) -> WebhookResult:
        if order.status not in PRE_PAYMENT_STATES:
            return self._noop(db, order, webhook, "terminal_state")
        if self._superseded_intent(db, order, webhook):
            logger.warning(
                "failure for superseded intent ignored order_id=%s intent=%s", order.id, webhook.intent_id
            )
            return self._noop(db, order, webhook, "stale_intent")

        self.event_log.append(
            db,
            order.id,
            OrderEventKind.PAYMENT_FAILED,
            webhook.failure_message or "Payment failed",
            {"eventId": webhook.event_id, "paymentIntentId": webhook.intent_id, "source": webhook.source},
        )
        outcome = self.lifecycle.cancel(
            db, order, "PAYMENT_FAILED", payment_status=PaymentStatus.FAILED, meta={"eventId": webhook.event_id}
        )
        if not outcome.applied:
            return self._noop(db, order, webhook, "already_applied")
        self._close_gate(db, webhook, order.id, "cancelled")
        db.commit()
        self.observability.metrics.stock_restored_units_total.labels(
            service=self.observability.service_name, reason="PAYMENT_FAILED"
        ).inc(outcome.restored_units)
        logger.info("order cancelled after payment failure order_id=%s restored=%s", order.id, outcome.restored_units)
        return WebhookResult(applied=True, order_id=order.id, kind=webhook.kind)

    def _apply_processing(self, db, order: Order, webhook: PaymentWebhook) -> WebhookResult:
        if order.status != OrderStatus.PENDING:
            return self._noop(db, order, webhook, "not_pending")
        meta = {"eventId": webhook.event_id, "paymentIntentId": webhook.intent_id}
        if not self.lifecycle.mark_awaiting_payment(db, order, meta):
            return self._noop(db, order, webhook, "already_applied")
        self._close_gate(db, webhook, order.id, "awaiting_payment")
        db.commit()
        return WebhookResult(applied=True, order_id=order.id, kind=webhook.kind)
