"""Append-only order timeline.

Entries are added inside the caller's transaction, so an event exists if and
only if the state change it describes was committed.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select

from orderflow.common.events import RELAYED_KINDS, EventEnvelope
from orderflow.common.logging import trace_id_ctx
from orderflow.services.orders.models import OrderEvent, OutboxEvent


class OrderEventKind:
    ORDER_CREATED = "ORDER_CREATED"
    DISCOUNT_APPLIED = "DISCOUNT_APPLIED"
    PAYMENT_INTENT_CREATED = "PAYMENT_INTENT_CREATED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_RETRY_ATTEMPT = "PAYMENT_RETRY_ATTEMPT"
    STOCK_RESTORED = "STOCK_RESTORED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    NOTE = "NOTE"
    SYSTEM_EVENT = "SYSTEM_EVENT"


class OrderEventLog:
    """Writes and reads `order_events`; optionally mirrors lifecycle kinds into the outbox."""

    def __init__(self, relay_enabled: bool = False) -> None:
        self.relay_enabled = relay_enabled

    def append(
        self,
        db,
        order_id: str,
        kind: str,
        message: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> OrderEvent:
        payload = dict(meta or {})
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        entry = OrderEvent(order_id=order_id, kind=kind, message=message, meta=payload)
        db.add(entry)
        topic = RELAYED_KINDS.get(kind)
        if self.relay_enabled and topic:
            envelope = EventEnvelope(
                event_type=topic,
                aggregate_id=order_id,
                trace_id=trace_id_ctx.get() or "",
                payload={"kind": kind, "message": message, "meta": payload},
            )
            db.add(
                OutboxEvent(
                    aggregate_type="order",
                    aggregate_id=order_id,
                    event_type=topic,
                    topic=topic,
                    payload=envelope.model_dump(),
                )
            )
        return entry

    def list_events(self, db, order_id: str) -> list[OrderEvent]:
        return (
            db.execute(
                select(OrderEvent)
                .where(OrderEvent.order_id == order_id)
                .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
            )
            .scalars()
            .all()
        )

    def count(self, db, order_id: str, kind: str) -> int:
        return db.execute(
            select(func.count()).select_from(OrderEvent).where(OrderEvent.order_id == order_id, OrderEvent.kind == kind)
        ).scalar_one()
