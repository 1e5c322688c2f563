"""Relay for order lifecycle rows written to `outbox_events`.

Rows are written by `OrderEventLog` inside the same transaction as the state
change they describe; the relay claims, publishes and settles them afterwards.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from orderflow.common.events import EventEnvelope
from orderflow.common.logging import logger

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


class OutboxRelay:
    """Publishes claimed outbox rows to the bus until cancelled.

    A row claimed by a relay that died mid-publish becomes claimable again once
    `claim_timeout_seconds` have passed.
    """

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus,
        observability,
        poll_seconds: float = 0.5,
        batch_size: int = 100,
        claim_timeout_seconds: int = 30,
    ) -> None:
        self.session_factory = session_factory
        self.model = outbox_model
        self.bus = bus
        self.obs = observability
        self.poll_seconds = poll_seconds
        self.batch_size = batch_size
        self.claim_timeout_seconds = claim_timeout_seconds

    def _claim(self, db) -> list[tuple[str, str, dict]]:
        model = self.model
        now = datetime.now(timezone.utc)
        abandoned = (model.status == PROCESSING) & (model.sent_at < now - timedelta(seconds=self.claim_timeout_seconds))
        claimable = (
            select(model.id)
            .where(or_(model.status == PENDING, abandoned))
            .order_by(model.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        rows = db.execute(
            update(model)
            .where(model.id.in_(claimable))
            .values(status=PROCESSING, sent_at=now)
            .returning(model.id, model.topic, model.payload)
        ).all()
        return [(row.id, row.topic, row.payload) for row in rows]

    def _settle(self, row_id: str, delivered: bool) -> None:
        values = {"status": SENT, "sent_at": datetime.now(timezone.utc)} if delivered else {"status": PENDING, "sent_at": None}
        with self.session_factory() as db:
            db.execute(update(self.model).where(self.model.id == row_id, self.model.status == PROCESSING).values(**values))
            db.commit()

    def _record_backlog(self, db) -> None:
        model = self.model
        waiting = model.status.in_((PENDING, PROCESSING))
        depth, oldest = db.execute(select(func.count(model.id), func.min(model.created_at)).where(waiting)).one()
        age = 0.0
        if oldest is not None:
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=timezone.utc)
            age = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
        service = self.obs.service_name
        self.obs.metrics.outbox_pending_total.labels(service=service).set(float(depth))
        self.obs.metrics.outbox_oldest_pending_age_seconds.labels(service=service).set(age)

    async def publish_once(self) -> int:
        """Claim one batch and publish it; returns number of rows delivered."""

        with self.session_factory() as db:
            claimed = self._claim(db)
            self._record_backlog(db)
            db.commit()
        delivered = 0
        for row_id, topic, payload in claimed:
            try:
                await self.bus.publish(topic, EventEnvelope(**payload))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s topic=%s: %s", row_id, topic, exc)
                self._settle(row_id, delivered=False)
                continue
            self._settle(row_id, delivered=True)
            delivered += 1
        return delivered

    async def run(self) -> None:
        while True:
            await self.publish_once()
            await asyncio.sleep(self.poll_seconds)
