import asyncio

from sqlalchemy import select

from conftest import cart, make_settings, metric_value
from orderflow.common.outbox import OutboxRelay
from orderflow.services.api.main import build_core
from orderflow.services.orders.models import OutboxEvent


class RecordingBus:
    def __init__(self, fail_topics=()):
        self.published = []
        self.fail_topics = set(fail_topics)

    async def publish(self, topic, event):
        if topic in self.fail_topics:
            raise RuntimeError("broker unavailable")
        self.published.append((topic, event))


def outbox_statuses(session_factory):
    with session_factory() as db:
        return {row.topic: row.status for row in db.execute(select(OutboxEvent)).scalars()}


def relay_core(session_factory, observability, provider):
    return build_core(session_factory, observability, provider, make_settings(event_relay_enabled=True))


def test_lifecycle_events_are_relayed_with_order_key(session_factory, observability, provider, make_product, us_address):
    core = relay_core(session_factory, observability, provider)
    product_id, _ = make_product()
    order = core.orders.create_order(cart((product_id, "M", 1, 600)), us_address, email="a@example.com").order
    core.orders.cancel_order(order.id)
    bus = RecordingBus()
    relay = OutboxRelay(session_factory, OutboxEvent, bus, observability)

    delivered = asyncio.run(relay.publish_once())

    assert delivered == 2
    assert sorted(topic for topic, _ in bus.published) == ["orders.cancelled", "orders.created"]
    assert all(event.aggregate_id == order.id for _, event in bus.published)
    assert set(outbox_statuses(session_factory).values()) == {"SENT"}
    assert asyncio.run(relay.publish_once()) == 0


def test_failed_publish_is_requeued(session_factory, observability, provider, make_product, us_address):
    core = relay_core(session_factory, observability, provider)
    product_id, _ = make_product()
    core.orders.create_order(cart((product_id, "M", 1, 600)), us_address, email="a@example.com")
    relay = OutboxRelay(session_factory, OutboxEvent, RecordingBus(fail_topics={"orders.created"}), observability)

    assert asyncio.run(relay.publish_once()) == 0

    assert outbox_statuses(session_factory) == {"orders.created": "PENDING"}
    assert metric_value(observability, "outbox_pending_total") == 1.0


def test_relay_disabled_writes_no_outbox_rows(core, place_order, session_factory):
    place_order()

    assert outbox_statuses(session_factory) == {}
