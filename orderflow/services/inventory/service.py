"""Inventory ledger: conditional stock decrements and compensating restores.

All stock mutation goes through single-statement updates. `reserve` is the
only place stock goes down and it never reads before writing, so two
checkouts racing for the last unit cannot both win.
"""

from sqlalchemy import func, select, update

from orderflow.common.db import dialect_insert
from orderflow.common.logging import logger
from orderflow.services.inventory.models import ProductMetrics, SizeVariant


METRIC_COUNTERS = ("views", "add_to_cart", "purchases")


class InventoryLedger:
    """Stock primitives called inside the caller's transaction."""

    def find_variant(self, db, product_id: str, label: str) -> SizeVariant | None:
        return db.execute(
            select(SizeVariant).where(SizeVariant.product_id == product_id, SizeVariant.label == label)
        ).scalar_one_or_none()

    def reserve(self, db, size_variant_id: str, qty: int) -> bool:
        """Decrement stock by `qty` only if at least `qty` is available.

        Returns False without touching the row when stock is insufficient or
        the variant does not exist. The caller owns the transaction and must
        roll back on False.
        """

        if qty <= 0:
            return True
        result = db.execute(
            update(SizeVariant)
            .where(SizeVariant.id == size_variant_id, SizeVariant.stock >= qty)
            .values(stock=SizeVariant.stock - qty)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def restore(self, db, size_variant_id: str, qty: int) -> bool:
        """Unconditionally add `qty` back. Not idempotent: callers gate it on a status transition."""

        if qty <= 0:
            return True
        result = db.execute(
            update(SizeVariant)
            .where(SizeVariant.id == size_variant_id)
            .values(stock=SizeVariant.stock + qty)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def restore_order_items(self, db, items) -> list[dict]:
        """Restore stock for every sized line of an order; returns the operations applied."""

        operations = []
        for item in items:
            if not item.size:
                continue
            variant_id = item.variant_id
            if variant_id is None:
                variant = self.find_variant(db, item.product_id, item.size)
                variant_id = variant.id if variant else None
            if variant_id is None:
                logger.warning(
                    "stock restore skipped, variant missing product_id=%s size=%s", item.product_id, item.size
                )
                continue
            if self.restore(db, variant_id, item.qty):
                operations.append(
                    {
                        "productId": item.product_id,
                        "sizeVariantId": variant_id,
                        "size": item.size,
                        "quantity": item.qty,
                        "operation": "restore",
                    }
                )
        return operations

    def upsert_counter(self, db, product_id: str, counter: str, delta: int = 1) -> None:
        """Add `delta` to one ProductMetrics counter, creating the row when missing."""

        if counter not in METRIC_COUNTERS:
            raise ValueError(f"unknown metrics counter: {counter}")
        table = ProductMetrics.__table__
        stmt = dialect_insert(db, ProductMetrics).values(product_id=product_id, **{counter: delta})
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.product_id],
            set_={counter: table.c[counter] + delta, "updated_at": func.now()},
        )
        db.execute(stmt)
