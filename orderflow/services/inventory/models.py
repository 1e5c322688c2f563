"""Catalog-side tables the checkout core reads and mutates.

Only the columns checkout needs are modelled; catalog management lives
elsewhere.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.common.db import Base


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    sku: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    price_cents: Mapped[int] = mapped_column(Integer)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SizeVariant(Base):
    """Stock-keeping unit for one product size. `stock` is only changed by `InventoryLedger`."""

    __tablename__ = "size_variants"
    __table_args__ = (
        UniqueConstraint("product_id", "label", name="uq_size_variant_label"),
        CheckConstraint("stock >= 0", name="ck_size_variant_stock_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), index=True)
    label: Mapped[str] = mapped_column(String)
    stock: Mapped[int] = mapped_column(Integer, default=0)


class ProductMetrics(Base):
    """Per-product engagement counters, upserted on demand."""

    __tablename__ = "product_metrics"

    product_id: Mapped[str] = mapped_column(String, primary_key=True)
    views: Mapped[int] = mapped_column(Integer, default=0)
    add_to_cart: Mapped[int] = mapped_column(Integer, default=0)
    purchases: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
