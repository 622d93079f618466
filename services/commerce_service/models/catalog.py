"""Catalog models: products and their per-attribute stock ledgers."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.commerce_service.models.enums import ReturnTimeType, enum_values
from sqlalchemy import Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship


class Product(Base):
    """Sellable products.

    ``stock_quantity`` is NULL for products with unlimited stock. For products
    whose variants carry primary values, it mirrors the sum of those
    quantities and is rewritten whenever the ledger changes.
    """

    __tablename__ = "store_products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    original_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    currency: Mapped[str] = mapped_column(String(3), default="TZS", nullable=False)

    # Stock
    stock_quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    in_stock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Restock ETA shown when the product runs out
    return_time_type: Mapped[ReturnTimeType] = mapped_column(
        SAEnum(
            ReturnTimeType,
            values_callable=enum_values,
            name="store_return_time_type_enum",
        ),
        default=ReturnTimeType.DAYS,
        server_default="days",
    )
    return_time_value: Mapped[int] = mapped_column(
        Integer, default=3, server_default="3"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="non_negative_stock",
        ),
    )

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.created_at",
    )

    def __repr__(self):
        return f"<Product {self.name} stock={self.stock_quantity}>"


class ProductVariant(Base):
    """Variant records holding the attribute-level stock ledger.

    ``primary_values`` is a list of ``{"attribute", "value", "quantity"}``
    entries, each an independently tracked stock bucket (e.g. color=Red: 2).
    ``multi_values`` holds selectable attributes that do not track stock.
    """

    __tablename__ = "store_product_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("store_products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    primary_attribute: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    primary_values: Mapped[list] = mapped_column(JSONType, default=list)
    multi_values: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    product = relationship("Product", back_populates="variants")

    def __repr__(self):
        return f"<ProductVariant {self.id} product={self.product_id}>"
