"""Commerce models: cart lines, orders, order items, payment transactions."""

import secrets
import string
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.commerce_service.models.enums import (
    DeliveryOption,
    OrderStatus,
    PaymentStatus,
    TransactionStatus,
    enum_values,
)
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

DEFAULT_VARIANT_ID = "default"

_ID_ALPHABET = string.ascii_uppercase + string.digits


def _id_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


# ============================================================================
# CART
# ============================================================================


class CartItem(Base):
    """One cart line per (user, product, variant).

    The unique constraint is what the atomic upsert targets; two concurrent
    adds of the same line converge on a single row whose quantity is the sum.
    """

    __tablename__ = "store_cart_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("store_products.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default=DEFAULT_VARIANT_ID,
        server_default=DEFAULT_VARIANT_ID,
    )
    variant_attributes: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True
    )

    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Snapshot price at add time
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="TZS", nullable=False)
    applied_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "product_id", "variant_id", name="uq_cart_user_product_variant"
        ),
        CheckConstraint("quantity > 0", name="positive_quantity"),
    )

    product = relationship("Product")

    def __repr__(self):
        return f"<CartItem {self.product_id}/{self.variant_id} qty={self.quantity}>"


# ============================================================================
# ORDERS
# ============================================================================


class Order(Base):
    """Orders.

    ``id`` is the human-facing order number. ``reference_id`` is what the
    payment provider echoes back and is the key payment updates use.
    """

    __tablename__ = "store_orders"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True, nullable=True
    )
    reference_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    pickup_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    shipping_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    delivery_option: Mapped[DeliveryOption] = mapped_column(
        SAEnum(
            DeliveryOption,
            values_callable=enum_values,
            name="store_delivery_option_enum",
        ),
        default=DeliveryOption.SHIPPING,
        server_default="shipping",
    )

    # Payment
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(
            PaymentStatus,
            values_callable=enum_values,
            name="store_payment_status_enum",
        ),
        default=PaymentStatus.PENDING,
        server_default="pending",
        index=True,
    )
    payment_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(
            OrderStatus,
            values_callable=enum_values,
            name="store_order_status_enum",
        ),
        default=OrderStatus.PENDING,
        server_default="pending",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "ix_store_orders_payment_status_created_at",
            "payment_status",
            "created_at",
        ),
    )

    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )

    @staticmethod
    def generate_order_id() -> str:
        """Generate an order number: ORD<epoch ms><6 random chars>."""
        return f"ORD{int(time.time() * 1000)}{_id_suffix()}"

    @staticmethod
    def generate_reference_id() -> str:
        """Generate the payment reference: REF-<epoch ms>-<6 random chars>."""
        return f"REF-{int(time.time() * 1000)}-{_id_suffix()}"

    @staticmethod
    def generate_pickup_id() -> str:
        """Generate the pickup code: PICKUP-<epoch ms>-<6 random chars>."""
        return f"PICKUP-{int(time.time() * 1000)}-{_id_suffix()}"

    def __repr__(self):
        return f"<Order {self.id} payment={self.payment_status}>"


class OrderItem(Base):
    """Order line items, snapshotted from the cart at checkout."""

    __tablename__ = "store_order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("store_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    variant_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default=DEFAULT_VARIANT_ID
    )
    variant_attributes: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    applied_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem {self.product_id} x{self.quantity}>"


# ============================================================================
# PAYMENT LOG
# ============================================================================


class PaymentTransaction(Base):
    """Append-only log of payment outcomes reported for orders."""

    __tablename__ = "store_payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(
            TransactionStatus,
            values_callable=enum_values,
            name="store_payment_transaction_status_enum",
        ),
        nullable=False,
    )
    method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<PaymentTransaction {self.order_id} {self.status}>"
