"""Commerce service models package."""

from services.commerce_service.models.catalog import Product, ProductVariant
from services.commerce_service.models.commerce import (
    DEFAULT_VARIANT_ID,
    CartItem,
    Order,
    OrderItem,
    PaymentTransaction,
)
from services.commerce_service.models.enums import (
    DeliveryOption,
    OrderStatus,
    PaymentStatus,
    ReturnTimeType,
    TransactionStatus,
)

__all__ = [
    "DEFAULT_VARIANT_ID",
    "CartItem",
    "DeliveryOption",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "PaymentTransaction",
    "Product",
    "ProductVariant",
    "ReturnTimeType",
    "TransactionStatus",
]
