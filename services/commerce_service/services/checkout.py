"""Checkout: turn a validated cart into a pending order.

Per attempt the flow moves through
``validating -> creating_order -> creating_items -> clearing_cart -> done``.
If writing the items fails, the order written just before is deleted again
(``order_deleted -> failed``) so no order is ever left without items.
Nothing is written until every validation has passed.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.rate_limit import CheckoutRateLimiter
from pydantic import ValidationError as PydanticValidationError
from services.commerce_service.errors import (
    AuthError,
    OrderCreationError,
    RateLimitError,
    StockError,
    ValidationError,
)
from services.commerce_service.models import (
    CartItem,
    DeliveryOption,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
)
from services.commerce_service.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    ShippingAddress,
    sanitize_text,
)
from services.commerce_service.services.cart_store import clear_cart
from services.commerce_service.services.read_cache import ReadCache
from services.commerce_service.services.stock_validator import (
    StockCheckItem,
    StockValidator,
)
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class CartLine:
    product_id: uuid.UUID
    product_name: str
    variant_id: str
    variant_attributes: Optional[dict]
    quantity: int
    price: Decimal
    applied_discount: Decimal

    @property
    def total(self) -> Decimal:
        return (self.price - self.applied_discount) * self.quantity


def _transition(user_id: str, state: str, **context) -> None:
    logger.info(
        "Checkout for %s -> %s",
        user_id,
        state,
        extra={"extra_fields": {"checkout_state": state, **context}},
    )


# ---------------------------------------------------------------------------
# Validation steps
# ---------------------------------------------------------------------------


def validate_shipping_address(raw: Optional[dict]) -> ShippingAddress:
    if not raw:
        raise ValidationError("Missing required checkout information")
    try:
        return ShippingAddress.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid shipping address",
            details=[
                {
                    "field": ".".join(str(part) for part in err["loc"]),
                    "message": err["msg"],
                }
                for err in e.errors()
            ],
        )


def validate_payment_method(raw: Optional[str]) -> str:
    if not raw:
        raise ValidationError("Missing required checkout information")
    provider = get_settings().PAYMENT_PROVIDER
    method = sanitize_text(raw).lower()
    if method != provider:
        raise ValidationError(
            f"Only {provider} payment method is supported",
            details={"field": "payment_method", "provided": method},
        )
    return method


def parse_delivery_option(raw: Optional[str]) -> DeliveryOption:
    if not raw:
        return DeliveryOption.SHIPPING
    try:
        return DeliveryOption(raw.strip().lower())
    except ValueError:
        raise ValidationError(
            "Invalid delivery option",
            details={"allowed": [option.value for option in DeliveryOption]},
        )


def compute_order_total(lines: Sequence[CartLine]) -> Decimal:
    """Sum of (unit price - discount) x quantity, rounded to cents."""
    total = sum((line.total for line in lines), Decimal("0"))
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


def check_order_amount(total: Decimal) -> None:
    settings = get_settings()
    errors = []
    if total <= 0:
        errors.append("Order total must be greater than zero")
    elif total < settings.MIN_ORDER_TOTAL:
        errors.append(f"Order total must be at least {settings.MIN_ORDER_TOTAL}")
    if total > settings.MAX_ORDER_TOTAL:
        errors.append(f"Order total cannot exceed {settings.MAX_ORDER_TOTAL}")
    if errors:
        raise ValidationError("Invalid order amount", details=errors)


async def load_cart_lines(db: AsyncSession, user_id: str) -> list[CartLine]:
    rows = (
        await db.execute(
            select(CartItem, Product.name)
            .join(Product, Product.id == CartItem.product_id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at)
        )
    ).all()
    return [
        CartLine(
            product_id=item.product_id,
            product_name=name,
            variant_id=item.variant_id,
            variant_attributes=item.variant_attributes,
            quantity=item.quantity,
            price=item.price,
            applied_discount=item.applied_discount or Decimal("0"),
        )
        for item, name in rows
    ]


async def validate_cart_stock(
    validator: StockValidator, lines: Sequence[CartLine]
) -> None:
    """Raise StockError listing every product the cart asks too much of.

    Quantities are summed per product first, so two variant lines of one
    product cannot each pass against the same units.
    """
    requested: "OrderedDict[uuid.UUID, int]" = OrderedDict()
    names: dict[uuid.UUID, str] = {}
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
        names[line.product_id] = line.product_name

    settings = get_settings()
    results = await validator.validate_batch(
        [StockCheckItem(pid, qty) for pid, qty in requested.items()],
        batch_size=settings.STOCK_VALIDATION_BATCH_SIZE,
        concurrency=settings.STOCK_VALIDATION_CONCURRENCY,
        timeout=settings.STOCK_VALIDATION_TIMEOUT_SECONDS,
    )

    issues = [
        {
            "product_id": str(result.product_id),
            "product_name": names.get(result.product_id, "Unknown Product"),
            "error": (
                "Product is out of stock"
                if result.available == 0
                else "Insufficient stock"
            ),
            "reason": result.reason,
            "available": result.available,
            "requested": result.requested,
        }
        for result in results
        if not result.valid
    ]
    if issues:
        raise StockError("Stock validation failed", details=issues)


def build_order_items(order_id: str, lines: Sequence[CartLine]) -> list[OrderItem]:
    return [
        OrderItem(
            order_id=order_id,
            product_id=line.product_id,
            product_name=line.product_name,
            variant_id=line.variant_id,
            variant_attributes=line.variant_attributes,
            quantity=line.quantity,
            unit_price=line.price,
            applied_discount=line.applied_discount,
            total_price=line.total.quantize(CENT, rounding=ROUND_HALF_UP),
        )
        for line in lines
    ]


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


async def _delete_orphan_order(db: AsyncSession, order_id: str) -> None:
    try:
        await db.execute(delete(Order).where(Order.id == order_id))
        await db.commit()
        logger.warning("Order %s deleted after its items failed to save", order_id)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Compensating delete of order %s failed; order has no items", order_id
        )


async def place_order(
    db: AsyncSession,
    *,
    user: Optional[AuthUser],
    client_ip: str,
    request: CheckoutRequest,
    validator: StockValidator,
    cache: ReadCache,
    limiter: CheckoutRateLimiter,
) -> CheckoutResponse:
    settings = get_settings()

    # 1. Rate limit
    decision = await limiter.check(client_ip)
    if not decision.allowed:
        logger.warning("Checkout rate limit exceeded for %s", client_ip)
        raise RateLimitError(
            decision.retry_after, "Too many checkout attempts. Please try again later."
        )

    # 2. Identity
    if user is None:
        raise AuthError("Authentication required")
    user_id = user.user_id
    _transition(user_id, "validating", client_ip=client_ip)

    # 3. Inputs
    address = validate_shipping_address(request.shipping_address)
    payment_method = validate_payment_method(request.payment_method)
    delivery_option = parse_delivery_option(request.delivery_option)

    # 4. Cart
    lines = await load_cart_lines(db, user_id)
    if not lines:
        raise ValidationError("Cart is empty")

    # 5. Stock
    await validate_cart_stock(validator, lines)

    # 6. Total
    total = compute_order_total(lines)
    check_order_amount(total)

    # 7-8. Order row
    order_id = Order.generate_order_id()
    reference_id = Order.generate_reference_id()
    pickup_id = Order.generate_pickup_id()
    created_at = utc_now()
    _transition(user_id, "creating_order", order_id=order_id)

    db.add(
        Order(
            id=order_id,
            user_id=user_id,
            reference_id=reference_id,
            pickup_id=pickup_id,
            total_amount=total,
            currency=settings.STORE_CURRENCY,
            shipping_address=address.model_dump(mode="json"),
            delivery_option=delivery_option,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            status=OrderStatus.PENDING,
            created_at=created_at,
            updated_at=created_at,
        )
    )
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to create order %s", order_id)
        raise OrderCreationError("Failed to create order")

    # 9. Items, with compensating delete
    _transition(user_id, "creating_items", order_id=order_id)
    db.add_all(build_order_items(order_id, lines))
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to create items for order %s", order_id)
        _transition(user_id, "order_deleted", order_id=order_id)
        await _delete_orphan_order(db, order_id)
        _transition(user_id, "failed", order_id=order_id)
        raise OrderCreationError("Failed to create order items")

    # 10. Clear only the products that went into this order
    _transition(user_id, "clearing_cart", order_id=order_id)
    product_ids = list({line.product_id for line in lines})
    try:
        await clear_cart(db, cache, user_id, product_ids)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to clear cart after order %s", order_id)

    # 11. Cache
    await cache.invalidate_user(user_id)
    await cache.invalidate_order(order_id, reference_id)
    for product_id in product_ids:
        await cache.invalidate_product(product_id)

    _transition(user_id, "done", order_id=order_id, total=str(total))
    return CheckoutResponse(
        order_id=order_id,
        reference_id=reference_id,
        pickup_id=pickup_id,
        total=total,
        currency=settings.STORE_CURRENCY,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        item_count=len(lines),
        created_at=created_at,
    )
