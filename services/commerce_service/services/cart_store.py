"""Cart store: stock-aware adds, line edits, guest merges and cart views.

Adds go through ``upsert_cart_item``, which relies on the
``(user_id, product_id, variant_id)`` unique constraint so that concurrent
adds of the same line end up as one row holding the summed quantity.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.commerce_service.errors import (
    NotFoundError,
    OutOfStockError,
    ValidationError,
)
from services.commerce_service.models import DEFAULT_VARIANT_ID, CartItem, Product
from services.commerce_service.schemas import (
    CartLineResponse,
    CartResponse,
    CartTotals,
    CustomerCare,
    CustomerCareContact,
    GuestCartItem,
    MergeConflict,
    MergedLine,
    PartialStockInfo,
)
from services.commerce_service.services.attributes import (
    attributes_from_variant_id,
    return_time_phrase,
)
from services.commerce_service.services.read_cache import ReadCache
from services.commerce_service.services.stock_ledger import (
    compute_availability,
    load_products,
    restock_eta,
)
from sqlalchemy import case, delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}
_BLANK_VARIANT_IDS = {"", "null", "undefined", "none"}


@dataclass
class AddToCartResult:
    item: CartItem
    message: str
    partial_stock: Optional[PartialStockInfo] = None


@dataclass
class MergeResult:
    merged: list[MergedLine]
    conflicts: list[MergeConflict]
    total_items: int


def normalize_variant_id(variant_id: Optional[str]) -> str:
    if variant_id is None or variant_id.strip().lower() in _BLANK_VARIANT_IDS:
        return DEFAULT_VARIANT_ID
    return variant_id.strip()


def resolve_unit_price(
    product: Product, variant_id: str, requested: Optional[Decimal] = None
) -> Decimal:
    """Pick the authoritative unit price for a line.

    A price sent by the client is only used when it equals the product price
    or one of the product's variant prices.
    """
    default = product.price
    allowed = {product.price}
    for variant in product.variants:
        if variant.price is None:
            continue
        allowed.add(variant.price)
        if str(variant.id) == variant_id:
            default = variant.price
    if requested is not None and requested in allowed:
        return requested
    return default


async def upsert_cart_item(
    db: AsyncSession,
    *,
    user_id: str,
    product_id: uuid.UUID,
    variant_id: str,
    quantity: int,
    price: Decimal,
    currency: str,
    variant_attributes: Optional[dict] = None,
    max_quantity: Optional[int] = None,
) -> CartItem:
    """Insert a cart line or add ``quantity`` to the existing one.

    On PostgreSQL and SQLite this is one ``INSERT ... ON CONFLICT DO UPDATE``
    statement, so concurrent identical adds sum correctly. Other backends
    fall back to read-then-write, which can lose an increment when two
    identical adds race. Does not commit.

    With ``max_quantity`` the resulting line never holds more than that,
    whatever another request added in between.
    """
    dialect = db.get_bind().dialect.name
    insert = _UPSERT_INSERTS.get(dialect)
    if max_quantity is not None:
        quantity = min(quantity, max_quantity)
    now = utc_now()

    if insert is not None:
        stmt = insert(CartItem).values(
            id=uuid.uuid4(),
            user_id=user_id,
            product_id=product_id,
            variant_id=variant_id,
            variant_attributes=variant_attributes,
            quantity=quantity,
            price=price,
            currency=currency,
            applied_discount=Decimal("0"),
            created_at=now,
            updated_at=now,
        )
        summed = CartItem.quantity + stmt.excluded.quantity
        if max_quantity is not None:
            summed = case((summed > max_quantity, max_quantity), else_=summed)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "product_id", "variant_id"],
            set_={
                "quantity": summed,
                "price": stmt.excluded.price,
                "currency": stmt.excluded.currency,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await db.execute(stmt)
    else:
        logger.warning(
            "No atomic upsert for dialect %s; using read-then-write for cart line",
            dialect,
        )
        existing = (
            await db.execute(
                select(CartItem).where(
                    CartItem.user_id == user_id,
                    CartItem.product_id == product_id,
                    CartItem.variant_id == variant_id,
                )
            )
        ).scalar_one_or_none()
        if existing:
            existing.quantity += quantity
            if max_quantity is not None:
                existing.quantity = min(existing.quantity, max_quantity)
            existing.price = price
            existing.currency = currency
        else:
            db.add(
                CartItem(
                    user_id=user_id,
                    product_id=product_id,
                    variant_id=variant_id,
                    variant_attributes=variant_attributes,
                    quantity=quantity,
                    price=price,
                    currency=currency,
                )
            )
        await db.flush()

    result = await db.execute(
        select(CartItem)
        .where(
            CartItem.user_id == user_id,
            CartItem.product_id == product_id,
            CartItem.variant_id == variant_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def add_to_cart(
    db: AsyncSession,
    cache: ReadCache,
    *,
    user_id: str,
    product_id: uuid.UUID,
    quantity: int,
    variant_id: Optional[str] = None,
    variant_attributes: Optional[Mapping[str, str]] = None,
    price: Optional[Decimal] = None,
) -> AddToCartResult:
    """Add a product to the user's cart, capped at what is in stock."""
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")

    variant_id = normalize_variant_id(variant_id)
    attributes = dict(variant_attributes or {}) or attributes_from_variant_id(variant_id)

    product = (await load_products(db, [product_id])).get(product_id)
    if product is None:
        raise NotFoundError("Product not found")

    availability = compute_availability(product)
    if not availability.in_stock:
        eta = restock_eta(product)
        logger.info("Add to cart refused, product %s is out of stock", product_id)
        raise OutOfStockError(
            f"This product is currently unavailable. {eta['message']}.",
            return_time=eta,
            restock_message=eta["message"],
        )

    unit_price = resolve_unit_price(product, variant_id, price)
    to_add = quantity
    partial = None
    if availability.available is not None:
        in_cart = await _line_quantity(db, user_id, product_id, variant_id)
        room = availability.available - in_cart
        if room <= 0:
            eta = restock_eta(product)
            logger.info(
                "Add to cart refused, cart already holds all %s units of product %s",
                in_cart,
                product_id,
            )
            raise OutOfStockError(
                "Your cart already holds all available stock of this product. "
                f"{eta['message']}.",
                return_time=eta,
                restock_message=eta["message"],
            )
        if room < quantity:
            to_add = room
            partial = _partial_stock_info(product, quantity, to_add)

    item = await upsert_cart_item(
        db,
        user_id=user_id,
        product_id=product_id,
        variant_id=variant_id,
        quantity=to_add,
        price=unit_price,
        currency=product.currency,
        variant_attributes=attributes or None,
        max_quantity=availability.available,
    )
    await db.commit()
    await cache.invalidate_user(user_id)

    if partial is not None:
        logger.info(
            "Partial add for product %s: requested %s, added %s",
            product_id,
            quantity,
            to_add,
        )
        return AddToCartResult(
            item=item,
            message=f"Added {to_add} items to cart (maximum available).",
            partial_stock=partial,
        )
    return AddToCartResult(item=item, message="Item added to cart")


async def _line_quantity(
    db: AsyncSession, user_id: str, product_id: uuid.UUID, variant_id: str
) -> int:
    quantity = (
        await db.execute(
            select(CartItem.quantity).where(
                CartItem.user_id == user_id,
                CartItem.product_id == product_id,
                CartItem.variant_id == variant_id,
            )
        )
    ).scalar_one_or_none()
    return quantity or 0


def _partial_stock_info(product: Product, requested: int, added: int) -> PartialStockInfo:
    settings = get_settings()
    eta = restock_eta(product)
    remaining = requested - added
    return PartialStockInfo(
        requested=requested,
        available=added,
        added=added,
        remaining=remaining,
        restock_message=(
            f"We expect more stock in {return_time_phrase(eta['type'], eta['value'])}"
        ),
        customer_care=CustomerCare(
            message=(
                f"For the remaining {remaining} items, please contact our customer "
                "care to confirm availability and restock timing."
            ),
            contact_info=CustomerCareContact(
                email=settings.CUSTOMER_CARE_EMAIL,
                phone=settings.CUSTOMER_CARE_PHONE,
                hours=settings.CUSTOMER_CARE_HOURS,
            ),
        ),
    )


async def _get_line(db: AsyncSession, user_id: str, item_id: uuid.UUID) -> CartItem:
    item = (
        await db.execute(
            select(CartItem).where(CartItem.id == item_id, CartItem.user_id == user_id)
        )
    ).scalar_one_or_none()
    if item is None:
        raise NotFoundError("Cart item not found")
    return item


async def update_quantity(
    db: AsyncSession,
    cache: ReadCache,
    *,
    user_id: str,
    item_id: uuid.UUID,
    quantity: int,
) -> Optional[CartItem]:
    """Set a line's quantity outright. Zero removes the line (returns None)."""
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative")

    item = await _get_line(db, user_id, item_id)
    if quantity == 0:
        await db.delete(item)
        item = None
    else:
        item.quantity = quantity
    await db.commit()
    await cache.invalidate_user(user_id)
    return item


async def remove_item(
    db: AsyncSession, cache: ReadCache, *, user_id: str, item_id: uuid.UUID
) -> None:
    item = await _get_line(db, user_id, item_id)
    await db.delete(item)
    await db.commit()
    await cache.invalidate_user(user_id)


async def clear_cart(
    db: AsyncSession,
    cache: ReadCache,
    user_id: str,
    product_ids: Optional[Sequence[uuid.UUID]] = None,
) -> int:
    """Delete the user's cart lines, or only those for ``product_ids``."""
    stmt = delete(CartItem).where(CartItem.user_id == user_id)
    if product_ids is not None:
        if not product_ids:
            return 0
        stmt = stmt.where(CartItem.product_id.in_(set(product_ids)))
    result = await db.execute(stmt)
    await db.commit()
    await cache.invalidate_user(user_id)
    return result.rowcount or 0


async def merge_guest_cart(
    db: AsyncSession,
    cache: ReadCache,
    *,
    user_id: str,
    items: Sequence[GuestCartItem],
) -> MergeResult:
    """Fold a guest cart into the user's server-side cart.

    Lines whose product is gone or cannot cover the requested quantity are
    reported as conflicts and skipped. Lines matching an existing row are
    summed and capped at available stock.
    """
    wanted = [item for item in items if item.product_id and item.quantity > 0]
    products = await load_products(db, [item.product_id for item in wanted])

    merged: list[MergedLine] = []
    conflicts: list[MergeConflict] = []

    for item in wanted:
        variant_id = normalize_variant_id(item.variant_id)
        product = products.get(item.product_id)
        if product is None:
            conflicts.append(
                MergeConflict(
                    product_id=item.product_id,
                    variant_id=variant_id,
                    requested=item.quantity,
                    reason="Product not found",
                )
            )
            continue

        availability = compute_availability(product)
        if not availability.covers(item.quantity):
            conflicts.append(
                MergeConflict(
                    product_id=item.product_id,
                    variant_id=variant_id,
                    requested=item.quantity,
                    available=availability.available,
                    reason="Product out of stock",
                )
            )
            continue

        existing = (
            await db.execute(
                select(CartItem).where(
                    CartItem.user_id == user_id,
                    CartItem.product_id == item.product_id,
                    CartItem.variant_id == variant_id,
                )
            )
        ).scalar_one_or_none()

        if existing:
            before = existing.quantity
            target = before + item.quantity
            if availability.available is not None:
                target = min(target, max(availability.available, before))
            existing.quantity = target
            merged.append(
                MergedLine(
                    product_id=item.product_id,
                    variant_id=variant_id,
                    action="merged",
                    quantity=target,
                    added=target - before,
                )
            )
        else:
            attributes = item.variant_attributes or attributes_from_variant_id(variant_id)
            line = await upsert_cart_item(
                db,
                user_id=user_id,
                product_id=item.product_id,
                variant_id=variant_id,
                quantity=item.quantity,
                price=product.price,
                currency=product.currency,
                variant_attributes=attributes or None,
                max_quantity=availability.available,
            )
            merged.append(
                MergedLine(
                    product_id=item.product_id,
                    variant_id=variant_id,
                    action="added",
                    quantity=line.quantity,
                    added=item.quantity,
                )
            )

    await db.commit()
    await cache.invalidate_user(user_id)
    logger.info(
        "Merged guest cart for %s: %s lines merged, %s conflicts",
        user_id,
        len(merged),
        len(conflicts),
    )
    return MergeResult(merged=merged, conflicts=conflicts, total_items=len(items))


def summarize_lines(lines: Sequence[CartLineResponse]) -> CartTotals:
    subtotal = sum((line.price * line.quantity for line in lines), Decimal("0"))
    discount = sum((line.applied_discount * line.quantity for line in lines), Decimal("0"))
    return CartTotals(
        total_items=sum(line.quantity for line in lines),
        subtotal=subtotal,
        total_discount=discount,
        final_total=subtotal - discount,
    )


async def get_cart(db: AsyncSession, cache: ReadCache, user_id: str) -> CartResponse:
    cache_key = cache.cart_key(user_id)
    cached: Any = await cache.get(cache_key)
    if cached is not None:
        return CartResponse.model_validate(cached)

    rows = (
        await db.execute(
            select(CartItem, Product.name)
            .join(Product, Product.id == CartItem.product_id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at)
        )
    ).all()

    lines = []
    for item, product_name in rows:
        line = CartLineResponse.model_validate(item)
        line.product_name = product_name
        line.line_total = (line.price - line.applied_discount) * line.quantity
        lines.append(line)

    view = CartResponse(items=lines, totals=summarize_lines(lines))
    await cache.set(
        cache_key, view.model_dump(mode="json"), get_settings().CART_CACHE_TTL_SECONDS
    )
    return view
