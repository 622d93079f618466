"""Stock ledger: availability reads and stock decrements.

Products track stock one of two ways:

- product level: ``Product.stock_quantity`` (NULL means unlimited);
- attribute level: ``ProductVariant.primary_values`` entries, in which case
  ``Product.stock_quantity`` is a derived total kept equal to their sum.

Writes lock the rows they touch (``SELECT ... FOR UPDATE``) and commit per
call so one failing line never rolls back another.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from libs.common.logging import get_logger
from services.commerce_service.errors import NotFoundError, ValidationError
from services.commerce_service.models import Product, ProductVariant
from services.commerce_service.services.attributes import (
    apply_decrement,
    coerce_quantity,
    has_primary_values,
    normalize_selector,
    return_time_phrase,
    sum_primary_values,
)
from services.commerce_service.services.read_cache import ReadCache
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

logger = get_logger(__name__)


@dataclass(frozen=True)
class Availability:
    product_id: uuid.UUID
    available: Optional[int]  # None means unlimited
    in_stock: bool

    @property
    def unlimited(self) -> bool:
        return self.available is None

    def covers(self, quantity: int) -> bool:
        return self.in_stock and (self.available is None or self.available >= quantity)

    def to_cache(self) -> dict:
        return {
            "product_id": str(self.product_id),
            "available": self.available,
            "in_stock": self.in_stock,
        }

    @classmethod
    def from_cache(cls, data: Mapping[str, Any]) -> "Availability":
        return cls(
            product_id=uuid.UUID(data["product_id"]),
            available=data["available"],
            in_stock=data["in_stock"],
        )


@dataclass(frozen=True)
class DecrementResult:
    product_id: uuid.UUID
    path: str  # "attribute", "product", "unlimited" or "skipped"
    previous: Optional[int]
    remaining: Optional[int]
    oversold: bool = False


def _availability(
    product_id: uuid.UUID,
    stock_quantity: Optional[int],
    ledgers: Sequence[Optional[Sequence[Mapping[str, Any]]]],
) -> Availability:
    if has_primary_values(ledgers):
        available: Optional[int] = sum_primary_values(ledgers)
    elif stock_quantity is None:
        available = None
    else:
        available = coerce_quantity(stock_quantity)
    in_stock = available is None or available > 0
    return Availability(product_id=product_id, available=available, in_stock=in_stock)


def compute_availability(product: Product) -> Availability:
    """Availability from a product with its variants loaded."""
    return _availability(
        product.id,
        product.stock_quantity,
        [variant.primary_values for variant in product.variants],
    )


def restock_eta(product: Product) -> dict:
    """Return-time hint shown when a product cannot be added."""
    unit = getattr(product.return_time_type, "value", product.return_time_type) or "days"
    value = product.return_time_value or 3
    return {
        "type": unit,
        "value": value,
        "message": f"Please return in {return_time_phrase(unit, value)}",
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def load_products(
    db: AsyncSession, product_ids: Sequence[uuid.UUID]
) -> dict[uuid.UUID, Product]:
    """Load products and their variants in one round trip per table."""
    if not product_ids:
        return {}
    result = await db.execute(
        select(Product)
        .where(Product.id.in_(set(product_ids)))
        .options(selectinload(Product.variants))
        .execution_options(populate_existing=True)
    )
    return {product.id: product for product in result.scalars().all()}


async def load_availability(
    db: AsyncSession, product_ids: Sequence[uuid.UUID]
) -> dict[uuid.UUID, Availability]:
    """Batched availability read. Unknown ids are absent from the result."""
    products = await load_products(db, product_ids)
    return {pid: compute_availability(product) for pid, product in products.items()}


async def read_availability(
    db: AsyncSession,
    product_ids: Sequence[uuid.UUID],
    cache: Optional[ReadCache] = None,
) -> dict[uuid.UUID, Availability]:
    """Cache-first batched availability read; misses are filled from one query."""
    found: dict[uuid.UUID, Availability] = {}
    missing = list(dict.fromkeys(product_ids))
    if cache is not None:
        missing = []
        for product_id in dict.fromkeys(product_ids):
            cached = await cache.get(cache.stock_key(product_id))
            if cached is not None:
                found[product_id] = Availability.from_cache(cached)
            else:
                missing.append(product_id)

    if missing:
        fresh = await load_availability(db, missing)
        found.update(fresh)
        if cache is not None:
            for product_id, availability in fresh.items():
                await cache.set(cache.stock_key(product_id), availability.to_cache())
    return found


async def get_availability(
    db: AsyncSession,
    product_id: uuid.UUID,
    cache: Optional[ReadCache] = None,
) -> Availability:
    availability = (await read_availability(db, [product_id], cache)).get(product_id)
    if availability is None:
        raise NotFoundError("Product not found")
    return availability


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def _lock_product(
    db: AsyncSession, product_id: uuid.UUID
) -> tuple[Product, list[ProductVariant]]:
    product = (
        await db.execute(
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if product is None:
        raise NotFoundError("Product not found")

    variants = (
        await db.execute(
            select(ProductVariant)
            .where(ProductVariant.product_id == product_id)
            .order_by(ProductVariant.created_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return product, list(variants)


def _apply_total(product: Product, variants: Sequence[ProductVariant]) -> int:
    total = sum_primary_values(variant.primary_values for variant in variants)
    product.stock_quantity = total
    product.in_stock = total > 0
    return total


async def decrement_stock(
    db: AsyncSession,
    product_id: uuid.UUID,
    quantity: int,
    attributes: Optional[Mapping[str, Any]] = None,
) -> DecrementResult:
    """Take ``quantity`` units out of stock for one purchased line.

    With ``attributes`` on a product that keeps an attribute ledger, every
    matching entry is reduced (floored at 0) and the product total is
    recomputed from all variants. Otherwise the product-level quantity is
    reduced, floored at 0; unlimited stock is left alone.
    """
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")

    product, variants = await _lock_product(db, product_id)
    ledgers = [variant.primary_values for variant in variants]
    selector = normalize_selector(attributes)

    if has_primary_values(ledgers):
        previous = sum_primary_values(ledgers)
        if not selector:
            logger.warning(
                "Product %s tracks stock per attribute but line has no attributes; "
                "stock left unchanged",
                product_id,
            )
            await db.commit()
            return DecrementResult(product_id, "skipped", previous, previous)

        matched_total = 0
        for variant in variants:
            updated, matched = apply_decrement(variant.primary_values or [], selector, quantity)
            if matched:
                variant.primary_values = updated
                matched_total += matched

        if not matched_total:
            logger.warning(
                "No stock entry of product %s matches %s; stock left unchanged",
                product_id,
                dict(selector),
            )
            await db.commit()
            return DecrementResult(product_id, "skipped", previous, previous)

        remaining = _apply_total(product, variants)
        path = "attribute"
    elif product.stock_quantity is None:
        await db.commit()
        return DecrementResult(product_id, "unlimited", None, None)
    else:
        previous = coerce_quantity(product.stock_quantity)
        remaining = max(0, previous - quantity)
        product.stock_quantity = remaining
        product.in_stock = remaining > 0
        path = "product"

    oversold = quantity > previous
    await db.commit()

    if oversold:
        logger.warning(
            "Oversold product %s: %s requested, %s were available",
            product_id,
            quantity,
            previous,
        )
    logger.info(
        "Stock decremented for product %s via %s path: %s -> %s",
        product_id,
        path,
        previous,
        remaining,
    )
    return DecrementResult(product_id, path, previous, remaining, oversold)


async def set_stock(
    db: AsyncSession,
    product_id: uuid.UUID,
    *,
    stock_quantity: Optional[int] = None,
    variant_ledgers: Optional[Mapping[uuid.UUID, Sequence[Mapping[str, Any]]]] = None,
    cache: Optional[ReadCache] = None,
) -> Availability:
    """Manual stock edit.

    ``variant_ledgers`` replaces the primary values of the listed variants; a
    product with an attribute ledger always has its total recomputed rather
    than taking ``stock_quantity`` as given. ``stock_quantity=None`` on a
    product without a ledger means unlimited.
    """
    product, variants = await _lock_product(db, product_id)

    if variant_ledgers:
        by_id = {variant.id: variant for variant in variants}
        unknown = [str(vid) for vid in variant_ledgers if vid not in by_id]
        if unknown:
            raise NotFoundError("Variant not found", details={"variant_ids": unknown})
        for variant_id, ledger in variant_ledgers.items():
            by_id[variant_id].primary_values = [
                {
                    "attribute": entry["attribute"],
                    "value": entry["value"],
                    "quantity": coerce_quantity(entry.get("quantity")),
                }
                for entry in ledger
            ]

    if has_primary_values(variant.primary_values for variant in variants):
        _apply_total(product, variants)
    else:
        if stock_quantity is not None and stock_quantity < 0:
            raise ValidationError("Stock quantity cannot be negative")
        product.stock_quantity = stock_quantity
        product.in_stock = stock_quantity is None or stock_quantity > 0

    await db.commit()
    logger.info(
        "Stock for product %s set to %s", product_id, product.stock_quantity
    )

    if cache is not None:
        await cache.invalidate_product(product_id)

    return _availability(
        product.id, product.stock_quantity, [v.primary_values for v in variants]
    )
