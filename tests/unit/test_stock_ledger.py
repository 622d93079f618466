"""Unit tests for the stock ledger: availability reads, decrements, manual edits."""

import uuid

import pytest
from services.commerce_service.errors import NotFoundError, ValidationError
from services.commerce_service.models import Product, ProductVariant
from services.commerce_service.services.stock_ledger import (
    decrement_stock,
    get_availability,
    read_availability,
    set_stock,
)
from sqlalchemy import select
from tests.factories import ProductFactory, ProductVariantFactory


async def _fresh_product(session_factory, product_id):
    async with session_factory() as session:
        return await session.get(Product, product_id)


async def _ledger(session_factory, product_id):
    async with session_factory() as session:
        variants = (
            await session.execute(
                select(ProductVariant).where(ProductVariant.product_id == product_id)
            )
        ).scalars().all()
        return {
            entry["value"]: entry["quantity"]
            for variant in variants
            for entry in variant.primary_values
        }


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_availability_for_each_tracking_mode(
    db_session, product, unlimited_product, ledger_product
):
    found = await read_availability(
        db_session, [product.id, unlimited_product.id, ledger_product.id, uuid.uuid4()]
    )

    assert found[product.id].available == 10
    assert found[unlimited_product.id].unlimited
    assert found[unlimited_product.id].covers(10_000)
    assert found[ledger_product.id].available == 5
    assert len(found) == 3


@pytest.mark.asyncio
@pytest.mark.unit
async def test_availability_is_cached_until_invalidated(db_session, product, read_cache):
    first = await get_availability(db_session, product.id, read_cache)
    assert first.available == 10

    # Change the row behind the cache's back
    product.stock_quantity = 1
    await db_session.commit()

    assert (await get_availability(db_session, product.id, read_cache)).available == 10

    await read_cache.invalidate_product(product.id)
    assert (await get_availability(db_session, product.id, read_cache)).available == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_get_availability_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        await get_availability(db_session, uuid.uuid4())


# ---------------------------------------------------------------------------
# Decrement
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_product_level(db_session, session_factory, product):
    result = await decrement_stock(db_session, product.id, 4)

    assert result.path == "product"
    assert (result.previous, result.remaining) == (10, 6)
    fresh = await _fresh_product(session_factory, product.id)
    assert fresh.stock_quantity == 6
    assert fresh.in_stock is True


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_floors_at_zero_and_flags_oversell(
    db_session, session_factory, product
):
    result = await decrement_stock(db_session, product.id, 15)

    assert result.oversold is True
    assert result.remaining == 0
    fresh = await _fresh_product(session_factory, product.id)
    assert fresh.stock_quantity == 0
    assert fresh.in_stock is False


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_unlimited_is_a_noop(db_session, session_factory, unlimited_product):
    result = await decrement_stock(db_session, unlimited_product.id, 3)

    assert result.path == "unlimited"
    fresh = await _fresh_product(session_factory, unlimited_product.id)
    assert fresh.stock_quantity is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_attribute_ledger_recomputes_total(
    db_session, session_factory, ledger_product
):
    result = await decrement_stock(db_session, ledger_product.id, 2, {"color": "Red"})

    assert result.path == "attribute"
    assert (result.previous, result.remaining) == (5, 3)
    assert await _ledger(session_factory, ledger_product.id) == {"Red": 1, "Blue": 2}
    fresh = await _fresh_product(session_factory, ledger_product.id)
    assert fresh.stock_quantity == 3


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_matches_across_variants(db_session, session_factory):
    """Every variant entry carrying the attribute value is reduced."""
    item = ProductFactory.create(stock_quantity=7)
    first = ProductVariantFactory.create(product_id=item.id)
    second = ProductVariantFactory.create(
        product_id=item.id,
        primary_values=[{"attribute": "color", "value": "Red", "quantity": 2}],
    )
    db_session.add_all([item, first, second])
    await db_session.commit()

    result = await decrement_stock(db_session, item.id, 1, {"color": "Red"})

    assert result.remaining == 5
    fresh = await _fresh_product(session_factory, item.id)
    assert fresh.stock_quantity == 5


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_ledger_without_matching_attributes_is_skipped(
    db_session, session_factory, ledger_product
):
    no_attrs = await decrement_stock(db_session, ledger_product.id, 1)
    no_match = await decrement_stock(db_session, ledger_product.id, 1, {"color": "Green"})

    assert no_attrs.path == "skipped"
    assert no_match.path == "skipped"
    assert await _ledger(session_factory, ledger_product.id) == {"Red": 3, "Blue": 2}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_rejects_non_positive_quantity(db_session, product):
    with pytest.raises(ValidationError):
        await decrement_stock(db_session, product.id, 0)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decrement_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        await decrement_stock(db_session, uuid.uuid4(), 1)


# ---------------------------------------------------------------------------
# Manual edits
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_set_stock_product_level(db_session, product, read_cache):
    await get_availability(db_session, product.id, read_cache)

    availability = await set_stock(db_session, product.id, stock_quantity=0, cache=read_cache)

    assert availability.available == 0
    assert availability.in_stock is False
    assert (await get_availability(db_session, product.id, read_cache)).available == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_set_stock_replaces_ledger_and_ignores_given_total(
    db_session, session_factory, ledger_product
):
    variant_id = (
        await db_session.execute(
            select(ProductVariant.id).where(ProductVariant.product_id == ledger_product.id)
        )
    ).scalar_one()

    availability = await set_stock(
        db_session,
        ledger_product.id,
        stock_quantity=100,
        variant_ledgers={
            variant_id: [
                {"attribute": "color", "value": "Red", "quantity": 4},
                {"attribute": "color", "value": "Green", "quantity": 1},
            ]
        },
    )

    assert availability.available == 5
    assert await _ledger(session_factory, ledger_product.id) == {"Red": 4, "Green": 1}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_set_stock_unknown_variant(db_session, ledger_product):
    with pytest.raises(NotFoundError):
        await set_stock(
            db_session,
            ledger_product.id,
            variant_ledgers={uuid.uuid4(): [{"attribute": "color", "value": "Red"}]},
        )
