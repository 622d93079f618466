"""Shared data fixtures for commerce tests."""

import pytest_asyncio
from tests.factories import ProductFactory, ProductVariantFactory


@pytest_asyncio.fixture
async def product(db_session):
    """A product with 10 units tracked at product level."""
    item = ProductFactory.create(stock_quantity=10)
    db_session.add(item)
    await db_session.commit()
    return item


@pytest_asyncio.fixture
async def unlimited_product(db_session):
    item = ProductFactory.create(stock_quantity=None, in_stock=True)
    db_session.add(item)
    await db_session.commit()
    return item


@pytest_asyncio.fixture
async def ledger_product(db_session):
    """A product whose stock lives in a color ledger: Red 3, Blue 2."""
    item = ProductFactory.create(stock_quantity=5)
    variant = ProductVariantFactory.create(product_id=item.id)
    db_session.add_all([item, variant])
    await db_session.commit()
    return item
