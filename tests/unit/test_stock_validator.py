"""Unit tests for batched, bounded stock validation."""

import asyncio
import uuid

import pytest
from services.commerce_service.services.stock_ledger import Availability
from services.commerce_service.services.stock_validator import (
    REASON_ERROR,
    REASON_INSUFFICIENT,
    REASON_NOT_FOUND,
    REASON_OUT_OF_STOCK,
    REASON_TIMEOUT,
    StockCheckItem,
    StockValidator,
)
from tests.factories import ProductFactory


class FakeValidator(StockValidator):
    """Serves availability from a dict and records how many reads overlap."""

    def __init__(self, stock, delay=0.0, fail_on=None):
        super().__init__(session_factory=None)
        self.stock = stock
        self.delay = delay
        self.fail_on = fail_on
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = 0

    async def _read_batch(self, product_ids):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_on is not None and self.fail_on in product_ids:
                raise RuntimeError("connection reset")
            return {pid: self.stock[pid] for pid in product_ids if pid in self.stock}
        finally:
            self.in_flight -= 1


def _stock(count, available=5):
    ids = [uuid.uuid4() for _ in range(count)]
    return ids, {pid: Availability(pid, available, available > 0) for pid in ids}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_validate_batch_against_database(session_factory, db_session, product, unlimited_product):
    sold_out = ProductFactory.create(stock_quantity=0)
    db_session.add(sold_out)
    await db_session.commit()
    missing = uuid.uuid4()

    validator = StockValidator(session_factory)
    results = await validator.validate_batch(
        [
            StockCheckItem(product.id, 4),
            StockCheckItem(product.id, 11),
            StockCheckItem(unlimited_product.id, 500),
            StockCheckItem(sold_out.id, 1),
            StockCheckItem(missing, 1),
        ],
        batch_size=2,
        concurrency=2,
        timeout=5,
    )

    assert [r.valid for r in results] == [True, False, True, False, False]
    assert [r.reason for r in results] == [
        None,
        REASON_INSUFFICIENT,
        None,
        REASON_OUT_OF_STOCK,
        REASON_NOT_FOUND,
    ]
    assert results[1].available == 10
    assert results[2].available is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_validate_batch_empty():
    assert await FakeValidator({}).validate_batch([]) == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_batches_respect_concurrency_limit():
    ids, stock = _stock(12)
    validator = FakeValidator(stock, delay=0.01)

    results = await validator.validate_batch(
        [StockCheckItem(pid, 1) for pid in ids],
        batch_size=2,
        concurrency=3,
        timeout=5,
    )

    assert validator.calls == 6
    assert validator.max_in_flight <= 3
    assert all(result.valid for result in results)
    assert [result.product_id for result in results] == ids


@pytest.mark.asyncio
@pytest.mark.unit
async def test_timeout_marks_unresolved_lines_invalid():
    ids, stock = _stock(3)
    validator = FakeValidator(stock, delay=1.0)

    results = await validator.validate_batch(
        [StockCheckItem(pid, 1) for pid in ids],
        batch_size=1,
        concurrency=3,
        timeout=0.05,
    )

    assert [result.valid for result in results] == [False, False, False]
    assert {result.reason for result in results} == {REASON_TIMEOUT}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_batch_only_invalidates_its_own_lines():
    ids, stock = _stock(4)
    validator = FakeValidator(stock, fail_on=ids[3])

    results = await validator.validate_batch(
        [StockCheckItem(pid, 1) for pid in ids],
        batch_size=2,
        concurrency=2,
        timeout=5,
    )

    assert [result.valid for result in results] == [True, True, False, False]
    assert results[2].reason == REASON_ERROR
