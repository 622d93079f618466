"""Bounded-concurrency stock validation for checkout.

Lines are split into batches; each batch is one ``IN (...)`` read in its own
session, with at most ``concurrency`` batches in flight. An overall timeout
caps the whole call. Any line still unresolved when the timeout hits comes
back invalid, so a slow database can only ever block a checkout, never let
an unchecked line through.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.commerce_service.services.read_cache import ReadCache
from services.commerce_service.services.stock_ledger import (
    Availability,
    read_availability,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

REASON_NOT_FOUND = "not_found"
REASON_OUT_OF_STOCK = "out_of_stock"
REASON_INSUFFICIENT = "insufficient_stock"
REASON_TIMEOUT = "timeout"
REASON_ERROR = "lookup_failed"


@dataclass(frozen=True)
class StockCheckItem:
    product_id: uuid.UUID
    quantity: int


@dataclass(frozen=True)
class StockValidationResult:
    product_id: uuid.UUID
    requested: int
    available: Optional[int]  # None means unlimited
    in_stock: bool
    valid: bool
    reason: Optional[str] = None


def _judge(item: StockCheckItem, availability: Optional[Availability]) -> StockValidationResult:
    if availability is None:
        return StockValidationResult(
            item.product_id, item.quantity, 0, False, False, REASON_NOT_FOUND
        )
    valid = availability.covers(item.quantity)
    reason = None
    if not valid:
        reason = REASON_OUT_OF_STOCK if not availability.in_stock else REASON_INSUFFICIENT
    return StockValidationResult(
        item.product_id,
        item.quantity,
        availability.available,
        availability.in_stock,
        valid,
        reason,
    )


def _unresolved(item: StockCheckItem, reason: str) -> StockValidationResult:
    return StockValidationResult(item.product_id, item.quantity, 0, False, False, reason)


class StockValidator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[ReadCache] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache

    async def _read_batch(
        self, product_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, Availability]:
        async with self.session_factory() as session:
            return await read_availability(session, product_ids, self.cache)

    async def validate_batch(
        self,
        items: Sequence[StockCheckItem],
        *,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[StockValidationResult]:
        """Validate every line; results are positional with ``items``."""
        settings = get_settings()
        batch_size = batch_size or settings.STOCK_VALIDATION_BATCH_SIZE
        concurrency = concurrency or settings.STOCK_VALIDATION_CONCURRENCY
        timeout = timeout or settings.STOCK_VALIDATION_TIMEOUT_SECONDS

        results: list[Optional[StockValidationResult]] = [None] * len(items)
        if not items:
            return []

        semaphore = asyncio.Semaphore(concurrency)

        async def run(start: int) -> None:
            chunk = items[start:start + batch_size]
            async with semaphore:
                try:
                    found = await self._read_batch([item.product_id for item in chunk])
                except Exception:
                    logger.exception(
                        "Stock lookup failed for batch starting at line %s", start
                    )
                    for offset, item in enumerate(chunk):
                        results[start + offset] = _unresolved(item, REASON_ERROR)
                    return
            for offset, item in enumerate(chunk):
                results[start + offset] = _judge(item, found.get(item.product_id))

        tasks = [
            asyncio.create_task(run(start))
            for start in range(0, len(items), batch_size)
        ]
        try:
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Stock validation timed out after %ss; unresolved lines marked invalid",
                timeout,
            )
            for task in tasks:
                task.cancel()

        return [
            result if result is not None else _unresolved(items[index], REASON_TIMEOUT)
            for index, result in enumerate(results)
        ]
