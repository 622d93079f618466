"""Public stock lookups."""

import uuid

from fastapi import APIRouter, Depends, Query
from libs.db.session import get_async_db
from services.commerce_service.errors import ValidationError
from services.commerce_service.schemas import StockLevel
from services.commerce_service.services.read_cache import ReadCache, get_read_cache
from services.commerce_service.services.stock_ledger import read_availability
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["store"])

MAX_STOCK_LOOKUP = 100


@router.get("/stock", response_model=list[StockLevel])
async def get_stock_levels(
    ids: list[uuid.UUID] = Query(...),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Current availability for up to 100 products. Unknown ids are omitted."""
    if len(ids) > MAX_STOCK_LOOKUP:
        raise ValidationError(f"At most {MAX_STOCK_LOOKUP} products per lookup")
    found = await read_availability(db, ids, cache)
    return [
        StockLevel(
            product_id=product_id,
            available=found[product_id].available,
            in_stock=found[product_id].in_stock,
        )
        for product_id in dict.fromkeys(ids)
        if product_id in found
    ]
