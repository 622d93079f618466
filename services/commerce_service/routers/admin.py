"""Admin store routes: payment confirmation, order cleanup, stock edits."""

import uuid

from fastapi import APIRouter, Depends, Request
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.rate_limit import admin_limit
from libs.db.session import get_async_db
from services.commerce_service.routers._helpers import require_cleanup_key
from services.commerce_service.schemas import (
    CleanupResponse,
    PaymentStatusResponse,
    PaymentStatusUpdate,
    StockLevel,
    StockUpdateRequest,
)
from services.commerce_service.services.lifecycle import run_lifecycle_sweep
from services.commerce_service.services.payments import (
    confirm_payment,
    get_payment_status,
)
from services.commerce_service.services.read_cache import ReadCache, get_read_cache
from services.commerce_service.services.stock_ledger import set_stock
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

router = APIRouter(tags=["admin-store"])


@router.get("/orders/{reference_id}/payment", response_model=PaymentStatusResponse)
async def read_payment_status(
    reference_id: str,
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    return await get_payment_status(db, cache, reference_id)


@router.patch("/orders/{reference_id}/payment", response_model=PaymentStatusResponse)
@admin_limit
async def update_payment_status(
    request: Request,
    reference_id: str,
    update_in: PaymentStatusUpdate,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Record a payment outcome by hand (e.g. after checking the provider dashboard)."""
    logger.info(
        "Admin %s setting payment of %s to %s",
        admin.user_id,
        reference_id,
        update_in.payment_status,
    )
    return await confirm_payment(
        db,
        cache,
        reference_id=reference_id,
        payment_status=update_in.payment_status,
        payment_id=update_in.payment_id,
        payment_method=update_in.payment_method,
        source="admin",
    )


@router.post(
    "/orders/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(require_cleanup_key)],
)
async def cleanup_orders(
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Run the order lifecycle sweep now (called by an external scheduler)."""
    result = await run_lifecycle_sweep(db, cache=cache)
    return CleanupResponse(
        failed_count=result.failed_count,
        deleted_count=result.deleted_count,
        total_processed=result.total_processed,
        timestamp=utc_now(),
    )


@router.put("/products/{product_id}/stock", response_model=StockLevel)
async def update_product_stock(
    product_id: uuid.UUID,
    stock_in: StockUpdateRequest,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Set stock by hand; attribute ledgers are replaced per variant."""
    availability = await set_stock(
        db,
        product_id,
        stock_quantity=stock_in.stock_quantity,
        variant_ledgers=(
            {
                variant_id: [entry.model_dump() for entry in entries]
                for variant_id, entries in stock_in.variants.items()
            }
            if stock_in.variants
            else None
        ),
        cache=cache,
    )
    logger.info("Admin %s updated stock of product %s", admin.user_id, product_id)
    return StockLevel(
        product_id=availability.product_id,
        available=availability.available,
        in_stock=availability.in_stock,
    )
