"""Store orders router: checkout and order history."""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from libs.auth.dependencies import get_current_user, get_optional_user
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.rate_limit import (
    CheckoutRateLimiter,
    get_checkout_limiter,
    get_client_ip,
)
from libs.db.session import get_async_db
from services.commerce_service.errors import NotFoundError
from services.commerce_service.models import Order
from services.commerce_service.routers._helpers import get_stock_validator
from services.commerce_service.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
)
from services.commerce_service.services.checkout import place_order
from services.commerce_service.services.read_cache import ReadCache, get_read_cache
from services.commerce_service.services.stock_validator import StockValidator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

router = APIRouter(tags=["store"])


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def checkout(
    checkout_in: CheckoutRequest,
    request: Request,
    # Optional so the rate limit is applied before identity is enforced
    current_user: Optional[AuthUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_async_db),
    validator: StockValidator = Depends(get_stock_validator),
    cache: ReadCache = Depends(get_read_cache),
    limiter: CheckoutRateLimiter = Depends(get_checkout_limiter),
):
    """Create a pending order from the cart. Stock is taken when payment lands."""
    return await place_order(
        db,
        user=current_user,
        client_ip=get_client_ip(request),
        request=checkout_in,
        validator=validator,
        cache=cache,
        limiter=limiter,
    )


# ============================================================================
# ORDERS
# ============================================================================


@router.get("/orders", response_model=list[OrderResponse])
async def list_my_orders(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """List the user's orders, newest first."""
    cache_key = cache.user_orders_key(current_user.user_id)
    cached = await cache.get(cache_key)
    if cached is not None:
        return [OrderResponse.model_validate(order) for order in cached]

    query = (
        select(Order)
        .where(Order.user_id == current_user.user_id)
        .options(selectinload(Order.items))
        .order_by(Order.created_at.desc())
    )
    result = await db.execute(query)
    orders = [OrderResponse.model_validate(order) for order in result.scalars().all()]
    await cache.set(
        cache_key,
        [order.model_dump(mode="json") for order in orders],
        get_settings().ORDER_CACHE_TTL_SECONDS,
    )
    return orders


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    query = (
        select(Order)
        .where(Order.id == order_id, Order.user_id == current_user.user_id)
        .options(selectinload(Order.items))
    )
    result = await db.execute(query)
    order = result.scalar_one_or_none()

    if not order:
        raise NotFoundError("Order not found")
    return order
