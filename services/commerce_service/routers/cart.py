"""Store cart router: cart lines and guest cart merge."""

import uuid

from fastapi import APIRouter, Depends, Request
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common.rate_limit import cart_limit
from libs.db.session import get_async_db
from services.commerce_service.schemas import (
    AddToCartResponse,
    CartItemCreate,
    CartItemUpdate,
    CartLineResponse,
    CartMergeRequest,
    CartMergeResponse,
    CartResponse,
    MergeSummary,
)
from services.commerce_service.services import cart_store
from services.commerce_service.services.read_cache import ReadCache, get_read_cache
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["store"])


@router.get("/cart", response_model=CartResponse)
async def get_cart(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Get the current user's cart with totals."""
    return await cart_store.get_cart(db, cache, current_user.user_id)


@router.post("/cart/items", response_model=AddToCartResponse)
@cart_limit
async def add_to_cart(
    request: Request,
    item_in: CartItemCreate,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Add a product to the cart.

    When stock is short the available quantity is added and the response
    carries a ``partial_stock`` block instead of failing.
    """
    result = await cart_store.add_to_cart(
        db,
        cache,
        user_id=current_user.user_id,
        product_id=item_in.product_id,
        quantity=item_in.quantity,
        variant_id=item_in.variant_id,
        variant_attributes=item_in.variant_attributes,
        price=item_in.price,
    )
    return AddToCartResponse(
        message=result.message,
        item=CartLineResponse.model_validate(result.item),
        partial_stock=result.partial_stock,
    )


@router.patch("/cart/items/{item_id}", response_model=CartResponse)
@cart_limit
async def update_cart_item(
    request: Request,
    item_id: uuid.UUID,
    item_in: CartItemUpdate,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Set a line's quantity; 0 removes the line."""
    await cart_store.update_quantity(
        db,
        cache,
        user_id=current_user.user_id,
        item_id=item_id,
        quantity=item_in.quantity,
    )
    return await cart_store.get_cart(db, cache, current_user.user_id)


@router.delete("/cart/items/{item_id}", response_model=CartResponse)
@cart_limit
async def remove_cart_item(
    request: Request,
    item_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    await cart_store.remove_item(
        db, cache, user_id=current_user.user_id, item_id=item_id
    )
    return await cart_store.get_cart(db, cache, current_user.user_id)


@router.delete("/cart", response_model=CartResponse)
@cart_limit
async def clear_cart(
    request: Request,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Empty the cart."""
    await cart_store.clear_cart(db, cache, current_user.user_id)
    return await cart_store.get_cart(db, cache, current_user.user_id)


@router.post("/cart/merge", response_model=CartMergeResponse)
@cart_limit
async def merge_guest_cart(
    request: Request,
    merge_in: CartMergeRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Merge a guest cart into the signed-in user's cart after login."""
    result = await cart_store.merge_guest_cart(
        db, cache, user_id=current_user.user_id, items=merge_in.items
    )
    return CartMergeResponse(
        merged=result.merged,
        conflicts=result.conflicts,
        summary=MergeSummary(
            total_items=result.total_items,
            merged=len(result.merged),
            conflicts=len(result.conflicts),
        ),
    )
