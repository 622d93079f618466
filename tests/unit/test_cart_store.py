"""Unit tests for the cart store: stock-aware adds, upsert, merge."""

import asyncio
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from libs.db.config import build_engine, build_session_factory
from services.commerce_service.errors import NotFoundError, OutOfStockError, ValidationError
from services.commerce_service.models import CartItem
from services.commerce_service.schemas import GuestCartItem
from services.commerce_service.services.cart_store import (
    add_to_cart,
    clear_cart,
    get_cart,
    merge_guest_cart,
    normalize_variant_id,
    update_quantity,
    upsert_cart_item,
)
from sqlalchemy import event, select
from tests.factories import CartItemFactory, ProductFactory

USER = "test-user"


async def _lines(session_factory, user_id=USER):
    async with session_factory() as session:
        result = await session.execute(select(CartItem).where(CartItem.user_id == user_id))
        return result.scalars().all()


# ---------------------------------------------------------------------------
# add_to_cart
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_add_to_cart_twice_sums_one_line(db_session, session_factory, read_cache, product):
    await add_to_cart(db_session, read_cache, user_id=USER, product_id=product.id, quantity=2)
    result = await add_to_cart(
        db_session, read_cache, user_id=USER, product_id=product.id, quantity=3
    )

    assert result.item.quantity == 5
    assert result.partial_stock is None
    lines = await _lines(session_factory)
    assert len(lines) == 1
    assert lines[0].variant_id == "default"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_add_to_cart_caps_at_available_stock(db_session, read_cache):
    item = ProductFactory.create(stock_quantity=3)
    db_session.add(item)
    await db_session.commit()

    result = await add_to_cart(
        db_session, read_cache, user_id=USER, product_id=item.id, quantity=5
    )

    assert result.item.quantity == 3
    assert result.message == "Added 3 items to cart (maximum available)."
    assert result.partial_stock.requested == 5
    assert result.partial_stock.remaining == 2
    assert result.partial_stock.restock_message == "We expect more stock in 3 days"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_add_counts_quantity_already_in_cart(
    db_session, session_factory, read_cache
):
    item = ProductFactory.create(stock_quantity=3)
    db_session.add(item)
    await db_session.commit()

    await add_to_cart(db_session, read_cache, user_id=USER, product_id=item.id, quantity=2)
    second = await add_to_cart(
        db_session, read_cache, user_id=USER, product_id=item.id, quantity=3
    )

    assert second.item.quantity == 3
    assert second.partial_stock.added == 1
    assert second.partial_stock.remaining == 2

    with pytest.raises(OutOfStockError):
        await add_to_cart(db_session, read_cache, user_id=USER, product_id=item.id, quantity=3)

    lines = await _lines(session_factory)
    assert [line.quantity for line in lines] == [3]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_upsert_never_exceeds_max_quantity(db_session, product):
    for _ in range(2):
        line = await upsert_cart_item(
            db_session,
            user_id=USER,
            product_id=product.id,
            variant_id="default",
            quantity=3,
            price=product.price,
            currency="TZS",
            max_quantity=4,
        )
        await db_session.commit()

    assert line.quantity == 4


@pytest.mark.asyncio
@pytest.mark.unit
async def test_add_to_cart_out_of_stock_reports_restock_eta(db_session, read_cache):
    item = ProductFactory.create(stock_quantity=0, return_time_value=1)
    db_session.add(item)
    await db_session.commit()

    with pytest.raises(OutOfStockError) as exc_info:
        await add_to_cart(db_session, read_cache, user_id=USER, product_id=item.id, quantity=1)

    assert exc_info.value.return_time["value"] == 1
    assert exc_info.value.restock_message == "Please return in 1 day"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_add_to_cart_unknown_product(db_session, read_cache):
    with pytest.raises(NotFoundError):
        await add_to_cart(
            db_session, read_cache, user_id=USER, product_id=uuid.uuid4(), quantity=1
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_add_to_cart_rejects_zero_quantity(db_session, read_cache, product):
    with pytest.raises(ValidationError):
        await add_to_cart(db_session, read_cache, user_id=USER, product_id=product.id, quantity=0)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_add_to_cart_ignores_unknown_client_price(db_session, read_cache, product):
    result = await add_to_cart(
        db_session,
        read_cache,
        user_id=USER,
        product_id=product.id,
        quantity=1,
        price=Decimal("1.00"),
    )
    assert result.item.price == Decimal("10000.00")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_add_to_cart_parses_combination_variant(db_session, read_cache, ledger_product):
    result = await add_to_cart(
        db_session,
        read_cache,
        user_id=USER,
        product_id=ledger_product.id,
        quantity=1,
        variant_id="combination-color:Red",
    )
    assert result.item.variant_attributes == {"color": "Red"}


@pytest.mark.unit
@pytest.mark.parametrize("raw", [None, "", "null", "undefined", "  None "])
def test_blank_variant_ids_normalize_to_default(raw):
    assert normalize_variant_id(raw) == "default"


# ---------------------------------------------------------------------------
# Atomic upsert
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def writer_session_factory(test_engine):
    """Sessions whose transactions take the SQLite write lock at BEGIN.

    With deferred transactions two writers can fail with "database is locked"
    instead of waiting their turn.
    """
    engine = build_engine(test_engine.url.render_as_string(hide_password=False))

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    yield build_session_factory(engine)
    await engine.dispose()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_upserts_converge_on_one_row(
    writer_session_factory, session_factory, product
):
    """Five simultaneous adds of the same line end up as one row with qty 5."""

    async def add_one():
        async with writer_session_factory() as session:
            await upsert_cart_item(
                session,
                user_id=USER,
                product_id=product.id,
                variant_id="default",
                quantity=1,
                price=product.price,
                currency="TZS",
            )
            await session.commit()

    await asyncio.gather(*(add_one() for _ in range(5)))

    lines = await _lines(session_factory)
    assert len(lines) == 1
    assert lines[0].quantity == 5


# ---------------------------------------------------------------------------
# Line edits
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_update_quantity_zero_removes_line(db_session, session_factory, read_cache, product):
    line = CartItemFactory.create(product.id, quantity=2)
    db_session.add(line)
    await db_session.commit()

    assert await update_quantity(
        db_session, read_cache, user_id=USER, item_id=line.id, quantity=0
    ) is None
    assert await _lines(session_factory) == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_update_quantity_other_users_line(db_session, read_cache, product):
    line = CartItemFactory.create(product.id, user_id="someone-else")
    db_session.add(line)
    await db_session.commit()

    with pytest.raises(NotFoundError):
        await update_quantity(db_session, read_cache, user_id=USER, item_id=line.id, quantity=3)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_clear_cart_only_given_products(db_session, session_factory, read_cache, product):
    other = ProductFactory.create()
    db_session.add(other)
    await db_session.commit()
    db_session.add_all(
        [CartItemFactory.create(product.id), CartItemFactory.create(other.id)]
    )
    await db_session.commit()

    removed = await clear_cart(db_session, read_cache, USER, [product.id])

    assert removed == 1
    remaining = await _lines(session_factory)
    assert [line.product_id for line in remaining] == [other.id]


# ---------------------------------------------------------------------------
# Cart view
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_get_cart_totals_and_invalidation(db_session, read_cache, product):
    await add_to_cart(db_session, read_cache, user_id=USER, product_id=product.id, quantity=2)

    view = await get_cart(db_session, read_cache, USER)
    assert view.totals.total_items == 2
    assert view.totals.final_total == Decimal("20000.00")
    assert view.items[0].product_name == product.name

    await add_to_cart(db_session, read_cache, user_id=USER, product_id=product.id, quantity=1)
    assert (await get_cart(db_session, read_cache, USER)).totals.total_items == 3


# ---------------------------------------------------------------------------
# Guest cart merge
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_merge_guest_cart(db_session, read_cache, product):
    db_session.add(CartItemFactory.create(product.id, quantity=4))
    await db_session.commit()
    sold_out = ProductFactory.create(stock_quantity=0)
    fresh = ProductFactory.create(stock_quantity=5)
    db_session.add_all([sold_out, fresh])
    await db_session.commit()
    missing_id = uuid.uuid4()

    result = await merge_guest_cart(
        db_session,
        read_cache,
        user_id=USER,
        items=[
            GuestCartItem(product_id=product.id, quantity=8),
            GuestCartItem(product_id=fresh.id, quantity=2),
            GuestCartItem(product_id=sold_out.id, quantity=1),
            GuestCartItem(product_id=missing_id, quantity=1),
            GuestCartItem(product_id=None, quantity=1),
        ],
    )

    merged = {line.product_id: line for line in result.merged}
    assert merged[product.id].action == "merged"
    assert merged[product.id].quantity == 10  # 4 + 8 capped at stock
    assert merged[fresh.id].action == "added"
    assert merged[fresh.id].quantity == 2

    reasons = {conflict.product_id: conflict.reason for conflict in result.conflicts}
    assert reasons == {
        sold_out.id: "Product out of stock",
        missing_id: "Product not found",
    }
    assert result.total_items == 5
