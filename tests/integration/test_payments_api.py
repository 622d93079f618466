"""Integration tests for payment callbacks and admin payment/stock/cleanup routes."""

import pytest
from services.commerce_service.app.main import app
from services.commerce_service.models import Order, PaymentStatus, Product
from tests.factories import (
    OrderFactory,
    OrderItemFactory,
    callback_body,
    hours_ago,
    make_admin_user,
    override_auth,
    sign,
)

WEBHOOK = "/store/webhooks/payments"
SIGNATURE_HEADER = "X-ClickPesa-Signature"


async def _order(db_session, product, quantity=2, **overrides):
    order = OrderFactory.create(**overrides)
    db_session.add(order)
    await db_session.commit()
    db_session.add(OrderItemFactory.create(order.id, product.id, quantity=quantity))
    await db_session.commit()
    return order


async def _fetch(session_factory, model, key):
    async with session_factory() as session:
        return await session.get(model, key)


# ---------------------------------------------------------------------------
# Provider webhook
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_duplicate_delivery_decrements_once(
    client, db_session, session_factory, product
):
    order = await _order(db_session, product)
    body = callback_body(
        "PAYMENT RECEIVED", order.reference_id, paymentId="PAY-9", collectedAmount="20000.00"
    )
    headers = {SIGNATURE_HEADER: sign(body), "Content-Type": "application/json"}

    first = await client.post(WEBHOOK, content=body, headers=headers)
    second = await client.post(WEBHOOK, content=body, headers=headers)

    assert first.status_code == 200, first.text
    assert first.json()["payment_status"] == "paid"
    assert second.status_code == 200
    assert (await _fetch(session_factory, Product, product.id)).stock_quantity == 8
    assert (await _fetch(session_factory, Order, order.id)).payment_id == "PAY-9"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_listing_reflects_webhook_and_sweep(client, db_session, product):
    paid = await _order(db_session, product)
    stale = await _order(db_session, product, created_at=hours_ago(2))

    def statuses(response):
        return {order["id"]: order["payment_status"] for order in response.json()}

    assert statuses(await client.get("/store/orders")) == {
        paid.id: "pending",
        stale.id: "pending",
    }

    body = callback_body("PAYMENT RECEIVED", paid.reference_id, paymentId="PAY-1")
    await client.post(
        WEBHOOK,
        content=body,
        headers={SIGNATURE_HEADER: sign(body), "Content-Type": "application/json"},
    )
    await client.post(
        "/admin/store/orders/cleanup",
        headers={"Authorization": "Bearer test-cleanup-key"},
    )

    assert statuses(await client.get("/store/orders")) == {
        paid.id: "paid",
        stale.id: "failed",
    }


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_rejects_bad_signature(client, db_session, session_factory, product):
    order = await _order(db_session, product)
    body = callback_body("PAYMENT RECEIVED", order.reference_id)

    response = await client.post(
        WEBHOOK, content=body, headers={SIGNATURE_HEADER: sign(body, "wrong-secret")}
    )

    assert response.status_code == 401
    stored = await _fetch(session_factory, Order, order.id)
    assert stored.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_malformed_json(client):
    body = b"{not json"
    response = await client.post(WEBHOOK, content=body, headers={SIGNATURE_HEADER: sign(body)})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON payload"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_unknown_reference(client):
    body = callback_body("PAYMENT RECEIVED", "REF-0-NOPE00")
    response = await client.post(WEBHOOK, content=body, headers={SIGNATURE_HEADER: sign(body)})

    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Admin payment routes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_payment_update_requires_admin(client, db_session, product):
    order = await _order(db_session, product)

    response = await client.patch(
        f"/admin/store/orders/{order.reference_id}/payment",
        json={"payment_status": "paid"},
    )

    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_confirms_payment(client, db_session, session_factory, product):
    order = await _order(db_session, product, quantity=3)

    with override_auth(app, make_admin_user()):
        before = await client.get(f"/admin/store/orders/{order.reference_id}/payment")
        response = await client.patch(
            f"/admin/store/orders/{order.reference_id}/payment",
            json={"payment_status": "paid", "payment_id": "MANUAL-1"},
        )
        after = await client.get(f"/admin/store/orders/{order.reference_id}/payment")
        invalid = await client.patch(
            f"/admin/store/orders/{order.reference_id}/payment",
            json={"payment_status": "refunded"},
        )

    assert before.json()["payment_status"] == "pending"
    assert response.status_code == 200, response.text
    assert response.json()["pickup_id"] == order.pickup_id
    assert after.json()["payment_status"] == "paid"
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "INVALID_STATUS"
    assert (await _fetch(session_factory, Product, product.id)).stock_quantity == 7


# ---------------------------------------------------------------------------
# Admin stock and cleanup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_sets_stock(client, product):
    with override_auth(app, make_admin_user()):
        response = await client.put(
            f"/admin/store/products/{product.id}/stock", json={"stock_quantity": 25}
        )

    assert response.status_code == 200, response.text
    assert response.json() == {
        "product_id": str(product.id),
        "available": 25,
        "in_stock": True,
    }
    levels = (await client.get("/store/stock", params={"ids": str(product.id)})).json()
    assert levels[0]["available"] == 25


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cleanup_endpoint(client, db_session, session_factory, product):
    stale = await _order(db_session, product, created_at=hours_ago(2))
    expired = await _order(
        db_session,
        product,
        created_at=hours_ago(30),
        payment_status=PaymentStatus.FAILED,
    )

    denied = await client.post(
        "/admin/store/orders/cleanup", headers={"Authorization": "Bearer nope"}
    )
    response = await client.post(
        "/admin/store/orders/cleanup",
        headers={"Authorization": "Bearer test-cleanup-key"},
    )

    assert denied.status_code == 401
    assert response.status_code == 200, response.text
    body = response.json()
    assert (body["failed_count"], body["deleted_count"], body["total_processed"]) == (1, 1, 2)
    assert (await _fetch(session_factory, Order, stale.id)).payment_status == PaymentStatus.FAILED
    assert await _fetch(session_factory, Order, expired.id) is None
