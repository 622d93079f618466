"""Payment reconciliation: record provider outcomes and take stock out once.

Stock leaves the ledger when an order's payment first becomes ``paid``. The
flip is a conditional update (``WHERE payment_status != 'paid'``), so with
duplicate callbacks or repeated admin clicks exactly one caller sees the row
change and only that caller decrements.
"""

import hashlib
import hmac
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import as_utc, utc_now
from libs.common.logging import get_logger
from services.commerce_service.errors import (
    InvalidStatusError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from services.commerce_service.models import (
    Order,
    OrderItem,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
)
from services.commerce_service.schemas import (
    PaymentCallbackPayload,
    PaymentCallbackResponse,
    PaymentStatusResponse,
)
from services.commerce_service.services.read_cache import ReadCache
from services.commerce_service.services.stock_ledger import decrement_stock
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ALLOWED_PAYMENT_STATUSES = ("paid", "failed", "pending")

EVENT_PAYMENT_RECEIVED = "PAYMENT RECEIVED"
EVENT_PAYMENT_FAILED = "PAYMENT FAILED"

_RETRY_SUFFIX = re.compile(r"^(.+?)retry\d+$")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def parse_payment_status(value: Optional[str]) -> PaymentStatus:
    normalized = (value or "").strip().lower()
    if normalized not in ALLOWED_PAYMENT_STATUSES:
        raise InvalidStatusError(
            "Invalid payment status",
            details={"allowed": list(ALLOWED_PAYMENT_STATUSES), "provided": value},
        )
    return PaymentStatus(normalized)


async def _get_order(db: AsyncSession, reference_id: str) -> Order:
    order = (
        await db.execute(
            select(Order)
            .where(Order.reference_id == reference_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def _record_transaction(
    db: AsyncSession,
    *,
    order_id: str,
    user_id: Optional[str],
    amount: Decimal,
    currency: str,
    status: TransactionStatus,
    payment_id: Optional[str],
    method: Optional[str],
    source: str,
    details: Optional[dict] = None,
) -> None:
    db.add(
        PaymentTransaction(
            order_id=order_id,
            user_id=user_id,
            payment_id=payment_id,
            amount=amount,
            currency=currency,
            status=status,
            method=method,
            source=source,
            details=details,
        )
    )
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to record payment transaction for order %s", order_id)


async def confirm_payment(
    db: AsyncSession,
    cache: ReadCache,
    *,
    reference_id: str,
    payment_status: str,
    payment_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    source: str = "admin",
    allow_downgrade: bool = True,
    failure_reason: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> PaymentStatusResponse:
    """Apply a payment outcome to the order identified by ``reference_id``.

    ``allow_downgrade=False`` (provider callbacks) ignores attempts to move a
    paid order back to pending/failed. The order's fulfilment ``status`` is
    never changed here; staff confirm orders separately.
    """
    new_status = parse_payment_status(payment_status)
    order = await _get_order(db, reference_id)

    # Plain values; the ORM instance is stale once the core UPDATE runs.
    order_id = order.id
    user_id = order.user_id
    pickup_id = order.pickup_id
    order_status = order.status
    previous = order.payment_status
    amount = order.total_amount
    currency = order.currency

    downgrade = previous == PaymentStatus.PAID and new_status != PaymentStatus.PAID
    if downgrade and not allow_downgrade:
        logger.warning(
            "Ignoring %s for order %s: payment already recorded as paid",
            new_status.value,
            order_id,
        )
        return PaymentStatusResponse(
            reference_id=reference_id,
            pickup_id=pickup_id,
            payment_status=previous,
            status=order_status,
        )

    now = utc_now()
    values: dict[str, Any] = {"payment_status": new_status, "updated_at": now}
    if payment_id:
        values["payment_id"] = payment_id
    if payment_method:
        values["payment_method"] = payment_method
    if new_status == PaymentStatus.PAID:
        values["payment_timestamp"] = paid_at or now
        values["failure_reason"] = None
    elif new_status == PaymentStatus.FAILED:
        values["failure_reason"] = failure_reason or "Payment failed"

    stmt = update(Order).where(Order.id == order_id)
    if new_status == PaymentStatus.PAID:
        stmt = stmt.where(Order.payment_status != PaymentStatus.PAID)
    result = await db.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    await db.commit()

    became_paid = new_status == PaymentStatus.PAID and result.rowcount == 1
    logger.info(
        "Payment for order %s: %s -> %s (source=%s)",
        order_id,
        previous.value,
        new_status.value,
        source,
    )

    touched_products = []
    if became_paid:
        touched_products = await _decrement_order_stock(db, order_id)
    elif new_status == PaymentStatus.PAID:
        logger.info(
            "Duplicate paid confirmation for order %s; stock already taken", order_id
        )

    await _record_transaction(
        db,
        order_id=order_id,
        user_id=user_id,
        amount=amount,
        currency=currency,
        status=TransactionStatus(new_status.value),
        payment_id=payment_id,
        method=payment_method,
        source=source,
        details={
            "previous_status": previous.value,
            "duplicate": new_status == PaymentStatus.PAID and not became_paid,
        },
    )

    await cache.invalidate_order(order_id, reference_id)
    if user_id:
        await cache.invalidate_user(user_id)
    for product_id in touched_products:
        await cache.invalidate_product(product_id)

    return PaymentStatusResponse(
        reference_id=reference_id,
        pickup_id=pickup_id,
        payment_status=new_status,
        status=order_status,
    )


async def _decrement_order_stock(db: AsyncSession, order_id: str) -> list:
    """Best-effort per-item decrement; one failing item never blocks the rest."""
    rows = (
        await db.execute(
            select(
                OrderItem.product_id,
                OrderItem.quantity,
                OrderItem.variant_attributes,
            ).where(OrderItem.order_id == order_id)
        )
    ).all()

    touched = []
    for product_id, quantity, attributes in rows:
        try:
            await decrement_stock(db, product_id, quantity, attributes or None)
            touched.append(product_id)
        except (SQLAlchemyError, StoreError):
            await db.rollback()
            logger.exception(
                "Stock decrement failed for product %s on order %s",
                product_id,
                order_id,
            )
    return touched


async def get_payment_status(
    db: AsyncSession, cache: ReadCache, reference_id: str
) -> PaymentStatusResponse:
    cache_key = cache.order_key(reference_id)
    cached = await cache.get(cache_key)
    if cached is not None:
        return PaymentStatusResponse.model_validate(cached)

    order = await _get_order(db, reference_id)
    view = PaymentStatusResponse(
        reference_id=order.reference_id,
        pickup_id=order.pickup_id,
        payment_status=order.payment_status,
        status=order.status,
    )
    await cache.set(
        cache_key, view.model_dump(mode="json"), get_settings().ORDER_CACHE_TTL_SECONDS
    )
    return view


# ---------------------------------------------------------------------------
# Provider callbacks
# ---------------------------------------------------------------------------


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded, optionally ``sha256=``-prefixed."""
    if not secret:
        logger.error("PAYMENT_WEBHOOK_SECRET is not configured; rejecting callback")
        return False
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    received = signature.strip()
    if received.startswith("sha256="):
        received = received[len("sha256="):]
    return hmac.compare_digest(expected, received.lower())


def _normalize_reference(reference: str) -> str:
    return _NON_ALNUM.sub("", reference).lower()


def reference_candidates(reference: str) -> list[str]:
    """References to try, most exact first.

    Providers sometimes echo a retried reference as ``<ref>retry<digits>`` or
    append text after a space.
    """
    reference = reference.strip()
    bases = [reference]
    retry = _RETRY_SUFFIX.match(reference)
    if retry:
        bases.append(retry.group(1))
    bases.append(reference.split(" ")[0])

    candidates: list[str] = []
    for base in bases:
        for candidate in (base, _normalize_reference(base)):
            if candidate and candidate not in candidates:
                candidates.append(candidate)
    return candidates


async def find_order_for_reference(
    db: AsyncSession, reference: str, transaction_id: Optional[str] = None
) -> Optional[Order]:
    candidates = reference_candidates(reference)
    orders = (
        await db.execute(
            select(Order)
            .where(Order.reference_id.in_(candidates))
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    by_reference = {order.reference_id: order for order in orders}
    for candidate in candidates:
        if candidate in by_reference:
            return by_reference[candidate]

    if transaction_id:
        return (
            await db.execute(select(Order).where(Order.payment_id == transaction_id))
        ).scalars().first()
    return None


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, str) and value:
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


async def handle_provider_callback(
    db: AsyncSession, cache: ReadCache, payload: PaymentCallbackPayload
) -> PaymentCallbackResponse:
    settings = get_settings()
    event = payload.event_name
    data = payload.data or {}

    if event == EVENT_PAYMENT_RECEIVED:
        status = PaymentStatus.PAID
        transaction_id = data.get("paymentId") or data.get("id")
        failure_reason = None
    elif event == EVENT_PAYMENT_FAILED:
        status = PaymentStatus.FAILED
        transaction_id = data.get("id") or data.get("paymentId")
        failure_reason = data.get("message") or "Payment failed"
    else:
        logger.info("Ignoring payment callback event %r", event)
        return PaymentCallbackResponse(message="Event type not handled")

    reference = data.get("orderReference")
    if not reference:
        raise ValidationError("No order reference found")

    order = await find_order_for_reference(db, str(reference), transaction_id)
    if order is None:
        logger.warning("Payment callback for unknown reference %s", reference)
        raise NotFoundError("Order not found")
    order_id = order.id
    reference_id = order.reference_id
    current_status = order.payment_status
    expected = order.total_amount

    amount = _parse_amount(data.get("collectedAmount"))
    if status == PaymentStatus.PAID and amount is not None and amount != expected:
        logger.warning(
            "Payment amount mismatch for order %s: got %s, expected %s",
            order_id,
            amount,
            expected,
        )
        await _record_transaction(
            db,
            order_id=order_id,
            user_id=order.user_id,
            amount=amount,
            currency=data.get("collectedCurrency") or order.currency,
            status=TransactionStatus.AMOUNT_MISMATCH,
            payment_id=transaction_id,
            method=settings.PAYMENT_PROVIDER,
            source="webhook",
            details={"expected": str(expected)},
        )
        return PaymentCallbackResponse(
            success=False,
            message="Amount mismatch; payment held for review",
            order_id=order_id,
            payment_status=current_status,
        )

    result = await confirm_payment(
        db,
        cache,
        reference_id=reference_id,
        payment_status=status.value,
        payment_id=transaction_id,
        payment_method=settings.PAYMENT_PROVIDER,
        source="webhook",
        allow_downgrade=False,
        failure_reason=failure_reason,
        paid_at=_parse_timestamp(data.get("updatedAt") or data.get("createdAt")),
    )
    return PaymentCallbackResponse(
        message="Payment status updated",
        order_id=order_id,
        payment_status=result.payment_status,
    )
