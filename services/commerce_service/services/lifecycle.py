"""Order lifecycle sweep.

- pending payment for longer than ``PENDING_ORDER_TIMEOUT_MINUTES`` -> failed
- failed for longer than ``FAILED_ORDER_RETENTION_HOURS`` -> order deleted,
  then its items

Both windows are measured from ``created_at`` with strict comparisons and
the sweep is idempotent; running it twice in a row changes nothing the
second time.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.commerce_service.models import Order, OrderItem, PaymentStatus
from services.commerce_service.services.read_cache import ReadCache
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PAYMENT_TIMEOUT_REASON = "Payment not completed in time"


@dataclass(frozen=True)
class SweepResult:
    failed_count: int
    deleted_count: int

    @property
    def total_processed(self) -> int:
        return self.failed_count + self.deleted_count


async def expire_pending_orders(
    db: AsyncSession, now: datetime
) -> list[tuple[str, str, Optional[str]]]:
    """Fail overdue unpaid orders. Returns (id, reference_id, user_id) of each."""
    cutoff = now - timedelta(minutes=get_settings().PENDING_ORDER_TIMEOUT_MINUTES)
    expired = (
        await db.execute(
            update(Order)
            .where(
                Order.payment_status == PaymentStatus.PENDING,
                Order.created_at < cutoff,
            )
            .values(
                payment_status=PaymentStatus.FAILED,
                failure_reason=PAYMENT_TIMEOUT_REASON,
                updated_at=now,
            )
            .returning(Order.id, Order.reference_id, Order.user_id)
            .execution_options(synchronize_session=False)
        )
    ).all()
    await db.commit()
    return [(row.id, row.reference_id, row.user_id) for row in expired]


async def purge_failed_orders(
    db: AsyncSession, now: datetime
) -> list[tuple[str, str, Optional[str]]]:
    """Delete old failed orders. Returns (id, reference_id, user_id) of each.

    The status and age window sits on the DELETE itself, so an order whose
    payment lands while the sweep runs is never removed. Items go after
    their orders, keyed on the ids the DELETE returned.
    """
    cutoff = now - timedelta(hours=get_settings().FAILED_ORDER_RETENTION_HOURS)
    purged = (
        await db.execute(
            delete(Order)
            .where(
                Order.payment_status == PaymentStatus.FAILED,
                Order.created_at < cutoff,
            )
            .returning(Order.id, Order.reference_id, Order.user_id)
            .execution_options(synchronize_session=False)
        )
    ).all()
    if not purged:
        await db.commit()
        return []

    await db.execute(
        delete(OrderItem)
        .where(OrderItem.order_id.in_([row.id for row in purged]))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return [(row.id, row.reference_id, row.user_id) for row in purged]


async def run_lifecycle_sweep(
    db: AsyncSession,
    now: Optional[datetime] = None,
    cache: Optional[ReadCache] = None,
) -> SweepResult:
    now = now or utc_now()

    expired = await expire_pending_orders(db, now)
    if expired:
        logger.warning("Marked %s unpaid orders as failed", len(expired))

    purged = await purge_failed_orders(db, now)
    if purged:
        logger.info("Deleted %s failed orders and their items", len(purged))

    if cache is not None:
        for order_id, reference_id, user_id in expired + purged:
            await cache.invalidate_order(order_id, reference_id)
            if user_id:
                await cache.invalidate_user(user_id)

    return SweepResult(failed_count=len(expired), deleted_count=len(purged))
