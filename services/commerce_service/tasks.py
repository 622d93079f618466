"""Background tasks for the commerce service."""

from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.commerce_service.services.lifecycle import SweepResult, run_lifecycle_sweep
from services.commerce_service.services.read_cache import get_read_cache

logger = get_logger(__name__)


async def sweep_order_lifecycle() -> SweepResult:
    """Fail stale unpaid orders and purge old failed ones."""
    async with AsyncSessionLocal() as db:
        result = await run_lifecycle_sweep(db, cache=get_read_cache())

    logger.info(
        "Order lifecycle sweep done: %s failed, %s deleted",
        result.failed_count,
        result.deleted_count,
    )
    return result
