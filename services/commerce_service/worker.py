"""ARQ worker for the commerce service's scheduled jobs.

Run with: arq services.commerce_service.worker.WorkerSettings
"""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import configure_logging, get_logger
from libs.common.redis import close_redis

logger = get_logger(__name__)


async def task_sweep_order_lifecycle(ctx: dict):
    from services.commerce_service.tasks import sweep_order_lifecycle

    logger.info("Running: sweep_order_lifecycle")
    result = await sweep_order_lifecycle()
    return {"failed_count": result.failed_count, "deleted_count": result.deleted_count}


async def startup(ctx: dict):
    configure_logging()


async def shutdown(ctx: dict):
    await close_redis()


class WorkerSettings:
    redis_settings = get_redis_settings()

    on_startup = startup
    on_shutdown = shutdown

    functions = [task_sweep_order_lifecycle]

    cron_jobs = [
        cron(
            task_sweep_order_lifecycle,
            minute={0, 15, 30, 45},
            run_at_startup=True,
        ),
    ]
