"""APScheduler setup for recurring crawl stages."""

import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mirror_crawler.config import settings

logger = logging.getLogger(__name__)


def setup_scheduler(
    run_items: Callable[[], Awaitable[None]],
    run_sellers: Callable[[], Awaitable[None]],
    stage: str = "all",
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Args:
        run_items: Coroutine function running one items crawl
        run_sellers: Coroutine function running one sellers crawl
        stage: items, sellers or all

    Returns:
        Configured scheduler instance (not started)
    """
    scheduler = AsyncIOScheduler()

    if stage in ("items", "all"):
        scheduler.add_job(
            run_items,
            IntervalTrigger(minutes=max(1, settings.items_interval_minutes)),
            id="items_crawl",
            name="Crawl items",
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True,
        )

    if stage in ("sellers", "all"):
        scheduler.add_job(
            run_sellers,
            IntervalTrigger(minutes=max(1, settings.sellers_interval_minutes)),
            id="sellers_crawl",
            name="Crawl sellers",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True,
        )

    logger.info(f"Scheduler configured with {len(scheduler.get_jobs())} jobs")
    return scheduler
