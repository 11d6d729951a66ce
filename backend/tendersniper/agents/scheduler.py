"""
APScheduler-based job scheduler for the sourcing agent.

The sourcing job runs every SOURCING_INTERVAL_MINUTES minutes (default: 15).
The scheduler is started inside the FastAPI lifespan context manager, on the
application's event loop: the async database engine is bound to that loop,
so the job runs as a coroutine there rather than in a worker thread.
"""
import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tendersniper.core.config import get_settings

logger = logging.getLogger(__name__)

JOB_ID = "sourcing"

# Module-level scheduler instance, shared with the status endpoint
_scheduler: Optional[AsyncIOScheduler] = None
_last_result: Optional[dict] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    return _scheduler


def get_last_result() -> Optional[dict]:
    return _last_result


def record_result(result: dict) -> None:
    global _last_result
    _last_result = result


async def run_sourcing_job(agent_factory: Callable) -> Optional[dict]:
    """One scheduled run. Errors are logged; the scheduler keeps going."""
    try:
        agent = agent_factory()
        stats = await agent.run()
    except Exception as e:
        logger.error(f"Sourcing job failed: {e}", exc_info=True)
        return None
    result = stats.model_dump(mode="json")
    record_result(result)
    return result


def start_scheduler(agent_factory: Callable) -> AsyncIOScheduler:
    """
    Create and start the AsyncIOScheduler.

    Args:
        agent_factory: Callable[[], SourcingAgent], called once per run.

    Returns the started scheduler instance.
    """
    global _scheduler
    settings = get_settings()
    interval = settings.sourcing_interval_minutes

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        func=run_sourcing_job,
        trigger=IntervalTrigger(minutes=interval),
        args=[agent_factory],
        id=JOB_ID,
        name="Sourcing Agent",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,  # 5-minute grace window
    )
    _scheduler.start()
    logger.info(
        f"Scheduler started: sourcing will run every {interval} min "
        f"(next: {_scheduler.get_job(JOB_ID).next_run_time})"
    )
    return _scheduler


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler (called in FastAPI lifespan shutdown)."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None
