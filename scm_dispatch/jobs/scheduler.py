"""
APScheduler configuration for the dispatch background jobs.

Two interval jobs:
- assignment_retry: expired / busy / all-rejected sweeps
- release_stale_shipping_locks: clears quote locks left by crashed requests

Jobs are plain coroutines bound at start-up to the services built in the
application lifespan, so the scheduler holds no database state of its own.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from scm_dispatch.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # A sweep never overlaps itself
    'misfire_grace_time': 60,
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


async def run_job(job_name: str, func: Callable[[], Awaitable[Any]]) -> Optional[Any]:
    """
    Wrapper used for every scheduled job.

    A failing run is logged and swallowed here so the next interval still fires.
    """
    try:
        result = await func()
        logger.info(f"Job '{job_name}' completed: {result}")
        return result
    except Exception as e:
        logger.error(f"Job '{job_name}' failed: {e}", exc_info=True)
        return None


def start_scheduler(retry_scheduler, quote_collector=None):
    """Register the dispatch jobs and start the scheduler."""
    if scheduler.running:
        return

    scheduler.add_job(
        run_job,
        'interval',
        minutes=settings.ASSIGNMENT_RETRY_INTERVAL_MINUTES,
        args=['assignment_retry', retry_scheduler.run],
        id='assignment_retry',
        name='Carrier Assignment Retry',
        replace_existing=True,
    )

    if quote_collector is not None:
        scheduler.add_job(
            run_job,
            'interval',
            minutes=settings.SHIPPING_LOCK_SWEEP_INTERVAL_MINUTES,
            args=['release_stale_shipping_locks', quote_collector.release_stale_locks],
            id='release_stale_shipping_locks',
            name='Release Stale Shipping Locks',
            replace_existing=True,
        )

    scheduler.start()
    logger.info("Background job scheduler started")

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status() -> List[Dict[str, Any]]:
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
