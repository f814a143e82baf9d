# scribe/services/scheduler.py
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from scribe.services.reclaimer import reset_stuck_jobs
from scribe.services.worker import get_worker
from scribe.settings.config import settings

scheduler: AsyncIOScheduler | None = None
logger = logging.getLogger(__name__)


def _pick_tz(name: str | None):
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; scheduling in UTC", name)
        return ZoneInfo("UTC")


def start_scheduler():
    global scheduler
    if scheduler:
        return
    scheduler = AsyncIOScheduler(timezone=_pick_tz(settings.APP_TZ))

    if settings.WORKER_SCHEDULER_ENABLED:
        scheduler.add_job(
            job_worker_pass,
            IntervalTrigger(seconds=settings.WORKER_POLL_INTERVAL_SECONDS),
            id="worker_pass",
            max_instances=1,
            coalesce=True,
        )
        logger.info("Worker pass scheduled every %.1fs", settings.WORKER_POLL_INTERVAL_SECONDS)

    scheduler.add_job(
        job_reclaim_stuck,
        IntervalTrigger(minutes=settings.RECLAIM_INTERVAL_MINUTES),
        id="reclaim_stuck",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started (reclaim every %d min)", settings.RECLAIM_INTERVAL_MINUTES)


def stop_scheduler():
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None


async def job_worker_pass():
    worker = get_worker()
    if worker.continuous_running:
        # the continuous loop is already polling
        return
    report = await worker.run_batch(settings.WORKER_MAX_JOBS)
    if report["processed"]:
        logger.info("Scheduled worker pass processed %d job(s)", report["processed"])


async def job_reclaim_stuck():
    await reset_stuck_jobs(get_worker().store, settings.STUCK_JOB_THRESHOLD_MINUTES)
