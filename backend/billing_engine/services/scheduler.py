"""
Reconciliation sweep scheduler.

WHAT: Runs the reconciliation sweeps on cron schedules with APScheduler.

WHY: Webhooks can be lost or delayed; the sweeps catch up on subscriptions
whose period ended or whose past-due grace window ran out without the
processor telling us.

HOW: One AsyncIOScheduler per process, two cron jobs:
1. Daily run (expired periods, then stale past-due rows)
2. A more frequent stale past-due pass

Jobs coalesce missed runs and never overlap themselves; a second process
running the same sweep is harmless because every write is a
compare-and-swap.
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from billing_engine.core.config import settings
from billing_engine.services.reconciliation_sweep import ReconciliationSweep


logger = logging.getLogger(__name__)

DAILY_SWEEP_JOB_ID = "subscription_daily_sweep"
PAST_DUE_SWEEP_JOB_ID = "subscription_past_due_sweep"

_scheduler: Optional[AsyncIOScheduler] = None
_sweep: Optional[ReconciliationSweep] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    return _scheduler


def get_sweep() -> ReconciliationSweep:
    """Shared sweep, also used by the admin "run now" endpoints."""
    global _sweep
    if _sweep is None:
        _sweep = ReconciliationSweep()
    return _sweep


def register_sweep_jobs(scheduler: AsyncIOScheduler) -> None:
    """
    Add both sweep jobs to ``scheduler``.

    Raises:
        ValueError: If a configured cron expression is invalid
    """
    sweep = get_sweep()
    jobs = (
        (DAILY_SWEEP_JOB_ID, "Subscription daily sweep", sweep.run_daily, settings.SWEEP_DAILY_CRON),
        (
            PAST_DUE_SWEEP_JOB_ID,
            "Subscription past-due sweep",
            sweep.run_past_due_sweep,
            settings.SWEEP_PAST_DUE_CRON,
        ),
    )
    for job_id, name, func, crontab in jobs:
        scheduler.add_job(
            func=func,
            trigger=CronTrigger.from_crontab(crontab, timezone="UTC"),
            id=job_id,
            name=name,
            replace_existing=True,
        )
        logger.info(f"Registered {job_id} ({crontab} UTC)")


async def start_scheduler() -> None:
    """Create and start the scheduler; a no-op if it is already running."""
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 300,
        },
        timezone="UTC",
    )
    register_sweep_jobs(_scheduler)
    _scheduler.start()
    logger.info("Sweep scheduler started")


async def shutdown_scheduler() -> None:
    """Stop the scheduler, letting a running sweep finish."""
    global _scheduler

    if _scheduler is None:
        return
    if _scheduler.running:
        _scheduler.shutdown(wait=True)
        logger.info("Sweep scheduler stopped")
    _scheduler = None


def get_scheduler_status() -> dict:
    """Running flag and next run time per job, for the health endpoint."""
    if _scheduler is None:
        return {"running": False, "jobs": []}

    return {
        "running": _scheduler.running,
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in _scheduler.get_jobs()
        ],
    }
