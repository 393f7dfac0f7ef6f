"""
APScheduler configuration for drbackup.

In-process alternative to cron. Manages:
- One cron-scheduled job per pipeline kind
- Manual triggers

Different kinds may run concurrently on the thread pool; overlapping runs
of the same kind are refused by the execution guard (and max_instances=1).
"""

import logging
import threading
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from drbackup.backup.executor import run_pipeline
from drbackup.models import PipelineKind


logger = logging.getLogger(__name__)

# Global scheduler instance and configuration reference
scheduler = None
scheduler_config = None

# Set by stop_scheduler(); running pipelines abort at their next stage boundary
shutdown_event = threading.Event()


def _level_for(kind: PipelineKind, config):
    if kind == PipelineKind.FULL:
        return 0
    if kind == PipelineKind.INCREMENTAL:
        return config.INCREMENTAL_LEVEL
    return None


def init_scheduler(config):
    """
    Initialize and configure APScheduler.

    Args:
        config: Config instance (SCHEDULES, SCHEDULER_TIMEZONE)

    Returns:
        The scheduler
    """
    global scheduler, scheduler_config

    if scheduler is not None:
        return scheduler

    scheduler_config = config
    shutdown_event.clear()

    executors = {
        'default': ThreadPoolExecutor(max_workers=len(PipelineKind))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=config.SCHEDULER_TIMEZONE
    )

    for kind in PipelineKind:
        cron = config.SCHEDULES.get(kind.value)
        if not cron:
            logger.info(f"No schedule for {kind.value}, skipping")
            continue
        _add_scheduled_job(kind, cron)

    return scheduler


def _add_scheduled_job(kind: PipelineKind, cron: str):
    """
    Add a pipeline kind to the scheduler.

    Raises:
        ValueError: If the cron expression is invalid
    """
    trigger = CronTrigger.from_crontab(cron, timezone=scheduler_config.SCHEDULER_TIMEZONE)

    scheduler.add_job(
        func=_execute_pipeline_wrapper,
        args=[kind.value],
        trigger=trigger,
        id=f"pipeline_{kind.value}",
        name=f"Pipeline: {kind.value}",
        replace_existing=True
    )

    logger.info(f"Scheduled pipeline {kind.value} ({cron})")


def start_scheduler():
    """
    Start the APScheduler.

    Raises:
        RuntimeError: If init_scheduler() was not called
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info("APScheduler started")

        # Log currently scheduled jobs
        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("Scheduler already running")


def stop_scheduler(wait: bool = True):
    """
    Stop the APScheduler, waiting for running pipelines by default.

    Running pipelines are asked to stop at their next stage boundary, so
    the wait is bounded by the current stage's timeout.
    """
    global scheduler, scheduler_config

    if scheduler and scheduler.running:
        shutdown_event.set()
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")

    scheduler = None
    scheduler_config = None


def _execute_pipeline_wrapper(kind: str):
    """
    Run a pipeline kind in scheduler context.

    Failures are logged, never raised into the scheduler thread.
    """
    kind = PipelineKind(kind)

    try:
        logger.info(f"Scheduler executing pipeline: {kind.value}")
        run = run_pipeline(kind, _level_for(kind, scheduler_config), scheduler_config, shutdown_event)
        logger.info(f"Pipeline {kind.value} finished: {run.stage.value} (exit code {int(run.exit_code)})")
    except Exception:
        logger.exception(f"Scheduler pipeline {kind.value} failed")


def trigger_pipeline_now(kind):
    """
    Run a pipeline kind once, as soon as possible.

    Args:
        kind: Pipeline kind

    Raises:
        RuntimeError: If scheduler not initialized
        ValueError: If kind is invalid
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    kind = PipelineKind(kind)
    now = datetime.now(timezone.utc)

    # One-time job (1 second delay to avoid race condition with start)
    scheduler.add_job(
        func=_execute_pipeline_wrapper,
        args=[kind.value],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{kind.value}_{int(now.timestamp())}",
        name=f"Manual: {kind.value}",
        replace_existing=False
    )

    logger.info(f"Manually triggered pipeline: {kind.value}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger)
        })

    return jobs
