"""
APScheduler configuration for recurring backup runs.

Manages:
- The scheduled backup run (based on a cron expression)
- Scheduler start/stop
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from omnibackup.backup.executor import execute_backup
from omnibackup.backup.models import BackupError

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup_run'

# Global scheduler instance
scheduler = None


def run_scheduled_backup(definition_path: str, temp_dir=None, max_workers=None):
    """
    Wrapper function for executing a backup run in scheduler context.

    Errors are logged so a failed run does not stop the schedule.
    """
    logger.info(f"Scheduler executing backup run ({definition_path})")
    try:
        report = execute_backup(definition_path, temp_dir=temp_dir, max_workers=max_workers)
    except BackupError as e:
        logger.error(f"Scheduled backup run failed: {e}")
        return None

    logger.info(
        f"Backup run completed: {len(report.archives)} archives, "
        f"{len(report.failures)} failures"
    )
    return report


def init_scheduler(settings, cron=None, job=None):
    """
    Initialize and configure APScheduler.

    Args:
        settings: Configuration class (see omnibackup.config)
        cron: Crontab expression, defaults to settings.SCHEDULE_CRON
        job: Callable to schedule, defaults to a backup run of settings.DEFINITIONS_FILE

    Raises:
        ValueError: If the cron expression is invalid
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    timezone = getattr(settings, 'SCHEDULER_TIMEZONE', 'UTC')
    expression = cron or settings.SCHEDULE_CRON

    # Parse cron expression before creating the scheduler
    trigger = CronTrigger.from_crontab(expression, timezone=timezone)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one run at a time
        'misfire_grace_time': getattr(settings, 'SCHEDULER_MISFIRE_GRACE_TIME', 300)
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    if job is None:
        scheduler.add_job(
            func=run_scheduled_backup,
            args=[settings.DEFINITIONS_FILE],
            kwargs={'temp_dir': settings.TEMP_DIR, 'max_workers': settings.MAX_WORKERS},
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name='Backup run',
            replace_existing=True
        )
    else:
        scheduler.add_job(
            func=job,
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name='Backup run',
            replace_existing=True
        )

    logger.info(f"Scheduled backup run ({expression}, {timezone})")
    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Blocks until the scheduler is shut down.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    logger.info("APScheduler starting")
    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler and forget it."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")

    scheduler = None


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
