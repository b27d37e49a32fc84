"""
APScheduler configuration for unattended backups.

Runs the full backup pipeline on a cron schedule inside the process, for
hosts where a system cron entry is not available.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from wpbackup.backup.errors import BackupError

logger = logging.getLogger(__name__)

JOB_ID = 'site_backup'

# Global scheduler instance
scheduler = None


def run_backup_job(config, cancel_event=None):
    """
    Run one scheduled backup.

    A failed run is logged and the scheduler keeps running.

    Returns:
        True if the run reached Done
    """
    from wpbackup import create_orchestrator

    try:
        result = create_orchestrator(config, cancel_event=cancel_event).execute()
    except BackupError as e:
        logger.error(f"Scheduled backup failed: {e}")
        return False

    logger.info(f"Scheduled backup {result.snapshot_id} completed")
    return True


def init_scheduler(config, cron_expression, cancel_event=None):
    """
    Initialize and configure APScheduler.

    Args:
        config: Config built at startup
        cron_expression: Standard 5-field crontab expression (UTC)
        cancel_event: Event shared with signal handlers

    Raises:
        ValueError: If the cron expression is invalid
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    trigger = CronTrigger.from_crontab(cron_expression, timezone='UTC')

    scheduler = BlockingScheduler(job_defaults=job_defaults, timezone='UTC')
    scheduler.add_job(
        func=run_backup_job,
        trigger=trigger,
        args=[config, cancel_event],
        id=JOB_ID,
        name='Site Backup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until stop_scheduler() is called.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.warning("Scheduler already running")
        return

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job {job.id}: {job.name} ({job.trigger})")

    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
