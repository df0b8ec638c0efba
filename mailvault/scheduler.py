"""
APScheduler configuration and task scheduling for Mailvault.

Manages:
- Scheduled backup tasks (based on each task's cron expression)
- Daily retention policy enforcement
- Manual task triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from mailvault import db
from mailvault.models import BackupTask
from mailvault.backup.executor import execute_backup_task
from mailvault.backup.retention import enforce_retention_policies

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _job_id(task_id: int) -> str:
    return f"backup_{task_id}"


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Fallback health signal for processes without the in-memory scheduler
    (e.g. Flask's reloader parent).
    """
    try:
        result = db.session.execute(text("SELECT COUNT(*) FROM apscheduler_jobs")).scalar()
        return result or 0
    except SQLAlchemyError:
        db.session.rollback()
        return 0


def validate_cron_expression(expression: str):
    """
    Parse a 5-field crontab expression.

    Raises:
        ValueError: If the expression is invalid
    """
    return CronTrigger.from_crontab(expression, timezone='UTC')


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 3))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a task at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    # Retention cleanup runs daily at 2 AM UTC
    scheduler.add_job(
        func=_retention_wrapper,
        trigger=CronTrigger(hour=2, minute=0, timezone='UTC'),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    jobs = scheduler.get_jobs()
    logger.info(f"Loaded {len(jobs)} scheduled jobs")
    for job in jobs:
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_backup_tasks():
    """
    Synchronize backup tasks from database to scheduler.

    Call after app startup and after creating, updating or deleting tasks.
    Stores each scheduled task's next run time on the task.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Drop one-time jobs from earlier manual triggers
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            scheduler.remove_job(job.id)
            logger.info(f"Cleaned up old manual job: {job.id}")

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for task in BackupTask.query.all():
        job_id = _job_id(task.id)

        if task.is_active and task.schedule_expression:
            _schedule_task(task)
            scheduled_job_ids.discard(job_id)
        else:
            if job_id in scheduled_job_ids:
                _remove_scheduled_task(task.id)
                scheduled_job_ids.discard(job_id)
            task.next_backup_time = None

    # Jobs whose task no longer exists
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            logger.warning(f"Orphaned job already gone: {leftover_id}")

    db.session.commit()


def _schedule_task(task: BackupTask):
    """Add or replace the cron job of a task and record its next run."""
    try:
        trigger = validate_cron_expression(task.schedule_expression)
    except ValueError as e:
        logger.error(f"Invalid schedule for task {task.name} ({task.schedule_expression}): {e}")
        task.next_backup_time = None
        return

    job = scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[task.id],
        trigger=trigger,
        id=_job_id(task.id),
        name=f"Backup: {task.name}",
        replace_existing=True
    )

    next_run = getattr(job, 'next_run_time', None)
    if not isinstance(next_run, datetime):
        next_run = trigger.get_next_fire_time(None, datetime.now(timezone.utc))
    task.next_backup_time = next_run.astimezone(timezone.utc).replace(tzinfo=None) if next_run else None

    logger.info(f"Scheduled backup task: {task.name} ({task.schedule_expression})")


def _remove_scheduled_task(task_id: int):
    """Remove a task's cron job from the scheduler."""
    try:
        scheduler.remove_job(_job_id(task_id))
        logger.info(f"Removed scheduled backup task ID: {task_id}")
    except JobLookupError:
        logger.warning(f"Backup task {task_id} was not scheduled")


def _execute_backup_wrapper(task_id: int, allow_inactive: bool = False):
    """
    Run a backup task inside the Flask app context.

    Args:
        task_id: BackupTask ID to execute
        allow_inactive: If True, allow execution of inactive tasks (manual triggers)
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup task ID: {task_id} (allow_inactive={allow_inactive})")
            record = execute_backup_task(task_id, allow_inactive=allow_inactive)
            logger.info(f"Backup task {task_id} completed with status: {record.backup_status.value}")
        except Exception:
            logger.exception(f"Scheduler backup task {task_id} failed")
        finally:
            _refresh_next_run(task_id)


def _refresh_next_run(task_id: int):
    task = db.session.get(BackupTask, task_id)
    if task is None or scheduler is None:
        return

    job = scheduler.get_job(_job_id(task_id))
    next_run = getattr(job, 'next_run_time', None)
    if not isinstance(next_run, datetime):
        next_run = None
    task.next_backup_time = next_run.astimezone(timezone.utc).replace(tzinfo=None) if next_run else None
    db.session.commit()


def _retention_wrapper():
    """Run retention enforcement inside the Flask app context."""
    with flask_app.app_context():
        try:
            summary = enforce_retention_policies()
            logger.info(f"Retention cleanup deleted {summary['records_deleted']} backups")
        except Exception:
            logger.exception("Retention cleanup failed")


def trigger_backup_now(task_id: int):
    """
    Manually trigger a backup task immediately.

    Raises:
        ValueError: If task not found
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    task = db.session.get(BackupTask, task_id)
    if not task:
        raise ValueError(f"Backup task not found: {task_id}")

    # One second delay so the request's transaction is committed first
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[task_id, True],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{task_id}_{int(now.timestamp())}",
        name=f"Manual: {task.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup task: {task.name}")


def get_scheduled_jobs() -> list:
    """List all scheduled jobs as dicts."""
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_initialized() -> bool:
    """True when this process owns a scheduler instance."""
    return scheduler is not None


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    Falls back to the persistent job store when the scheduler lives in
    another process.
    """
    if scheduler is not None and scheduler.running:
        return True

    return _count_jobs_in_database() > 0


def get_scheduler_diagnostics() -> dict:
    """
    Get detailed scheduler diagnostics for troubleshooting.

    Returns:
        Dict with scheduler state, jobs, and health info
    """
    jobs_in_db = _count_jobs_in_database()

    if scheduler is None:
        return {
            'initialized': False,
            'running': jobs_in_db > 0,
            'state': 'NOT_INITIALIZED',
            'jobs_in_database': jobs_in_db,
            'note': 'Scheduler object not available in this process'
        }

    jobs = scheduler.get_jobs()
    return {
        'initialized': True,
        'running': scheduler.running,
        'state': str(scheduler.state),
        'job_count': len(jobs),
        'jobs_in_database': jobs_in_db,
        'jobs': [
            {
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger),
                'pending': job.pending
            }
            for job in jobs
        ]
    }
