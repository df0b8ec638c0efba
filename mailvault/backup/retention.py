"""
Retention policy enforcement for backups.

Deletes successful backups older than their task's retention_days: the local
artifact, the stored copy and the BackupRecord.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict

from mailvault.models import BackupRecord, BackupStatus, BackupTask
from .executor import BackupExecutor

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for backup tasks.
    """

    def __init__(self, config=None):
        self.config = config
        self.logs = []

    def enforce_all_policies(self) -> Dict[str, Any]:
        """
        Enforce retention policies for all active tasks.

        Returns:
            Dict with summary of cleanup operations:
            {
                'tasks_processed': int,
                'records_deleted': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement for all tasks")

        summary = {
            'tasks_processed': 0,
            'records_deleted': 0,
            'errors': []
        }

        for task in BackupTask.query.filter_by(is_active=True).all():
            result = self.enforce_task_policy(task)
            summary['tasks_processed'] += 1
            summary['records_deleted'] += result['records_deleted']
            summary['errors'].extend(result['errors'])

        self._log(
            f"Retention enforcement complete. "
            f"Tasks: {summary['tasks_processed']}, "
            f"Deleted: {summary['records_deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def expired_records(self, task: BackupTask):
        cutoff_date = datetime.utcnow() - timedelta(days=task.retention_days)
        return BackupRecord.query.filter(
            BackupRecord.task_id == task.id,
            BackupRecord.backup_status == BackupStatus.SUCCESS,
            BackupRecord.created_at < cutoff_date
        ).order_by(BackupRecord.created_at).all()

    def enforce_task_policy(self, task: BackupTask) -> Dict[str, Any]:
        """
        Delete a task's expired backups.

        A failing deletion is logged and the sweep moves on.

        Returns:
            Dict: {'records_deleted': int, 'errors': List[str]}
        """
        result = {'records_deleted': 0, 'errors': []}

        if task.retention_days is None:
            self._log(f"Retention not configured for task {task.name}, skipping")
            return result

        self._log(f"Enforcing {task.retention_days} day retention for task: {task.name}")
        executor = BackupExecutor(task, config=self.config)

        for record in self.expired_records(task):
            backup_name = record.backup_name
            try:
                executor.delete_backup(record)
                result['records_deleted'] += 1
                self._log(f"Deleted expired backup: {backup_name}")
            except Exception as e:
                error_msg = f"Failed to delete expired backup {backup_name}: {e}"
                self._log(error_msg, logging.ERROR)
                result['errors'].append(error_msg)

        return result

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policies() -> Dict[str, Any]:
    """
    Enforce retention policies for all tasks.

    Called by the scheduler once a day.
    """
    manager = RetentionManager()
    return manager.enforce_all_policies()
