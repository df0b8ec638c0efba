"""
Backup module for Mailvault.

This module handles the core backup functionality including:
- File archives of mail data (attachments, logs, certificates, folders)
- MySQL dumps and restores
- Post-processing (bundling, gzip, checksums)
- Delivery to storage backends
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupError
from .files import FileBackupProducer, FileBackupError
from .database import DatabaseBackupProducer, DatabaseBackupError
from .storage import StorageAdapter, StorageError
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'BackupError',
    'FileBackupProducer',
    'FileBackupError',
    'DatabaseBackupProducer',
    'DatabaseBackupError',
    'StorageAdapter',
    'StorageError',
    'RetentionManager'
]
